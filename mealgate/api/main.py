"""FastAPI application factory."""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mealgate.api.routers import admin, billing, entitlements, plans, referrals
from mealgate.core.database import init_database
from mealgate.core.errors import MealGateError, TooManyAttempts
from mealgate.core.logging import get_logger, setup_logging
from mealgate.core.observability import configure_observability
from mealgate.core.rate_limiter import setup_rate_limiting
from mealgate.core.settings import get_settings
from mealgate import tasks  # noqa: F401 - ensure tasks registered

logger = get_logger(__name__)


def _domain_error_handler(request: Request, exc: MealGateError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, TooManyAttempts):
        headers["Retry-After"] = str(exc.retry_after)
    elif exc.retryable:
        headers["Retry-After"] = "1"
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=type(exc).__name__, detail=str(exc))
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": exc.retryable},
        headers=headers,
    )


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging()
    init_database()

    app = FastAPI(title=settings.app_name, version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_rate_limiting(app)
    configure_observability(app)
    app.add_exception_handler(MealGateError, _domain_error_handler)

    app.include_router(plans.router)
    app.include_router(billing.router)
    app.include_router(entitlements.router)
    app.include_router(referrals.router)
    app.include_router(admin.router)

    @app.get("/healthz", tags=["monitoring"])
    def healthcheck() -> dict[str, str]:  # pragma: no cover - simple endpoint
        return {"status": "ok"}

    return app


__all__ = ["create_app"]
