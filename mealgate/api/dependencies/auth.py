"""Service-to-service access check for internal endpoints."""
from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from mealgate.core.settings import get_settings


def require_service_token(x_service_token: str | None = Header(default=None, alias="X-Service-Token")) -> None:
    expected = get_settings().service_token
    if not expected:
        return
    if not x_service_token or not hmac.compare_digest(x_service_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid service token")


__all__ = ["require_service_token"]
