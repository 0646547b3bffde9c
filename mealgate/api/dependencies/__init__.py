"""FastAPI dependency helpers."""
from .auth import require_service_token
from .database import get_db
from .services import get_entitlement_guard, get_referral_ledger, get_state_machine, get_task_queue

__all__ = [
    "get_db",
    "get_entitlement_guard",
    "get_referral_ledger",
    "get_state_machine",
    "get_task_queue",
    "require_service_token",
]
