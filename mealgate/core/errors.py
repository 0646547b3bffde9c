"""Domain exceptions raised by MealGate services."""
from __future__ import annotations


class MealGateError(Exception):
    """Base class for all domain errors."""

    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, **context: object) -> None:
        super().__init__(message or self.__class__.__name__)
        self.context = context


class InvalidPlan(MealGateError):
    status_code = 422


class EntitlementUnavailable(MealGateError):
    """The quota store could not be reached; the request is denied, not granted."""

    status_code = 503
    retryable = True


class DuplicateEvent(MealGateError):
    status_code = 200


class TransitionRejected(MealGateError):
    status_code = 409

    def __init__(self, reason: str, **context: object) -> None:
        super().__init__(reason, **context)
        self.reason = reason


class SubscriptionNotFound(MealGateError):
    status_code = 404


class ReferralError(MealGateError):
    status_code = 422


class InvalidReferralCode(ReferralError):
    status_code = 404


class SelfReferral(ReferralError):
    pass


class DuplicateReferralPair(ReferralError):
    status_code = 409


class TooManyAttempts(MealGateError):
    status_code = 429
    retryable = True

    def __init__(self, retry_after: int, **context: object) -> None:
        super().__init__("Too many attempts", **context)
        self.retry_after = retry_after


class TaskExecutionFailed(MealGateError):
    status_code = 500


class UnknownTaskType(TaskExecutionFailed):
    pass


__all__ = [
    "MealGateError",
    "InvalidPlan",
    "EntitlementUnavailable",
    "DuplicateEvent",
    "TransitionRejected",
    "SubscriptionNotFound",
    "ReferralError",
    "InvalidReferralCode",
    "SelfReferral",
    "DuplicateReferralPair",
    "TooManyAttempts",
    "TaskExecutionFailed",
    "UnknownTaskType",
]
