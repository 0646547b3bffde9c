"""Pydantic schemas for API requests and responses."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PlanResponse(BaseModel):
    id: str
    display_name: str
    price: float
    annual_price: float | None = None
    limits: dict[str, int]
    features: list[str] = Field(default_factory=list)


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    status: str
    plan_id: str
    active_plan: str
    billing_cycle: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    grace_until: datetime | None = None


class WebhookAck(BaseModel):
    received: bool = True
    outcome: str
    event_id: str | None = None


class CancelResponse(BaseModel):
    user_id: str
    status: str
    plan_id: str


class ReservationResponse(BaseModel):
    action: str
    allowed: bool
    remaining: int
    limit: int
    plan_id: str


class QuotaResponse(BaseModel):
    user_id: str
    plan_id: str
    remaining: dict[str, int]


class CommandRequest(BaseModel):
    text: str = Field(min_length=1)


class CommandResponse(BaseModel):
    kind: str
    keyword: str | None = None
    goal: str | None = None
    action: str | None = None
    reservation: ReservationResponse | None = None


class ReferralCodeResponse(BaseModel):
    user_id: str
    code: str


class RedeemRequest(BaseModel):
    code: str = Field(min_length=3, max_length=32)
    user_id: str = Field(min_length=1, max_length=64)


class RedeemResponse(BaseModel):
    referral_grant_id: int
    referrer_id: str
    referee_id: str
    plan_id: str
    expires_at: datetime
    expiry_task_id: uuid.UUID
    referrer_extended: bool


class ReferralCheckResponse(BaseModel):
    code: str
    valid: bool


class ReferralStatsResponse(BaseModel):
    user_id: str
    referral_code: str | None = None
    total_referrals: int
    points: int
    credit: float
    discount: float


class LeaderboardEntryResponse(BaseModel):
    position: int
    referrer: str
    referrals: int
    first_referral_at: datetime


class DeferredTaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    task_type: str
    user_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime
    status: str
    attempts: int
    last_error: str | None = None


class SweepResponse(BaseModel):
    claimed: int
    succeeded: int
    retried: int
    dead_lettered: int
    skipped: int
    reclaimed: int


class ErrorResponse(BaseModel):
    detail: str
    error: str
    retryable: bool = False
