"""Points, credit and discount balances earned through referrals."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import insert_if_absent
from mealgate.core.logging import get_logger
from mealgate.core.timeutils import utcnow

logger = get_logger(__name__)

KIND_POINTS = "points"
KIND_CREDIT = "credit"
KIND_DISCOUNT = "discount"


@dataclass(slots=True)
class RewardBalance:
    points: int = 0
    credit: float = 0.0
    discount: float = 0.0


class RewardLedger:
    """Append-only reward entries; one entry per (grant, user, kind)."""

    def book(
        self,
        db: Session,
        user_id: str,
        kind: str,
        amount: float,
        referral_grant_id: int,
        expires_at: datetime | None = None,
    ) -> bool:
        created = insert_if_absent(
            db,
            models.RewardEntry,
            {
                "user_id": user_id,
                "kind": kind,
                "amount": amount,
                "referral_grant_id": referral_grant_id,
                "expires_at": expires_at,
                "created_at": utcnow(),
            },
            ("referral_grant_id", "user_id", "kind"),
        )
        if created:
            logger.info("reward_booked", user_id=user_id, kind=kind, amount=amount, grant_id=referral_grant_id)
        return created

    def balance(self, db: Session, user_id: str, now: datetime | None = None) -> RewardBalance:
        now = now or utcnow()
        rows = db.execute(
            select(models.RewardEntry.kind, func.coalesce(func.sum(models.RewardEntry.amount), 0))
            .where(models.RewardEntry.user_id == user_id)
            .where((models.RewardEntry.expires_at.is_(None)) | (models.RewardEntry.expires_at > now))
            .group_by(models.RewardEntry.kind)
        ).all()
        totals = {kind: float(total) for kind, total in rows}
        return RewardBalance(
            points=int(totals.get(KIND_POINTS, 0)),
            credit=round(totals.get(KIND_CREDIT, 0.0), 2),
            discount=round(totals.get(KIND_DISCOUNT, 0.0), 2),
        )


__all__ = ["KIND_CREDIT", "KIND_DISCOUNT", "KIND_POINTS", "RewardBalance", "RewardLedger"]
