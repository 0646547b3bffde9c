"""Referral codes, idempotent redemption and the referral leaderboard."""
from __future__ import annotations

import re
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mealgate.core import models
from mealgate.core.database import insert_if_absent
from mealgate.core.errors import DuplicateReferralPair, InvalidReferralCode, SelfReferral
from mealgate.core.logging import get_logger
from mealgate.core.settings import Settings, get_settings
from mealgate.core.timeutils import as_naive_utc, utcnow
from mealgate.services.deferred import TASK_EXPIRE_GRANT
from mealgate.services.rewards import KIND_CREDIT, KIND_DISCOUNT, KIND_POINTS, RewardLedger
from mealgate.services.subscriptions import SubscriptionStateMachine
from mealgate.services.throttle import ActorThrottle

logger = get_logger(__name__)

CODE_PREFIX = "REF"
CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_RANDOM_LENGTH = 4
MAX_CODE_ATTEMPTS = 8
THROTTLE_SCOPE = "referral_redeem"


@dataclass(slots=True)
class GrantResult:
    referral_grant_id: int
    referrer_id: str
    referee_id: str
    code: str
    plan_id: str
    entitlement_grant_id: int
    expires_at: datetime
    expiry_task_id: uuid.UUID
    referrer_extended: bool


@dataclass(slots=True)
class LeaderboardEntry:
    referrer_id: str
    referrals: int
    first_referral_at: datetime


class ReferralLedger:
    def __init__(
        self,
        settings: Settings | None = None,
        subscriptions: SubscriptionStateMachine | None = None,
        rewards: RewardLedger | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.subscriptions = subscriptions or SubscriptionStateMachine(self.settings)
        self.rewards = rewards or RewardLedger()
        self.throttle = ActorThrottle(
            THROTTLE_SCOPE,
            max_failures=self.settings.referral_max_failures,
            window_seconds=self.settings.referral_failure_window_seconds,
            lockout_seconds=self.settings.referral_lockout_seconds,
        )

    # ------------------------------------------------------------------
    @staticmethod
    def normalise_code(code: str) -> str:
        return code.strip().upper()

    @staticmethod
    def _make_code(user_id: str) -> str:
        fragment = re.sub(r"[^A-Za-z0-9]", "", user_id).upper()[-4:].rjust(4, "X")
        suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_RANDOM_LENGTH))
        return f"{CODE_PREFIX}{fragment}{suffix}"

    def generate_code(self, db: Session, user_id: str, now: datetime | None = None) -> str:
        """Issue a fresh code for ``user_id``, deactivating any previous one.

        A concurrent generator for the same user trips the one-active-code
        index on insert; its code is then deactivated and the insert retried.
        """
        now = as_naive_utc(now) if now else utcnow()
        deactivate = (
            update(models.ReferralCode)
            .where(models.ReferralCode.user_id == user_id)
            .where(models.ReferralCode.active.is_(True))
            .values(active=False, deactivated_at=now)
        )
        db.execute(deactivate)
        for _ in range(MAX_CODE_ATTEMPTS):
            code = self._make_code(user_id)
            savepoint = db.begin_nested()
            try:
                created = insert_if_absent(
                    db,
                    models.ReferralCode,
                    {"user_id": user_id, "code": code, "active": True, "created_at": now},
                    ("code",),
                )
            except IntegrityError:
                savepoint.rollback()
                logger.info("referral_code_conflict", user_id=user_id, code=code)
                db.execute(deactivate)
                continue
            savepoint.commit()
            if created:
                logger.info("referral_code_generated", user_id=user_id, code=code)
                return code
            logger.info("referral_code_collision", user_id=user_id, code=code)
        raise RuntimeError(f"Could not allocate a unique referral code for {user_id}")

    def active_code(self, db: Session, user_id: str) -> str | None:
        return db.execute(
            select(models.ReferralCode.code)
            .where(models.ReferralCode.user_id == user_id)
            .where(models.ReferralCode.active.is_(True))
        ).scalar_one_or_none()

    def _lookup(self, db: Session, code: str) -> models.ReferralCode | None:
        return db.execute(
            select(models.ReferralCode)
            .where(models.ReferralCode.code == self.normalise_code(code))
            .where(models.ReferralCode.active.is_(True))
        ).scalar_one_or_none()

    def validate_code(self, db: Session, code: str) -> bool:
        return self._lookup(db, code) is not None

    # ------------------------------------------------------------------
    def redeem_code(self, db: Session, code: str, new_user_id: str, now: datetime | None = None) -> GrantResult:
        """Redeem ``code`` for ``new_user_id`` and grant rewards exactly once per pair."""
        now = as_naive_utc(now) if now else utcnow()
        self.throttle.check(db, new_user_id, now)

        referral_code = self._lookup(db, code)
        if referral_code is None:
            self.throttle.record_failure(db, new_user_id, now)
            db.commit()
            raise InvalidReferralCode(f"Unknown or inactive referral code '{code}'", code=code)

        referrer_id = referral_code.user_id
        if referrer_id == new_user_id:
            raise SelfReferral("Users cannot redeem their own referral code", user_id=new_user_id)

        created = insert_if_absent(
            db,
            models.ReferralGrant,
            {
                "referrer_id": referrer_id,
                "referee_id": new_user_id,
                "code": referral_code.code,
                "status": "completed",
                "created_at": now,
            },
            ("referrer_id", "referee_id"),
        )
        if not created:
            logger.info("referral_duplicate_pair", referrer_id=referrer_id, referee_id=new_user_id)
            raise DuplicateReferralPair(
                "Referral already redeemed for this pair", referrer_id=referrer_id, referee_id=new_user_id
            )

        grant = db.execute(
            select(models.ReferralGrant)
            .where(models.ReferralGrant.referrer_id == referrer_id)
            .where(models.ReferralGrant.referee_id == new_user_id)
        ).scalar_one()

        referrer_extended = self._reward_referrer(db, referrer_id, grant.id, now)
        result = self._reward_referee(db, grant, now)
        result.referrer_extended = referrer_extended
        self.throttle.reset(db, new_user_id)

        notifier = self.subscriptions.notifier
        notifier.notify_user(
            referrer_id,
            "referral_rewarded",
            points=self.settings.referral_referrer_points,
            credit=self.settings.referral_referrer_credit,
        )
        notifier.notify_user(
            new_user_id,
            "referral_welcome",
            days=self.settings.referral_grant_days,
            plan=self.settings.referral_grant_plan,
        )
        logger.info(
            "referral_redeemed",
            referral_grant_id=grant.id,
            referrer_id=referrer_id,
            referee_id=new_user_id,
            expires_at=result.expires_at.isoformat(),
        )
        return result

    def _reward_referrer(self, db: Session, referrer_id: str, grant_id: int, now: datetime) -> bool:
        settings = self.settings
        self.rewards.book(db, referrer_id, KIND_POINTS, settings.referral_referrer_points, grant_id)
        self.rewards.book(db, referrer_id, KIND_CREDIT, settings.referral_referrer_credit, grant_id)

        subscription = self.subscriptions.get_subscription(db, referrer_id)
        if subscription is None or subscription.status != models.SUBSCRIPTION_ACTIVE:
            return False
        outcome = self.subscriptions.extend_period(
            db,
            referrer_id,
            settings.referral_referrer_extension_days,
            event_id=f"referral:{grant_id}:extension",
            now=now,
        )
        return outcome.applied

    def _reward_referee(self, db: Session, grant: models.ReferralGrant, now: datetime) -> GrantResult:
        settings = self.settings
        referee_id = grant.referee_id
        self.rewards.book(db, referee_id, KIND_POINTS, settings.referral_referee_points, grant.id)
        self.rewards.book(
            db,
            referee_id,
            KIND_DISCOUNT,
            settings.referral_referee_discount,
            grant.id,
            expires_at=now + timedelta(days=settings.referral_discount_valid_days),
        )

        expires_at = now + timedelta(days=settings.referral_grant_days)
        entitlement = self.subscriptions.grant_temporary_plan(
            db,
            referee_id,
            settings.referral_grant_plan,
            starts_at=now,
            expires_at=expires_at,
            source="referral",
            referral_grant_id=grant.id,
        )
        task_id = self.subscriptions.queue.schedule(
            db,
            TASK_EXPIRE_GRANT,
            referee_id,
            {"entitlement_grant_id": entitlement.id, "referral_grant_id": grant.id},
            expires_at,
        )
        return GrantResult(
            referral_grant_id=grant.id,
            referrer_id=grant.referrer_id,
            referee_id=referee_id,
            code=grant.code,
            plan_id=entitlement.plan_id,
            entitlement_grant_id=entitlement.id,
            expires_at=expires_at,
            expiry_task_id=task_id,
            referrer_extended=False,
        )

    # ------------------------------------------------------------------
    def stats(self, db: Session, user_id: str) -> dict[str, object]:
        total = db.execute(
            select(func.count(models.ReferralGrant.id)).where(models.ReferralGrant.referrer_id == user_id)
        ).scalar_one()
        balance = self.rewards.balance(db, user_id)
        return {
            "referral_code": self.active_code(db, user_id),
            "total_referrals": total,
            "points": balance.points,
            "credit": balance.credit,
            "discount": balance.discount,
        }

    def leaderboard(self, db: Session, limit: int = 10) -> list[LeaderboardEntry]:
        """Referrers ranked by grant count, earliest first grant breaking ties."""
        count = func.count(models.ReferralGrant.id)
        first = func.min(models.ReferralGrant.created_at)
        rows = db.execute(
            select(models.ReferralGrant.referrer_id, count, first)
            .where(models.ReferralGrant.status == "completed")
            .group_by(models.ReferralGrant.referrer_id)
            .order_by(count.desc(), first.asc())
            .limit(limit)
        ).all()
        return [
            LeaderboardEntry(referrer_id=referrer_id, referrals=referrals, first_referral_at=first_at)
            for referrer_id, referrals, first_at in rows
        ]


__all__ = ["GrantResult", "LeaderboardEntry", "ReferralLedger"]
