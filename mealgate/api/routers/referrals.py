"""Referral code endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from mealgate.api import schemas
from mealgate.api.dependencies.auth import require_service_token
from mealgate.api.dependencies.database import get_db
from mealgate.api.dependencies.services import get_referral_ledger
from mealgate.services.referrals import ReferralLedger

router = APIRouter(prefix="/api/v1", tags=["referrals"], dependencies=[Depends(require_service_token)])


def _mask(user_id: str) -> str:
    return f"{user_id[-4:]}***"


@router.post("/users/{user_id}/referral-code", response_model=schemas.ReferralCodeResponse)
def generate_code(
    user_id: str,
    db: Session = Depends(get_db),
    ledger: ReferralLedger = Depends(get_referral_ledger),
) -> schemas.ReferralCodeResponse:
    code = ledger.generate_code(db, user_id)
    db.commit()
    return schemas.ReferralCodeResponse(user_id=user_id, code=code)


@router.get("/users/{user_id}/referrals", response_model=schemas.ReferralStatsResponse)
def referral_stats(
    user_id: str,
    db: Session = Depends(get_db),
    ledger: ReferralLedger = Depends(get_referral_ledger),
) -> schemas.ReferralStatsResponse:
    return schemas.ReferralStatsResponse(user_id=user_id, **ledger.stats(db, user_id))


@router.post("/referrals/redeem", response_model=schemas.RedeemResponse)
def redeem(
    payload: schemas.RedeemRequest,
    db: Session = Depends(get_db),
    ledger: ReferralLedger = Depends(get_referral_ledger),
) -> schemas.RedeemResponse:
    result = ledger.redeem_code(db, payload.code, payload.user_id)
    db.commit()
    return schemas.RedeemResponse(
        referral_grant_id=result.referral_grant_id,
        referrer_id=result.referrer_id,
        referee_id=result.referee_id,
        plan_id=result.plan_id,
        expires_at=result.expires_at,
        expiry_task_id=result.expiry_task_id,
        referrer_extended=result.referrer_extended,
    )


@router.get("/referrals/leaderboard", response_model=list[schemas.LeaderboardEntryResponse])
def leaderboard(
    limit: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
    ledger: ReferralLedger = Depends(get_referral_ledger),
) -> list[schemas.LeaderboardEntryResponse]:
    return [
        schemas.LeaderboardEntryResponse(
            position=position,
            referrer=_mask(entry.referrer_id),
            referrals=entry.referrals,
            first_referral_at=entry.first_referral_at,
        )
        for position, entry in enumerate(ledger.leaderboard(db, limit), start=1)
    ]


@router.get("/referrals/{code}", response_model=schemas.ReferralCheckResponse)
def check_code(
    code: str,
    db: Session = Depends(get_db),
    ledger: ReferralLedger = Depends(get_referral_ledger),
) -> schemas.ReferralCheckResponse:
    return schemas.ReferralCheckResponse(code=ledger.normalise_code(code), valid=ledger.validate_code(db, code))


__all__ = ["router"]
