"""自動更新ルーター (クライアント向け): 購読作成・更新, アップグレード予約, 解約, 状態取得

DB・Redisとも同期クライアントのため、エンドポイントは def (スレッドプールで実行)。
"""
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from autorenew.core.database import get_db
from autorenew.core.redis import get_sync_redis
from autorenew.core.rate_limit import (
    limiter,
    SUBSCRIBE_RATE_LIMIT,
    PLAN_CHANGE_RATE_LIMIT,
    CANCEL_RATE_LIMIT,
    STATUS_RATE_LIMIT,
)
from autorenew.schemas.subscription import (
    CreateOrUpdateRequest,
    CreateOrUpdateResponse,
    ScheduleChangeRequest,
    ScheduleChangeResponse,
    CancelResponse,
    StatusResponse,
    SubscriptionInfo,
    PendingChangeInfo,
)
from autorenew.services import subscription_service, plan_change_service

router = APIRouter(prefix="/api/auto-renew", tags=["auto-renew"])


@router.post("", response_model=CreateOrUpdateResponse)
@limiter.limit(SUBSCRIBE_RATE_LIMIT)
def create_or_update(
    request: Request,
    response: Response,
    req: CreateOrUpdateRequest,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    """購読作成 (201) or 既存購読の即時更新 (200)"""
    sub, created = subscription_service.create_or_update(
        db, r,
        wallet_address=req.wallet_address,
        plan_type=req.plan_type,
        amount_usdc=req.amount_usdc,
        period_seconds=req.period_seconds,
        payment_account_ref=req.payment_account_ref,
    )
    if created:
        response.status_code = 201
    return CreateOrUpdateResponse(created=created, subscription=SubscriptionInfo.model_validate(sub))


@router.post("/schedule-change", response_model=ScheduleChangeResponse)
@limiter.limit(PLAN_CHANGE_RATE_LIMIT)
def schedule_change(
    request: Request,
    req: ScheduleChangeRequest,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    """アップグレード予約 (次回更新時に適用、それまで解約不可)"""
    change, lock = plan_change_service.schedule_change(
        db, r,
        wallet_address=req.wallet_address,
        to_plan_type=req.to_plan_type,
        to_amount_usdc=req.to_amount_usdc,
        to_period_seconds=req.to_period_seconds,
        effective_at=req.effective_at,
    )
    return ScheduleChangeResponse(
        wallet_address=req.wallet_address,
        pending_change=PendingChangeInfo.model_validate(change.model_dump()),
        cancel_locked_until=lock.locked_until,
    )


@router.post("/{wallet_address}/cancel", response_model=CancelResponse)
@limiter.limit(CANCEL_RATE_LIMIT)
def cancel(
    request: Request,
    wallet_address: str,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    """自動更新の解約 (アップグレード予約中は 409 cancel_locked)"""
    sub = subscription_service.cancel(db, r, wallet_address)
    return CancelResponse(wallet_address=wallet_address, cancelled=sub is not None)


@router.get("/{wallet_address}", response_model=StatusResponse)
@limiter.limit(STATUS_RATE_LIMIT)
def get_status(
    request: Request,
    wallet_address: str,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    status = subscription_service.get_status(db, r, wallet_address)
    sub = status["subscription"]
    change = status["pending_change"]
    return StatusResponse(
        wallet_address=wallet_address,
        active=status["active"],
        subscription=SubscriptionInfo.model_validate(sub) if sub else None,
        pending_change=PendingChangeInfo.model_validate(change.model_dump()) if change else None,
        cancel_locked_until=status["cancel_locked_until"],
    )
