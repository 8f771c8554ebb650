"""エグゼキュータ向けルーター: 課金対象フィード, プラン変更フィード, 結果報告

エグゼキュータは少なくとも1回配信で報告するため、報告系はすべて冪等。
DB・Redisとも同期クライアントのため、エンドポイントは def (スレッドプールで実行)。
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from autorenew.core.database import get_db
from autorenew.core.redis import get_sync_redis
from autorenew.schemas.executor import (
    DuePaymentsResponse,
    PlanChangesResponse,
    PlanChangeTask,
    ScheduleOutcomeReport,
    ScheduleOutcomeResponse,
    PaymentOutcomeReport,
    PaymentOutcomeResponse,
)
from autorenew.schemas.subscription import SubscriptionInfo
from autorenew.services import subscription_service, plan_change_service
from autorenew.routers.deps import require_executor

router = APIRouter(
    prefix="/api/executor",
    tags=["executor"],
    dependencies=[Depends(require_executor)],
)


@router.get("/due-payments", response_model=DuePaymentsResponse)
def due_payments(
    limit: Optional[int] = Query(None, ge=1),
    gated: bool = True,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    """請求対象の購読一覧 (gated=true: プラン変更未確定のウォレットを除外)"""
    if gated:
        subs = subscription_service.due_payments_gated(db, r, limit)
    else:
        subs = subscription_service.due_payments(db, limit)
    return DuePaymentsResponse(
        gated=gated,
        count=len(subs),
        items=[SubscriptionInfo.model_validate(s) for s in subs],
    )


@router.get("/plan-changes", response_model=PlanChangesResponse)
def plan_changes(
    cursor: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    only_unscheduled: bool = True,
    r=Depends(get_sync_redis),
):
    """スケジュール登録を(再)試行すべきプラン変更 (カーソルでページング)"""
    tasks, next_cursor = plan_change_service.due_plan_changes(
        r,
        cursor=cursor,
        limit=subscription_service.clamp_limit(limit),
        only_unscheduled=only_unscheduled,
    )
    return PlanChangesResponse(
        items=[PlanChangeTask(wallet_address=wallet, **change.model_dump()) for wallet, change in tasks],
        next_cursor=next_cursor,
    )


@router.post("/plan-changes/report", response_model=ScheduleOutcomeResponse)
def report_schedule_outcome(
    req: ScheduleOutcomeReport,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    result = plan_change_service.record_schedule_outcome(
        db, r,
        wallet_address=req.wallet_address,
        tx_ref=req.tx_ref,
        error_message=req.error_message,
    )
    change = result.change
    return ScheduleOutcomeResponse(
        wallet_address=req.wallet_address,
        status=result.status,
        attempts=change.attempts if change else 0,
        next_attempt_at=change.next_attempt_at if change else 0,
        give_up=change.give_up if change else False,
    )


@router.post("/payments/report", response_model=PaymentOutcomeResponse)
def report_payment_outcome(
    req: PaymentOutcomeReport,
    db: Session = Depends(get_db),
    r=Depends(get_sync_redis),
):
    result = subscription_service.record_payment_outcome(
        db, r,
        subscription_id=req.subscription_id,
        success=req.success,
        tx_ref=req.tx_ref,
        error_message=req.error_message,
    )
    return PaymentOutcomeResponse(
        subscription_id=req.subscription_id,
        status=result.status,
        plan_change_applied=result.plan_change_applied,
        payment_log_id=result.log_id,
        subscription=SubscriptionInfo.model_validate(result.subscription),
    )
