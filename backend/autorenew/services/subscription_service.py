"""自動更新購読ビジネスロジック"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import redis
from sqlalchemy.orm import Session

from autorenew.core.config import settings
from autorenew.core import clock
from autorenew.core import errors
from autorenew.core.errors import ErrorCode
from autorenew.core.logging import get_logger
from autorenew.models.subscription import AutoRenewSubscription
from autorenew.models.payment_log import PaymentLog
from autorenew.models.system_log import SystemLog
from autorenew.services import plan_change_store as store
from autorenew.services.plan_change_store import (
    MalformedStateError,
    PlanChangeRequest,
    CANCEL_LOCK_REASON_UPGRADE,
)

logger = get_logger(__name__)


def get_active_subscription(
    db: Session, wallet_address: str, for_update: bool = False
) -> Optional[AutoRenewSubscription]:
    """ウォレットの有効な購読 (最大1件)"""
    query = db.query(AutoRenewSubscription).filter(
        AutoRenewSubscription.wallet_address == wallet_address,
        AutoRenewSubscription.is_active == True,
    )
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_subscription(
    db: Session, subscription_id: int, for_update: bool = False
) -> Optional[AutoRenewSubscription]:
    query = db.query(AutoRenewSubscription).filter(AutoRenewSubscription.id == subscription_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def clamp_limit(limit: Optional[int]) -> int:
    """バッチ件数を 1〜DUE_BATCH_MAX_LIMIT に丸める"""
    if not limit or limit <= 0:
        return settings.DUE_BATCH_LIMIT
    return min(limit, settings.DUE_BATCH_MAX_LIMIT)


def _pending_request_id(r: redis.Redis, wallet_address: str) -> Optional[str]:
    """保留中の予約ID (予約なし or 破損なら None)"""
    try:
        change = store.get_plan_change(r, wallet_address)
    except MalformedStateError:
        return None
    return change.request_id if change else None


# =========================================================
# 購読の作成・更新・解約
# =========================================================

def create_or_update(
    db: Session,
    r: redis.Redis,
    wallet_address: str,
    plan_type: int,
    amount_usdc: Decimal,
    period_seconds: int,
    payment_account_ref: Optional[str] = None,
    now: Optional[int] = None,
) -> tuple[AutoRenewSubscription, bool]:
    """
    購読作成 or 更新 (即時反映)

    既存購読がある場合はプランを上書きし次回請求日時を now + period に進める。
    保留中のプラン変更予約と解約ロックは破棄する。
    """
    now = now if now is not None else clock.now_ts()

    try:
        sub = get_active_subscription(db, wallet_address, for_update=True)
        created = sub is None
        request_id = _pending_request_id(r, wallet_address)

        if sub is None:
            sub = AutoRenewSubscription(
                wallet_address=wallet_address,
                plan_type=plan_type,
                amount_usdc=amount_usdc,
                period_seconds=period_seconds,
                next_payment_at=now + period_seconds,
                is_active=True,
                payment_account_ref=payment_account_ref,
            )
            db.add(sub)
        else:
            if plan_type < sub.plan_type:
                raise errors.downgrade_not_allowed(sub.plan_type, plan_type)
            sub.plan_type = plan_type
            sub.amount_usdc = amount_usdc
            sub.period_seconds = period_seconds
            sub.next_payment_at = now + period_seconds
            if payment_account_ref:
                sub.payment_account_ref = payment_account_ref

        db.commit()
        db.refresh(sub)
    except Exception:
        db.rollback()
        raise

    store.delete_plan_change_if(r, wallet_address, request_id)

    if created:
        logger.info(f"自動更新購読作成: wallet={wallet_address}, subscription_id={sub.id}, plan={plan_type}")
    else:
        logger.info(f"自動更新購読更新: wallet={wallet_address}, subscription_id={sub.id}, plan={plan_type}")
    return sub, created


def cancel(db: Session, r: redis.Redis, wallet_address: str) -> Optional[AutoRenewSubscription]:
    """
    自動更新の解約

    アップグレード予約中 (解約ロックあり) は期限に関係なく拒否する。
    有効な購読がなければ何もしない (None)。
    """
    try:
        sub = get_active_subscription(db, wallet_address, for_update=True)

        lock = store.get_cancel_lock(r, wallet_address)
        if lock and lock.reason == CANCEL_LOCK_REASON_UPGRADE:
            raise errors.cancel_locked(lock.locked_until)
        request_id = _pending_request_id(r, wallet_address)

        if sub:
            sub.is_active = False
        db.commit()
    except Exception:
        db.rollback()
        raise

    store.delete_plan_change_if(r, wallet_address, request_id)

    if sub:
        logger.info(f"自動更新解約: wallet={wallet_address}, subscription_id={sub.id}")
    else:
        logger.info(f"自動更新解約: 有効な購読なし wallet={wallet_address}")
    return sub


def get_status(db: Session, r: redis.Redis, wallet_address: str) -> dict:
    """クライアント表示用の状態 (購読・保留中の変更・解約ロック期限)"""
    sub = get_active_subscription(db, wallet_address)

    try:
        change = store.get_plan_change(r, wallet_address)
    except MalformedStateError:
        logger.warning(f"プラン変更データ破損: wallet={wallet_address}")
        change = None

    lock = store.get_cancel_lock(r, wallet_address)

    return {
        "wallet_address": wallet_address,
        "active": sub is not None,
        "subscription": sub,
        "pending_change": change,
        "cancel_locked_until": lock.locked_until if lock else 0,
    }


# =========================================================
# 課金対象フィード
# =========================================================

def due_payments(db: Session, limit: Optional[int] = None, now: Optional[int] = None) -> list[AutoRenewSubscription]:
    """請求日時を過ぎた有効な購読 (古い順)"""
    now = now if now is not None else clock.now_ts()
    return (
        db.query(AutoRenewSubscription)
        .filter(
            AutoRenewSubscription.is_active == True,
            AutoRenewSubscription.next_payment_at <= now,
        )
        .order_by(AutoRenewSubscription.next_payment_at.asc(), AutoRenewSubscription.id.asc())
        .limit(clamp_limit(limit))
        .all()
    )


def due_payments_gated(
    db: Session, r: redis.Redis, limit: Optional[int] = None, now: Optional[int] = None
) -> list[AutoRenewSubscription]:
    """
    due_payments から、適用日時を過ぎたのに決済側スケジュール未確定の
    プラン変更を持つウォレットを除外 (旧プランでの請求を防ぐ)
    """
    now = now if now is not None else clock.now_ts()
    subs = due_payments(db, limit, now)

    changes = store.get_plan_changes(r, [s.wallet_address for s in subs])

    result = []
    for sub in subs:
        change = changes.get(sub.wallet_address)
        if change and change.blocks_billing(now):
            logger.info(
                f"請求保留 (プラン変更未確定): wallet={sub.wallet_address}, "
                f"subscription_id={sub.id}, effective_at={change.effective_at}"
            )
            continue
        result.append(sub)
    return result


# =========================================================
# 請求結果の報告
# =========================================================

@dataclass
class PaymentResult:
    status: str
    subscription: AutoRenewSubscription
    plan_change_applied: bool = False
    log_id: Optional[int] = None


def _find_success_log(db: Session, sub: AutoRenewSubscription, tx_ref: str) -> Optional[PaymentLog]:
    """同じトランザクション参照の請求成功ログ"""
    return db.query(PaymentLog).filter(
        PaymentLog.subscription_id == sub.id,
        PaymentLog.transaction_id == tx_ref,
        PaymentLog.success == True,
    ).first()


def _already_applied(sub: AutoRenewSubscription, change: PlanChangeRequest) -> bool:
    return (
        sub.plan_type == change.to_plan_type
        and Decimal(sub.amount_usdc) == change.to_amount_usdc
        and sub.period_seconds == change.to_period_seconds
    )


def _finish_interrupted_cleanup(
    r: redis.Redis, sub: AutoRenewSubscription, change: Optional[PlanChangeRequest], now: int
):
    """前回の確定後にRedisの後片付けだけ失敗していた場合はここで完了させる"""
    if change and change.scheduled and change.effective_at <= now and _already_applied(sub, change):
        store.delete_plan_change_if(r, sub.wallet_address, change.request_id)


def record_payment_outcome(
    db: Session,
    r: redis.Redis,
    subscription_id: int,
    success: bool,
    tx_ref: Optional[str] = None,
    error_message: Optional[str] = None,
    now: Optional[int] = None,
) -> PaymentResult:
    """
    エグゼキュータからの請求結果を反映 (冪等)

    成功: 適用日時を過ぎた確定済みプラン変更があれば同時に適用し、次回請求日時を1周期進める
    失敗: 購読を無効化し、保留中のプラン変更も破棄する (請求のリトライはしない)
    同じ tx_ref の成功報告は再送として無視する。次回請求日時前に別の tx_ref で
    成功が届いた場合は二重請求の疑いとしてログだけ残す。
    DB更新と請求ログは1トランザクション。Redisの後片付けはコミット後に、
    読み取った予約が残っている場合だけ行う。
    """
    now = now if now is not None else clock.now_ts()

    if success and not tx_ref:
        raise errors.tx_ref_required()

    sub = get_subscription(db, subscription_id, for_update=True)
    if not sub:
        db.rollback()
        raise errors.subscription_not_found(subscription_id)

    wallet_address = sub.wallet_address

    if not sub.is_active:
        db.rollback()
        logger.info(f"請求結果報告スキップ (無効な購読): subscription_id={sub.id}, success={success}")
        return PaymentResult("inactive", sub)

    malformed = False
    try:
        change = store.get_plan_change(r, wallet_address)
    except MalformedStateError:
        change = None
        malformed = True
    request_id = change.request_id if change else None

    if success and _find_success_log(db, sub, tx_ref):
        db.rollback()
        _finish_interrupted_cleanup(r, sub, change, now)
        logger.info(f"請求成功報告の重複: subscription_id={sub.id}, tx={tx_ref}")
        return PaymentResult("duplicate", sub)

    if success and sub.next_payment_at > now:
        # 今周期は請求済み。記録だけ残して周期もプランも進めない
        try:
            log = PaymentLog(
                subscription_id=sub.id,
                success=True,
                transaction_id=tx_ref,
                error_message=error_message,
                plan_type=sub.plan_type,
                plan_change_applied=False,
            )
            db.add(log)
            db.commit()
            db.refresh(sub)
        except Exception:
            db.rollback()
            raise
        _finish_interrupted_cleanup(r, sub, change, now)
        logger.warning(
            f"二重請求の疑い (請求日時前の成功報告): subscription_id={sub.id}, tx={tx_ref}, "
            f"next_payment_at={sub.next_payment_at}",
            extra={"wallet_address": wallet_address, "subscription_id": sub.id, "status": "extra_charge"},
        )
        return PaymentResult("extra_charge", sub, False, log.id)

    apply_change = False
    discard_change = malformed or (not success and change is not None)
    if success and change and change.scheduled and change.effective_at <= now:
        if change.is_committable():
            apply_change = True
        else:
            discard_change = True

    try:
        if success:
            if apply_change:
                old_plan_type = sub.plan_type
                sub.plan_type = change.to_plan_type
                sub.amount_usdc = change.to_amount_usdc
                sub.period_seconds = change.to_period_seconds
                logger.info(
                    f"プラン変更確定: subscription_id={sub.id}, wallet={wallet_address}, "
                    f"plan {old_plan_type} → {change.to_plan_type}"
                )
            sub.next_payment_at = sub.next_payment_at + sub.period_seconds
        else:
            sub.is_active = False
            db.add(SystemLog(
                level="WARNING",
                event_type=ErrorCode.PAYMENT_FAILED,
                wallet_address=wallet_address,
                subscription_id=sub.id,
                message=f"自動更新請求失敗のため購読停止: {error_message or '-'}"[:1000],
                details={"transaction_id": tx_ref, "error": error_message},
            ))

        log = PaymentLog(
            subscription_id=sub.id,
            success=success,
            transaction_id=tx_ref,
            error_message=error_message,
            plan_type=sub.plan_type,
            plan_change_applied=apply_change,
        )
        db.add(log)
        db.commit()
        db.refresh(sub)
    except Exception:
        db.rollback()
        raise

    if apply_change or discard_change:
        if malformed:
            logger.warning(f"プラン変更データ不正のため破棄: wallet={wallet_address}")
        elif discard_change:
            logger.warning(f"プラン変更予約を破棄: wallet={wallet_address}, success={success}")
        store.delete_plan_change_if(r, wallet_address, request_id)

    if success:
        logger.info(
            f"自動更新請求成功: subscription_id={sub.id}, tx={tx_ref}, next_payment_at={sub.next_payment_at}"
        )
        return PaymentResult("paid", sub, apply_change, log.id)

    logger.warning(
        f"自動更新請求失敗→購読停止: subscription_id={sub.id}, error={error_message}",
        extra={"wallet_address": wallet_address, "subscription_id": sub.id, "status": "deactivated"},
    )
    return PaymentResult("deactivated", sub, False, log.id)
