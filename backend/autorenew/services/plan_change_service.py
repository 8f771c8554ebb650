"""プラン変更 (アップグレード) 予約とスケジュール登録リトライ

流れ:
1. クライアントが schedule_change でアップグレードを予約 → 予約 + 解約ロック作成
2. エグゼキュータが due_plan_changes を取得し、決済側でスケジュール登録を試行
3. 結果を record_schedule_outcome で報告
   - 成功: scheduled=True (以後、適用日時の請求成功時に確定)
   - 失敗: 指数バックオフで再試行、上限到達で give_up (解約ロック解除)
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import redis
from sqlalchemy.orm import Session

from autorenew.core.config import settings
from autorenew.core import clock
from autorenew.core import errors
from autorenew.core.logging import get_logger
from autorenew.services import alert_service
from autorenew.services import plan_change_store as store
from autorenew.services.plan_change_store import (
    CancelLock,
    MalformedStateError,
    PlanChangeRequest,
    CANCEL_LOCK_REASON_UPGRADE,
)
from autorenew.services.subscription_service import get_active_subscription

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 10
    base_delay_seconds: int = 60
    max_delay_seconds: int = 6 * 60 * 60
    overdue_max_delay_seconds: int = 15 * 60
    min_delay_seconds: int = 30
    alert_attempts: tuple[int, ...] = (1, 3, 5)


def get_retry_config() -> RetryConfig:
    """設定値からリトライ設定を作成 (適用日時超過後の上限は通常上限以下に丸める)"""
    max_delay = max(settings.PLAN_CHANGE_MAX_DELAY_SECONDS, 0)
    return RetryConfig(
        max_retries=max(settings.PLAN_CHANGE_MAX_RETRIES, 1),
        base_delay_seconds=max(settings.PLAN_CHANGE_BASE_DELAY_SECONDS, 0),
        max_delay_seconds=max_delay,
        overdue_max_delay_seconds=min(max(settings.PLAN_CHANGE_OVERDUE_MAX_DELAY_SECONDS, 0), max_delay),
        min_delay_seconds=max(settings.PLAN_CHANGE_MIN_DELAY_SECONDS, 0),
        alert_attempts=tuple(settings.alert_attempts_list),
    )


def compute_backoff_delay(attempts: int, overdue: bool, cfg: RetryConfig) -> int:
    """attempts回目 (1始まり) の失敗後の待機秒数"""
    exp = max(0, attempts - 1)
    cap = cfg.overdue_max_delay_seconds if overdue else cfg.max_delay_seconds
    delay = min(cfg.base_delay_seconds * (2 ** exp), cap)
    return max(cfg.min_delay_seconds, int(delay))


def compute_next_attempt_at(now: int, effective_at: int, attempts: int, cfg: RetryConfig) -> int:
    """次回試行日時。適用日時を過ぎていれば短い上限で積極的に再試行する"""
    overdue = effective_at > 0 and now >= effective_at
    return now + compute_backoff_delay(attempts, overdue, cfg)


# =========================================================
# 予約
# =========================================================

def schedule_change(
    db: Session,
    r: redis.Redis,
    wallet_address: str,
    to_plan_type: int,
    to_amount_usdc: Decimal,
    to_period_seconds: int,
    effective_at: Optional[int] = None,
    now: Optional[int] = None,
) -> tuple[PlanChangeRequest, CancelLock]:
    """アップグレード予約 (次回更新時に適用)。既存の予約は上書き"""
    now = now if now is not None else clock.now_ts()

    # 行ロック中に書き込み、同じウォレットの解約と直列化する
    try:
        sub = get_active_subscription(db, wallet_address, for_update=True)
        if not sub:
            raise errors.no_active_subscription(wallet_address)

        if to_plan_type < sub.plan_type:
            raise errors.downgrade_not_allowed(sub.plan_type, to_plan_type)

        effective_at = effective_at or sub.next_payment_at

        change = PlanChangeRequest(
            request_id=uuid.uuid4().hex,
            from_plan_type=sub.plan_type,
            to_plan_type=to_plan_type,
            to_amount_usdc=to_amount_usdc,
            to_period_seconds=to_period_seconds,
            effective_at=effective_at,
            created_at=now,
            attempts=0,
            next_attempt_at=now,
        )
        lock = CancelLock(
            locked_until=effective_at,
            reason=CANCEL_LOCK_REASON_UPGRADE,
            created_at=now,
        )
        store.save_plan_change(r, wallet_address, change, lock)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        f"アップグレード予約: wallet={wallet_address}, subscription_id={sub.id}, "
        f"plan {sub.plan_type} → {to_plan_type}, 適用予定={effective_at}"
    )
    return change, lock


# =========================================================
# エグゼキュータ向けフィード
# =========================================================

def due_plan_changes(
    r: redis.Redis,
    cursor: int = 0,
    limit: int = 100,
    only_unscheduled: bool = True,
    now: Optional[int] = None,
) -> tuple[list[tuple[str, PlanChangeRequest]], Optional[int]]:
    """スケジュール登録を(再)試行すべきプラン変更の1ページ分と次カーソル (走査完了ならNone)"""
    now = now if now is not None else clock.now_ts()

    next_cursor, changes = store.scan_plan_changes(r, cursor=cursor, count=limit)

    tasks = []
    for wallet, change in changes:
        if only_unscheduled and (change.scheduled or change.give_up):
            continue
        if change.next_attempt_at > now:
            continue
        tasks.append((wallet, change))

    return tasks, (next_cursor or None)


# =========================================================
# スケジュール登録結果の報告
# =========================================================

@dataclass
class ScheduleResult:
    status: str
    change: Optional[PlanChangeRequest] = None
    attempt: int = 0
    alert: bool = False
    lock_released: bool = False


def record_schedule_outcome(
    db: Session,
    r: redis.Redis,
    wallet_address: str,
    tx_ref: Optional[str] = None,
    error_message: Optional[str] = None,
    now: Optional[int] = None,
    cfg: Optional[RetryConfig] = None,
) -> ScheduleResult:
    """
    エグゼキュータからのスケジュール登録結果を反映 (冪等)

    - 予約なし / give_up 済み / scheduled 済み → 何もしない
    - 失敗報告が次回試行日時より前に届いた → 再送とみなして無視
    """
    now = now if now is not None else clock.now_ts()
    cfg = cfg or get_retry_config()

    def _mutate(change: Optional[PlanChangeRequest]):
        if change is None:
            return None, False, ScheduleResult("no_pending_change")
        if change.give_up:
            return None, False, ScheduleResult("given_up", change, change.attempts)
        if change.scheduled:
            return None, False, ScheduleResult("already_scheduled", change, change.attempts)

        if not error_message:
            updated = change.model_copy(update={
                "scheduled": True,
                "schedule_ref": tx_ref or change.schedule_ref,
                "scheduled_at": now,
                "last_error": None,
                "last_attempt_at": now,
                "next_attempt_at": 0,
            })
            return updated, False, ScheduleResult("scheduled", updated, updated.attempts)

        if change.next_attempt_at > now:
            return None, False, ScheduleResult("duplicate", change, change.attempts)

        attempt = change.attempts + 1
        give_up = attempt >= cfg.max_retries
        alert = alert_service.should_alert(attempt, give_up, list(cfg.alert_attempts), change.alerted_attempts)
        alerted = sorted(set(change.alerted_attempts) | {attempt}) if alert else change.alerted_attempts

        updated = change.model_copy(update={
            "attempts": attempt,
            "last_attempt_at": now,
            "next_attempt_at": 0 if give_up else compute_next_attempt_at(now, change.effective_at, attempt, cfg),
            "give_up": give_up,
            "give_up_at": now if give_up else 0,
            "last_error": error_message,
            "schedule_ref": tx_ref or change.schedule_ref,
            "alerted_attempts": alerted,
        })
        status = "given_up" if give_up else "retry_scheduled"
        return updated, give_up, ScheduleResult(status, updated, attempt, alert, lock_released=give_up)

    try:
        result = store.update_plan_change(r, wallet_address, _mutate)
    except MalformedStateError:
        logger.warning(f"プラン変更データ破損のため破棄: wallet={wallet_address}")
        store.delete_plan_change_if(r, wallet_address, None)
        return ScheduleResult("malformed_discarded", lock_released=True)

    log_ctx = {"wallet_address": wallet_address, "attempt": result.attempt, "status": result.status}
    if result.status == "scheduled":
        logger.info(f"プラン変更スケジュール登録完了: wallet={wallet_address}, ref={tx_ref}", extra=log_ctx)
    elif result.status == "retry_scheduled":
        logger.warning(
            f"プラン変更スケジュール登録失敗→リトライ: wallet={wallet_address}, "
            f"attempt={result.attempt}/{cfg.max_retries}, next={result.change.next_attempt_at}, "
            f"error={error_message}",
            extra=log_ctx,
        )
    elif result.status == "given_up" and result.lock_released:
        logger.error(
            f"プラン変更スケジュール登録リトライ上限: wallet={wallet_address}, "
            f"attempt={result.attempt}/{cfg.max_retries}, 解約ロック解除",
            extra=log_ctx,
        )
    else:
        logger.info(f"スケジュール結果報告スキップ: wallet={wallet_address}, status={result.status}", extra=log_ctx)

    # 状態は確定済み。通知の失敗で巻き戻さない
    if result.alert:
        try:
            alert_service.notify_schedule_failure(db, wallet_address, result.change, result.attempt, error_message)
        except Exception as e:
            logger.error(f"プラン変更アラート通知エラー: wallet={wallet_address} - {e}")

    return result
