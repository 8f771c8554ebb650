"""プラン変更スケジュール失敗のアラート

監査ログ (system_logs) と外部Webhookの2経路で通知する。
どちらが失敗してもスケジュール状態は巻き戻さない。
"""
from sqlalchemy.orm import Session
import httpx

from autorenew.core.config import settings
from autorenew.core import clock
from autorenew.core.errors import ErrorCode
from autorenew.core.logging import get_logger
from autorenew.models.system_log import SystemLog
from autorenew.services.plan_change_store import PlanChangeRequest

logger = get_logger(__name__)

ALERT_TYPE_SCHEDULE_FAILED = "AUTO_RENEW_PLAN_CHANGE_SCHEDULE_FAILED"


def should_alert(attempt: int, give_up: bool, alert_attempts: list[int], alerted_attempts: list[int]) -> bool:
    """通知対象の試行か (同じ試行回数では1回だけ)"""
    if attempt in alerted_attempts:
        return False
    return attempt in alert_attempts or give_up


def build_webhook_payload(wallet_address: str, change: PlanChangeRequest, attempt: int, error_message: str) -> dict:
    return {
        "type": ALERT_TYPE_SCHEDULE_FAILED,
        "walletAddress": wallet_address,
        "attempt": attempt,
        "effectiveAt": change.effective_at,
        "toPlanType": change.to_plan_type,
        "error": error_message,
        "giveUp": change.give_up,
        "ts": clock.now_ts(),
    }


def notify_schedule_failure(
    db: Session,
    wallet_address: str,
    change: PlanChangeRequest,
    attempt: int,
    error_message: str,
):
    """スケジュール失敗を通知 (監査ログ + Webhook)"""
    _write_audit_log(db, wallet_address, change, attempt, error_message)
    _post_webhook(build_webhook_payload(wallet_address, change, attempt, error_message))


def _write_audit_log(
    db: Session,
    wallet_address: str,
    change: PlanChangeRequest,
    attempt: int,
    error_message: str,
):
    message = (
        f"attempt={attempt} effectiveAt={change.effective_at} "
        f"toPlanType={change.to_plan_type} error={error_message}"
    )[:1000]
    try:
        db.add(SystemLog(
            level="ERROR" if change.give_up else "WARNING",
            event_type=ErrorCode.SCHEDULE_ATTEMPT_FAILED,
            wallet_address=wallet_address,
            message=message,
            details={
                "attempt": attempt,
                "effective_at": change.effective_at,
                "from_plan_type": change.from_plan_type,
                "to_plan_type": change.to_plan_type,
                "give_up": change.give_up,
                "error": error_message,
            },
        ))
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"アラート監査ログ書き込み失敗: wallet={wallet_address}, attempt={attempt} - {e}")


def _post_webhook(payload: dict):
    if not settings.ALERT_WEBHOOK_URL:
        return

    headers = {"Content-Type": "application/json"}
    if settings.ALERT_WEBHOOK_TOKEN:
        headers["Authorization"] = f"Bearer {settings.ALERT_WEBHOOK_TOKEN}"

    try:
        response = httpx.post(
            settings.ALERT_WEBHOOK_URL,
            json=payload,
            headers=headers,
            timeout=settings.ALERT_WEBHOOK_TIMEOUT_SECONDS,
        )
        response.raise_for_status()
        logger.info(f"アラートWebhook送信: wallet={payload['walletAddress']}, attempt={payload['attempt']}")
    except httpx.HTTPError as e:
        logger.error(f"アラートWebhook送信失敗: wallet={payload['walletAddress']} - {e}")
