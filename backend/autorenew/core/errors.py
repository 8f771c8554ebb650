"""業務エラー定義"""
from typing import Optional


class ErrorCode:
    DOWNGRADE_NOT_ALLOWED = "downgrade_not_allowed"
    NO_ACTIVE_SUBSCRIPTION = "no_active_subscription"
    CANCEL_LOCKED = "cancel_locked"
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    UNAUTHORIZED = "unauthorized"
    TX_REF_REQUIRED = "tx_ref_required"
    # 以下は監査ログのイベント種別として使う (HTTPエラーにはならない)
    SCHEDULE_ATTEMPT_FAILED = "schedule_attempt_failed"
    PAYMENT_FAILED = "payment_failed"


class ServiceError(Exception):
    """サービス層で発生する業務エラー (例外ハンドラでJSONに変換)"""

    def __init__(self, code: str, message: str, status_code: int = 400, extra: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.extra = extra or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message, **self.extra}


def downgrade_not_allowed(current_plan_type: int, requested_plan_type: int) -> ServiceError:
    return ServiceError(
        ErrorCode.DOWNGRADE_NOT_ALLOWED,
        "ダウングレードはできません",
        status_code=409,
        extra={"current_plan_type": current_plan_type, "requested_plan_type": requested_plan_type},
    )


def no_active_subscription(wallet_address: str) -> ServiceError:
    return ServiceError(
        ErrorCode.NO_ACTIVE_SUBSCRIPTION,
        "有効な自動更新購読がありません",
        status_code=409,
        extra={"wallet_address": wallet_address},
    )


def cancel_locked(locked_until: int) -> ServiceError:
    return ServiceError(
        ErrorCode.CANCEL_LOCKED,
        "アップグレード予約中のため解約できません",
        status_code=409,
        extra={"locked_until": locked_until},
    )


def subscription_not_found(subscription_id: int) -> ServiceError:
    return ServiceError(
        ErrorCode.SUBSCRIPTION_NOT_FOUND,
        "購読が見つかりません",
        status_code=404,
        extra={"subscription_id": subscription_id},
    )


def unauthorized() -> ServiceError:
    return ServiceError(ErrorCode.UNAUTHORIZED, "エグゼキュータ認証に失敗しました", status_code=401)


def tx_ref_required() -> ServiceError:
    return ServiceError(ErrorCode.TX_REF_REQUIRED, "請求成功の報告にはトランザクション参照が必須です", status_code=422)
