"""エグゼキュータ向けスキーマ"""
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from autorenew.schemas.subscription import SubscriptionInfo, PendingChangeInfo


class DuePaymentsResponse(BaseModel):
    gated: bool
    count: int
    items: list[SubscriptionInfo]


class PlanChangeTask(PendingChangeInfo):
    wallet_address: str


class PlanChangesResponse(BaseModel):
    items: list[PlanChangeTask]
    next_cursor: Optional[int] = None  # None = 走査完了


class ScheduleOutcomeReport(BaseModel):
    """error_message なし = スケジュール登録成功"""
    wallet_address: str = Field(..., min_length=1, max_length=64)
    tx_ref: Optional[str] = Field(None, max_length=255)
    error_message: Optional[str] = None


class ScheduleOutcomeResponse(BaseModel):
    wallet_address: str
    status: str
    attempts: int = 0
    next_attempt_at: int = 0
    give_up: bool = False


class PaymentOutcomeReport(BaseModel):
    subscription_id: int = Field(..., ge=1)
    success: bool
    tx_ref: Optional[str] = Field(None, max_length=255)
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def _require_tx_ref_on_success(self):
        if self.success and not self.tx_ref:
            raise ValueError("請求成功の報告にはトランザクション参照が必須です")
        return self


class PaymentOutcomeResponse(BaseModel):
    subscription_id: int
    status: str
    plan_change_applied: bool = False
    payment_log_id: Optional[int] = None
    subscription: SubscriptionInfo
