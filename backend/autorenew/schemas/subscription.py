from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class CreateOrUpdateRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1, max_length=64)
    plan_type: int = Field(..., ge=1)
    amount_usdc: Decimal = Field(..., gt=0)
    period_seconds: int = Field(..., ge=1)
    payment_account_ref: Optional[str] = Field(None, max_length=255)


class ScheduleChangeRequest(BaseModel):
    wallet_address: str = Field(..., min_length=1, max_length=64)
    to_plan_type: int = Field(..., ge=1)
    to_amount_usdc: Decimal = Field(..., gt=0)
    to_period_seconds: int = Field(..., ge=1)
    effective_at: Optional[int] = Field(None, ge=1)  # 省略時は次回請求日時


class SubscriptionInfo(BaseModel):
    id: int
    wallet_address: str
    plan_type: int
    amount_usdc: Decimal
    period_seconds: int
    next_payment_at: int
    is_active: bool
    payment_account_ref: Optional[str] = None

    model_config = {"from_attributes": True}


class PendingChangeInfo(BaseModel):
    from_plan_type: int
    to_plan_type: int
    to_amount_usdc: Decimal
    to_period_seconds: int
    effective_at: int
    attempts: int
    last_attempt_at: int
    next_attempt_at: int
    scheduled: bool
    schedule_ref: Optional[str] = None
    give_up: bool
    last_error: Optional[str] = None

    model_config = {"from_attributes": True}


class CreateOrUpdateResponse(BaseModel):
    created: bool
    subscription: SubscriptionInfo


class ScheduleChangeResponse(BaseModel):
    wallet_address: str
    pending_change: PendingChangeInfo
    cancel_locked_until: int


class CancelResponse(BaseModel):
    wallet_address: str
    cancelled: bool


class StatusResponse(BaseModel):
    wallet_address: str
    active: bool
    subscription: Optional[SubscriptionInfo] = None
    pending_change: Optional[PendingChangeInfo] = None
    cancel_locked_until: int = 0  # 0 = ロックなし
