from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Numeric, Index, func
from autorenew.core.database import Base


class AutoRenewSubscription(Base):
    __tablename__ = "auto_renew_subscriptions"
    __table_args__ = (
        Index("ix_auto_renew_subscriptions_due", "is_active", "next_payment_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(64), nullable=False, index=True)
    plan_type = Column(Integer, nullable=False, comment="1=月額, 2=四半期, 3=年額")
    amount_usdc = Column(Numeric(18, 6), nullable=False, comment="請求額 (USDC)")
    period_seconds = Column(Integer, nullable=False, comment="請求周期 (秒)")
    next_payment_at = Column(BigInteger, nullable=False, comment="次回請求日時 (UNIX秒)")
    is_active = Column(Boolean, nullable=False, default=True)
    payment_account_ref = Column(String(255), nullable=True, comment="決済側アカウント参照 (PDA等)")
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
