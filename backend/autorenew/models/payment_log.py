from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, func
from autorenew.core.database import Base


class PaymentLog(Base):
    """請求結果ログ (追記のみ、更新しない)"""
    __tablename__ = "auto_renew_payment_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(
        Integer, ForeignKey("auto_renew_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    success = Column(Boolean, nullable=False)
    transaction_id = Column(String(255), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    plan_type = Column(Integer, nullable=False, comment="この請求で適用されたプラン")
    plan_change_applied = Column(Boolean, nullable=False, default=False, comment="この請求でプラン変更を確定したか")
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
