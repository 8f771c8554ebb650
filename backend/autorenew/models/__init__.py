# 全モデルをインポート (Alembic autogenerate用)
from autorenew.models.subscription import AutoRenewSubscription
from autorenew.models.payment_log import PaymentLog
from autorenew.models.system_log import SystemLog

__all__ = [
    "AutoRenewSubscription",
    "PaymentLog",
    "SystemLog",
]
