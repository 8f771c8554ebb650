"""共通依存関数: エグゼキュータ認証"""
import hmac
from typing import Optional

from fastapi import Header

from autorenew.core.config import settings
from autorenew.core import errors
from autorenew.core.logging import get_logger

logger = get_logger(__name__)


async def require_executor(
    x_executor_token: Optional[str] = Header(None, alias="X-Executor-Token"),
) -> None:
    """X-Executor-Token 必須。EXECUTOR_TOKEN 未設定時は開発環境のみ許可"""
    expected = settings.EXECUTOR_TOKEN
    if not expected:
        if settings.is_development:
            return
        logger.error("EXECUTOR_TOKEN 未設定のためエグゼキュータAPIを拒否")
        raise errors.unauthorized()

    if not x_executor_token or not hmac.compare_digest(x_executor_token.encode(), expected.encode()):
        logger.warning("エグゼキュータ認証失敗")
        raise errors.unauthorized()
