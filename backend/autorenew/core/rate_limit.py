"""クライアントAPIのレート制限（slowapi使用）

エグゼキュータAPIは制限しない (トークン認証済みのバッチ処理のため)。
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from autorenew.core.config import settings


def get_client_ip(request: Request) -> str:
    """
    クライアントIPアドレスを取得
    リバースプロキシ配下 (TRUST_FORWARDED_FOR=true) の場合のみ X-Forwarded-For を信頼する
    """
    if settings.TRUST_FORWARDED_FOR:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limited",
            "detail": "リクエスト回数が上限を超えました。しばらく待ってから再度お試しください。",
            "retry_after": exc.detail,
        },
    )


# エンドポイント別のレート制限定義
SUBSCRIBE_RATE_LIMIT = "10/minute"      # 購読作成・更新
PLAN_CHANGE_RATE_LIMIT = "10/minute"    # アップグレード予約
CANCEL_RATE_LIMIT = "10/minute"         # 解約
STATUS_RATE_LIMIT = "60/minute"         # 状態取得
