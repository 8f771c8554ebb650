from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from autorenew.core.config import settings
from autorenew.core.errors import ServiceError
from autorenew.core.logging import setup_logging, get_logger
from autorenew.core.security_headers import SecurityHeadersMiddleware
from autorenew.core.rate_limit import limiter, rate_limit_exceeded_handler
from autorenew.core.redis import close_redis_pools
from autorenew.routers import health, subscriptions, executor

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG, service=settings.SITE_NAME, env=settings.ENV)
    logger.info(f"アプリケーション起動: env={settings.ENV}")
    if not settings.EXECUTOR_TOKEN and not settings.is_development:
        logger.warning("EXECUTOR_TOKEN 未設定: エグゼキュータAPIはすべて拒否されます")
    yield
    await close_redis_pools()
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    logger.info(f"業務エラー: {request.method} {request.url.path} → {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# --- バリデーションエラー日本語化 ---
_FIELD_JA = {
    "wallet_address": "ウォレットアドレス",
    "plan_type": "プラン種別",
    "to_plan_type": "変更先プラン種別",
    "amount_usdc": "請求額",
    "to_amount_usdc": "変更先請求額",
    "period_seconds": "請求周期",
    "to_period_seconds": "変更先請求周期",
    "effective_at": "適用日時",
    "payment_account_ref": "決済アカウント参照",
    "subscription_id": "購読ID",
    "success": "成否",
    "tx_ref": "トランザクション参照",
    "error_message": "エラーメッセージ",
    "limit": "取得件数",
    "cursor": "カーソル",
}


def _translate_error(err: dict) -> str:
    t = err.get("type", "")
    ctx = err.get("ctx", {})
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    fj = _FIELD_JA.get(field, field)

    if t == "missing":
        return f"{fj}は必須です"
    if t == "string_too_short":
        return f"{fj}は{ctx.get('min_length', '')}文字以上で入力してください"
    if t == "string_too_long":
        return f"{fj}は{ctx.get('max_length', '')}文字以下で入力してください"
    if t in ("int_parsing", "int_type", "decimal_parsing", "decimal_type"):
        return f"{fj}は数値で入力してください"
    if t == "greater_than":
        return f"{fj}は{ctx.get('gt', '')}より大きい値を入力してください"
    if t == "greater_than_equal":
        return f"{fj}は{ctx.get('ge', '')}以上の値を入力してください"
    if t == "string_type":
        return f"{fj}は文字列で入力してください"
    if t in ("bool_parsing", "bool_type"):
        return f"{fj}は真偽値で入力してください"
    if t == "value_error" and ctx.get("error"):
        return str(ctx["error"])
    return f"{fj}: 入力値が不正です"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_translate_error(e) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={"error": "validation_error", "detail": "、".join(messages)},
    )


# ミドルウェア (登録順序: 後に登録したものが先に実行される)
# セキュリティヘッダー
app.add_middleware(SecurityHeadersMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(subscriptions.router)
app.include_router(executor.router)
