from fastapi import APIRouter
from autorenew.core.config import settings
from autorenew.core.database import check_db_connection
from autorenew.core.redis import check_redis_connection

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """DB・Redis の疎通確認 (エグゼキュータの起動前チェックにも使う)"""
    checks = {
        "db": check_db_connection(),
        "redis": await check_redis_connection(),
    }
    return {
        "service": settings.SITE_NAME,
        "status": "ok" if all(checks.values()) else "degraded",
        **{name: "connected" if ok else "disconnected" for name, ok in checks.items()},
    }
