"""Redis接続

プラン変更予約・解約ロックは同期クライアント (get_sync_redis) で読み書きする。
非同期プールはヘルスチェック専用。
"""
import redis as sync_redis
import redis.asyncio as aioredis
from autorenew.core.config import settings

state_pool = sync_redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=settings.REDIS_MAX_CONNECTIONS,
    decode_responses=True,
)

health_pool = aioredis.ConnectionPool.from_url(
    settings.REDIS_URL,
    max_connections=2,
    decode_responses=True,
    socket_connect_timeout=2,
)


def get_sync_redis() -> sync_redis.Redis:
    """FastAPI依存関数: 状態ストア用Redisクライアント取得"""
    return sync_redis.Redis(connection_pool=state_pool)


async def check_redis_connection() -> bool:
    """Redis接続チェック"""
    try:
        r = aioredis.Redis(connection_pool=health_pool)
        return bool(await r.ping())
    except Exception:
        return False


async def close_redis_pools():
    """アプリ終了時にプールを閉じる"""
    state_pool.disconnect()
    await health_pool.disconnect()
