"""Redis 客户端配置模块

Redis 只承载展示缓存与库存变更广播，属于可丢失的派生数据；
预占判断一律读取数据库中的权威库存。
"""

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from app.core.config import settings

REDIS_URL = settings.redis_url

# 基础 Redis 客户端
redis_client = Redis.from_url(
    REDIS_URL,
    decode_responses=True,
    socket_timeout=2,
    socket_connect_timeout=2,
)
async_redis = AsyncRedis.from_url(REDIS_URL, decode_responses=True)

# 导出
__all__ = [
    "redis_client",
    "async_redis",
    "REDIS_URL"
]
