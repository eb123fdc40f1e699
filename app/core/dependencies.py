"""依赖注入配置模块"""

import hmac
import logging
from typing import Generator, Optional

from fastapi import Depends, Header
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

# 数据库会话依赖
from app.db.session import SessionLocal

# Redis 依赖
from app.core.redis import redis_client

from app.core.config import settings
from app.core.exceptions import UnauthorizedError
from app.services.commerce_client import get_commerce_client
from app.services.display_cache import DisplayCache
from app.services.reservation_service import ReservationService

logger = logging.getLogger(__name__)


def get_redis() -> Optional[Redis]:
    """获取同步 Redis 客户端；不可用时返回 None，调用方按无缓存处理"""
    try:
        redis_client.ping()
        return redis_client
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable, continuing without display cache: {e}")
        return None


def get_db() -> Generator[Session, None, None]:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_display_cache(redis: Optional[Redis] = Depends(get_redis)) -> DisplayCache:
    return DisplayCache(redis)


def get_reservation_service(
    db: Session = Depends(get_db),
    cache: DisplayCache = Depends(get_display_cache),
) -> ReservationService:
    """获取预占服务实例（依赖注入）"""
    return ReservationService(db=db, cache=cache, commerce=get_commerce_client())


def require_internal_token(authorization: Optional[str] = Header(None)) -> None:
    """内部管理接口鉴权：Authorization: Bearer <INTERNAL_API_TOKEN>

    未配置令牌时不做校验（本地开发环境）。
    """
    token = settings.INTERNAL_API_TOKEN
    if not token:
        return
    scheme, _, credential = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(credential.encode(), token.encode()):
        logger.error("内部接口鉴权失败")
        raise UnauthorizedError()


# 常用的依赖注入别名
DatabaseDep = Depends(get_db)
RedisDep = Depends(get_redis)
ReservationServiceDep = Depends(get_reservation_service)
InternalTokenDep = Depends(require_internal_token)
