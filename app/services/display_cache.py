"""商品展示缓存

Redis 中保存按商品聚合的库存快照，供商品页/列表展示使用，允许短暂过期。
这里的数据永远不是权威来源：预占判断不得读取本缓存，
库存发生变化后只做失效，不做信任。所有 Redis 异常都在本地吞掉。
"""

import json
import logging
from typing import Callable, Dict, Iterable, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.timeutils import utcnow
from app.services.availability import available

logger = logging.getLogger(__name__)

Snapshot = Dict[str, object]
SnapshotLoader = Callable[[str], Optional[Snapshot]]


def build_snapshot(store, product_id: str) -> Optional[Snapshot]:
    """缓存未命中时，从权威库存构建展示快照"""
    records = store.list_for_product(product_id)
    if not records:
        return None

    variations = {r.variation_id: available(r) for r in records if r.variation_id}
    available_stock = sum(available(r) for r in records)
    return {
        "product_id": product_id,
        "total_stock": sum(r.total_stock for r in records),
        "reserved_stock": sum(r.reserved_stock for r in records),
        "available_stock": available_stock,
        "in_stock": available_stock > 0,
        "variations": variations,
        "cached_at": utcnow().isoformat(),
    }


class DisplayCache:
    """展示缓存句柄（与 StockStore 刻意分开，只提供展示读取与失效）"""

    def __init__(
        self,
        redis: Optional[Redis],
        ttl: Optional[int] = None,
        update_ttl: Optional[int] = None,
    ):
        self.redis = redis
        self.ttl = ttl or settings.STOCK_CACHE_TTL_SECONDS
        self.update_ttl = update_ttl or settings.STOCK_UPDATE_TTL_SECONDS

    @staticmethod
    def key(product_id: str) -> str:
        return f"product:{product_id}"

    @staticmethod
    def update_key(product_id: str) -> str:
        return f"stock_update:{product_id}"

    def get(self, product_id: str) -> Optional[Snapshot]:
        if not self.redis:
            return None
        try:
            cached = self.redis.get(self.key(product_id))
        except RedisError as e:
            logger.warning(f"Display cache read failed for product {product_id}: {e}")
            return None
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except ValueError:
            logger.warning(f"Discarding malformed cache entry for product {product_id}")
            return None

    def put(self, product_id: str, snapshot: Snapshot) -> None:
        if not self.redis:
            return
        try:
            self.redis.setex(self.key(product_id), self.ttl, json.dumps(snapshot))
            logger.debug(f"Cache set for product {product_id}")
        except RedisError as e:
            logger.warning(f"Display cache write failed for product {product_id}: {e}")

    def read_through(self, product_id: str, loader: SnapshotLoader) -> Optional[Snapshot]:
        cached = self.get(product_id)
        if cached is not None:
            logger.debug(f"Cache hit for product {product_id}")
            return cached

        snapshot = loader(product_id)
        if snapshot is not None:
            self.put(product_id, snapshot)
        return snapshot

    def read_many(self, product_ids: List[str], loader: SnapshotLoader) -> Dict[str, Optional[Snapshot]]:
        """批量读取：MGET 命中部分直接返回，未命中的回源后用 pipeline 回填"""
        if not product_ids:
            return {}

        results: Dict[str, Optional[Snapshot]] = {}
        cached_values = [None] * len(product_ids)
        if self.redis:
            try:
                cached_values = self.redis.mget([self.key(pid) for pid in product_ids])
            except RedisError as e:
                logger.warning(f"Display cache batch read failed: {e}")

        missing = []
        for pid, cached in zip(product_ids, cached_values):
            if cached is not None:
                try:
                    results[pid] = json.loads(cached)
                    continue
                except ValueError:
                    pass
            missing.append(pid)

        fresh = {}
        for pid in missing:
            snapshot = loader(pid)
            results[pid] = snapshot
            if snapshot is not None:
                fresh[pid] = snapshot

        if self.redis and fresh:
            try:
                pipe = self.redis.pipeline()
                for pid, snapshot in fresh.items():
                    pipe.setex(self.key(pid), self.ttl, json.dumps(snapshot))
                pipe.execute()
            except RedisError as e:
                logger.warning(f"Display cache batch write failed: {e}")

        return results

    def invalidate(self, product_id: str) -> None:
        self.invalidate_many([product_id])

    def invalidate_many(self, product_ids: Iterable[str]) -> None:
        keys = [self.key(pid) for pid in set(product_ids)]
        if not self.redis or not keys:
            return
        try:
            self.redis.delete(*keys)
            logger.debug(f"Cache invalidated for {len(keys)} product(s)")
        except RedisError as e:
            logger.warning(f"Display cache invalidation failed: {e}")

    def publish_stock_update(self, product_id: str, payload: Dict[str, object]) -> None:
        """广播库存变更，前端轮询 stock_update:<product_id> 获取"""
        if not self.redis:
            return
        message = dict(payload, product_id=product_id, timestamp=utcnow().isoformat())
        try:
            self.redis.setex(self.update_key(product_id), self.update_ttl, json.dumps(message))
        except RedisError as e:
            logger.warning(f"Stock update broadcast failed for product {product_id}: {e}")

    def recent_stock_updates(self, product_ids: List[str]) -> Dict[str, Snapshot]:
        if not self.redis or not product_ids:
            return {}
        try:
            values = self.redis.mget([self.update_key(pid) for pid in product_ids])
        except RedisError as e:
            logger.warning(f"Stock update poll failed: {e}")
            return {}

        updates = {}
        for pid, value in zip(product_ids, values):
            if value is None:
                continue
            try:
                updates[pid] = json.loads(value)
            except ValueError:
                continue
        return updates
