"""库存相关的 Celery 任务"""

from celery_app import app
from app.db.session import SessionLocal
from app.core.redis import redis_client
from app.models.stock_records import SyncSource
from app.services.commerce_client import get_commerce_client
from app.services.display_cache import DisplayCache
from app.services.expiration_reaper import ExpirationReaper
from app.services.idempotency import IdempotencyStore
from app.services.stock_store import StockStore
import logging

logger = logging.getLogger(__name__)


@app.task(name='tasks.inventory.reap_expired_reservations')
def reap_expired_reservations(batch_size: int = 500):
    """回收过期预占（由 beat 每分钟触发）

    Args:
        batch_size: 每页扫描条数，默认500条

    Returns:
        回收结果描述
    """
    db = SessionLocal()
    try:
        reaper = ExpirationReaper(db, DisplayCache(redis_client))
        count = reaper.sweep(batch_size)
        result = f"成功回收 {count} 条过期预占记录"
        if reaper.failed:
            result += f"，{reaper.failed} 条失败待下轮重试"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"回收过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


@app.task(name='tasks.inventory.purge_idempotency_keys')
def purge_idempotency_keys():
    """清理超过保留期的 webhook 去重键"""
    db = SessionLocal()
    try:
        count = IdempotencyStore(db).purge_expired()
        db.commit()
        logger.info(f"清理过期去重键 {count} 条")
        return count
    except Exception as e:
        logger.error(f"清理去重键失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


@app.task(name='tasks.inventory.reconcile_stock')
def reconcile_stock(product_id: str, variation_id: str = None):
    """从远端后台拉取权威库存并覆盖本地总库存（webhook 丢失时的补偿手段）"""
    client = get_commerce_client()
    if client is None:
        logger.warning("未配置远端库存查询 API，跳过对账")
        return None

    remote = client.fetch_stock(product_id, variation_id)
    if remote is None:
        logger.info(f"远端无该商品库存信息，跳过对账: product_id={product_id}, variation_id={variation_id}")
        return None

    db = SessionLocal()
    try:
        # 带上远端修改时间，比已应用的 webhook 旧时不会覆盖
        _, after = StockStore(db).set_total(
            product_id, variation_id, remote.quantity,
            sync_source=SyncSource.RECONCILE,
            remote_modified_at=remote.modified_at,
            operator="reconcile_task",
            reason="远端库存对账",
        )
        db.commit()
    except Exception as e:
        logger.error(f"库存对账失败: product_id={product_id}, error={str(e)}")
        db.rollback()
        raise
    finally:
        db.close()

    if after is None:
        logger.info(f"远端数据早于已应用的更新，跳过对账: product_id={product_id}, variation_id={variation_id}")
        return None

    DisplayCache(redis_client).invalidate(product_id)
    logger.info(f"库存对账完成: product_id={product_id}, variation_id={variation_id}, total={remote.quantity}")
    return after.model_dump()


# 导出任务
__all__ = [
    'reap_expired_reservations',
    'purge_idempotency_keys',
    'reconcile_stock'
]
