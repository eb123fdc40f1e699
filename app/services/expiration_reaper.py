"""过期预占回收

按 id 分页扫描已过期但仍为 ACTIVE 的预占，逐条在独立事务中完成
ACTIVE -> EXPIRED 迁移并归还预占数量。单条失败不影响同批其他记录。
"""

import logging
from datetime import datetime
from typing import NamedTuple, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import ConcurrencyConflictError, InvariantViolationError, ProductNotFoundError
from app.core.timeutils import utcnow
from app.models.audit_logs import ChangeType
from app.models.reservations import ReservationStatus
from app.services.display_cache import DisplayCache
from app.services.reservation_ledger import ReservationLedger
from app.services.stock_store import StockStore

logger = logging.getLogger(__name__)


class ExpiredRow(NamedTuple):
    id: str
    product_id: str
    variation_id: str
    quantity: int


class ExpirationReaper:

    def __init__(self, db: Session, cache: Optional[DisplayCache] = None):
        self.db = db
        self.cache = cache
        self.store = StockStore(db)
        self.ledger = ReservationLedger(db)
        self.failed = 0

    def count_expired(self, now: Optional[datetime] = None) -> int:
        """统计待回收的预占数量（试运行用，不做任何修改）"""
        return self.ledger.count_expired(now or utcnow())

    def sweep(self, batch_size: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """执行一轮回收

        Args:
            batch_size: 每页扫描条数
            now: 判定过期的时间点，默认当前时间

        Returns:
            本轮成功回收的预占数量
        """
        batch_size = batch_size or settings.CLEANUP_BATCH_SIZE
        now = now or utcnow()
        self.failed = 0
        reaped = 0
        after_id = None

        while True:
            rows = self.ledger.find_expired(now, batch_size, after_id)
            if not rows:
                break
            batch = [ExpiredRow(r.id, r.product_id, r.variation_id, r.quantity) for r in rows]
            after_id = batch[-1].id
            # 结束只读事务，后续每条记录独立提交
            self.db.rollback()

            for reservation in batch:
                if self._reap_one(reservation, now):
                    reaped += 1

            if len(batch) < batch_size:
                break

        if reaped or self.failed:
            logger.info(f"过期预占回收完成: 回收 {reaped} 条, 失败 {self.failed} 条")
        return reaped

    def _reap_one(self, reservation: ExpiredRow, now: datetime) -> bool:
        reservation_id = reservation.id
        try:
            if not self.ledger.transition(reservation_id, ReservationStatus.EXPIRED, now, expired=True):
                # 已被用户确认/释放或被另一个回收进程处理
                self.db.rollback()
                logger.debug(f"Reservation {reservation_id} already retired, skipping")
                return False

            _, after = self.store.release(
                reservation.product_id, reservation.variation_id, reservation.quantity,
                reservation_id=reservation_id,
                operator="expiration_reaper",
                change_type=ChangeType.EXPIRE,
                source="expiration_reaper",
            )
            self.db.commit()
        except InvariantViolationError:
            self.db.rollback()
            raise
        except (ConcurrencyConflictError, ProductNotFoundError, SQLAlchemyError) as e:
            self.db.rollback()
            self.failed += 1
            logger.error(f"回收过期预占失败: reservation_id={reservation_id}, error={str(e)}")
            return False

        logger.info(
            f"回收过期预占: reservation_id={reservation_id}, product_id={reservation.product_id}, "
            f"quantity={reservation.quantity}"
        )
        if self.cache is not None and after is not None:
            self.cache.invalidate(after.product_id)
            self.cache.publish_stock_update(after.product_id, {
                "variation_id": after.variation_id,
                "available_stock": after.available_stock,
                "reason": "expired",
            })
        return True
