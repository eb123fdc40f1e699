"""预占服务实现"""

import logging
from typing import List, Optional, Union

import requests
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InvalidRequestError,
    InventoryError,
    ProductNotFoundError,
    ReservationLimitError,
    ReservationNotFoundError,
    UpstreamUnavailableError,
)
from app.core.timeutils import utcnow
from app.models.reservations import Reservation, ReservationStatus
from app.models.stock_records import SyncSource
from app.schemas.inventory import StockError, StockLevel
from app.services.commerce_client import CommerceClient
from app.services.display_cache import DisplayCache
from app.services.reservation_ledger import ReservationLedger, new_reservation_id
from app.services.stock_store import StockStore

logger = logging.getLogger(__name__)


class ReservationService:
    """预占核心服务类

    防超卖依赖 StockStore 的版本号条件更新；库存变更与预占记录在同一事务中提交。
    展示缓存只在提交后做失效，从不参与预占判断。
    """

    def __init__(
        self,
        db: Session,
        cache: Optional[DisplayCache] = None,
        commerce: Optional[CommerceClient] = None,
    ):
        self.db = db
        self.cache = cache
        self.commerce = commerce
        self.store = StockStore(db)
        self.ledger = ReservationLedger(db)
        self.max_per_owner = settings.MAX_ACTIVE_RESERVATIONS_PER_OWNER

    def check_available_stock(self, product_id: str, variation_id: Optional[str] = None) -> StockLevel:
        """查询权威库存（只读数据库，不读缓存）"""
        return self.store.get_level(product_id, variation_id)

    def create_reservation(
        self,
        product_id: str,
        quantity: int,
        owner_id: str,
        variation_id: Optional[str] = None,
    ) -> Union[Reservation, StockError]:
        """预占库存

        Returns:
            成功返回预占记录；库存不足返回 StockError（携带当前可售数量）
        """
        if not product_id:
            raise InvalidRequestError("商品ID不能为空")
        if not owner_id:
            raise InvalidRequestError("购物车标识不能为空")
        if quantity is None or quantity <= 0:
            raise InvalidRequestError("预占数量必须大于0")

        now = utcnow()
        if self.ledger.count_active_for_owner(owner_id, now) >= self.max_per_owner:
            raise ReservationLimitError(owner_id, self.max_per_owner)

        self._ensure_stock_record(product_id, variation_id)

        reservation_id = new_reservation_id()
        try:
            before, after = self.store.reserve(
                product_id, variation_id, quantity,
                reservation_id=reservation_id,
                operator=owner_id,
            )
            if after is None:
                self.db.rollback()
                logger.info(
                    f"库存不足: product_id={product_id}, variation_id={variation_id}, "
                    f"requested={quantity}, available={before.available_stock}"
                )
                return StockError(
                    product_id=product_id,
                    variation_id=variation_id,
                    requested=quantity,
                    available_stock=before.available_stock,
                )

            reservation = self.ledger.create(
                product_id, variation_id, quantity, owner_id,
                reservation_id=reservation_id,
                now=now,
            )
            self.db.commit()
        except InventoryError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"预占库存失败: product_id={product_id}, owner_id={owner_id}, error={str(e)}")
            raise

        logger.info(
            f"预占库存成功: reservation_id={reservation.id}, product_id={product_id}, "
            f"variation_id={variation_id}, quantity={quantity}, owner_id={owner_id}"
        )
        self._after_stock_change(after, "reserved")
        return reservation

    def confirm_reservation(self, reservation_id: str) -> bool:
        """确认预占（订单完成，实际扣减库存）；对已确认的预占重复调用视为成功"""
        return self._retire(reservation_id, ReservationStatus.CONFIRMED)

    def release_reservation(self, reservation_id: str) -> bool:
        """释放预占（取消或清空购物车）；已过期的预占只由过期清理任务回收"""
        return self._retire(reservation_id, ReservationStatus.RELEASED)

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.ledger.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    def list_owner_reservations(self, owner_id: str, include_inactive: bool = False) -> List[Reservation]:
        if not owner_id:
            raise InvalidRequestError("购物车标识不能为空")
        return self.ledger.list_for_owner(owner_id, utcnow(), include_inactive)

    def set_total_stock(
        self,
        product_id: str,
        total_stock: int,
        variation_id: Optional[str] = None,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StockLevel:
        """人工设置总库存，不影响已有预占"""
        try:
            _, after = self.store.set_total(
                product_id, variation_id, total_stock,
                sync_source=SyncSource.MANUAL,
                operator=operator,
                reason=reason or "人工调整",
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"人工设置总库存: product_id={product_id}, variation_id={variation_id}, total={total_stock}")
        self._after_stock_change(after, "manual")
        return after

    # ==================== 内部实现 ====================

    def _retire(self, reservation_id: str, target: ReservationStatus) -> bool:
        reservation = self.ledger.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        if reservation.status == target:
            logger.info(f"预占已是 {target.value} 状态，忽略重复调用: reservation_id={reservation_id}")
            return True
        if reservation.status != ReservationStatus.ACTIVE:
            logger.info(
                f"预占状态为 {reservation.status.value}，无法变更为 {target.value}: "
                f"reservation_id={reservation_id}"
            )
            return False

        try:
            if not self.ledger.transition(reservation_id, target, utcnow()):
                # 已过期（留给过期清理）或被并发请求抢先迁移
                self.db.rollback()
                current = self.ledger.get(reservation_id)
                return current is not None and current.status == target

            if target == ReservationStatus.CONFIRMED:
                _, after = self.store.confirm(
                    reservation.product_id, reservation.variation_id, reservation.quantity,
                    reservation_id=reservation_id,
                    operator=reservation.owner_id,
                )
            else:
                _, after = self.store.release(
                    reservation.product_id, reservation.variation_id, reservation.quantity,
                    reservation_id=reservation_id,
                    operator=reservation.owner_id,
                )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"预占状态变更失败: reservation_id={reservation_id}, target={target.value}, error={str(e)}")
            raise

        logger.info(f"预占状态变更成功: reservation_id={reservation_id}, status={target.value}")
        self._after_stock_change(after, target.value)
        return True

    def _ensure_stock_record(self, product_id: str, variation_id: Optional[str]) -> None:
        """本地没有库存记录时，从远端查询 API 拉取权威库存并初始化"""
        if self.store.get(product_id, variation_id) is not None:
            return
        if self.commerce is None:
            raise ProductNotFoundError(product_id, variation_id)

        try:
            quantity = self.commerce.fetch_stock_quantity(product_id, variation_id)
        except requests.RequestException as e:
            logger.error(f"远端库存查询失败: product_id={product_id}, error={str(e)}")
            raise UpstreamUnavailableError()
        if quantity is None:
            raise ProductNotFoundError(product_id, variation_id)

        try:
            self.store.seed(product_id, variation_id, quantity, source=SyncSource.SEED, operator="commerce_api")
            self.db.commit()
        except IntegrityError:
            # 并发请求已完成初始化
            self.db.rollback()

    def _after_stock_change(self, level: Optional[StockLevel], reason: str) -> None:
        if self.cache is None or level is None:
            return
        self.cache.invalidate(level.product_id)
        self.cache.publish_stock_update(level.product_id, {
            "variation_id": level.variation_id,
            "available_stock": level.available_stock,
            "reason": reason,
        })
