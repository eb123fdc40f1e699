"""权威库存存储

库存记录 (total_stock / reserved_stock) 的唯一写入方。每次变更都是
“读取 → 计算 → 按版本号条件更新”，版本冲突时重新读取并重试；
不依赖进程内锁或分布式锁，多实例部署下同样成立。

本类不提交事务，事务边界由调用方（预占服务、过期清理、webhook）控制，
这样库存变更、预占记录和审计日志在同一事务中一起提交或回滚。
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select, update, text
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConcurrencyConflictError,
    InvalidRequestError,
    InvariantViolationError,
    ProductNotFoundError,
)
from app.core.timeutils import as_utc, utcnow
from app.models.audit_logs import AuditLogEntry, ChangeType
from app.models.stock_records import StockRecord, SyncSource
from app.schemas.inventory import StockLevel
from app.services.availability import available_quantity

logger = logging.getLogger(__name__)

# (before, after)；after 为 None 表示本次没有写入
StockChange = Tuple[Optional[StockLevel], Optional[StockLevel]]

# 总库存覆盖按来源记入不同的审计类型
SET_TOTAL_CHANGE_TYPES = {
    SyncSource.WEBHOOK: ChangeType.WEBHOOK_SET,
    SyncSource.MANUAL: ChangeType.MANUAL_SET,
    SyncSource.SEED: ChangeType.SEED,
    SyncSource.RECONCILE: ChangeType.RECONCILE_SET,
}


def storage_variation(variation_id: Optional[str]) -> str:
    """无规格商品在库中以空字符串表示"""
    return variation_id or ""


class StockStore:
    """库存记录的读写入口"""

    def __init__(self, db: Session, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max_retries or settings.OPTIMISTIC_RETRY_LIMIT

    # ==================== 读取 ====================

    def get(self, product_id: str, variation_id: Optional[str] = None) -> Optional[StockRecord]:
        """读取最新的库存记录（绕过 Session 的身份映射缓存）"""
        stmt = (
            select(StockRecord)
            .where(
                StockRecord.product_id == product_id,
                StockRecord.variation_id == storage_variation(variation_id),
            )
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_level(self, product_id: str, variation_id: Optional[str] = None) -> StockLevel:
        record = self.get(product_id, variation_id)
        if record is None:
            raise ProductNotFoundError(product_id, variation_id)
        return StockLevel.from_record(record)

    def list_for_product(self, product_id: str) -> List[StockRecord]:
        stmt = (
            select(StockRecord)
            .where(StockRecord.product_id == product_id)
            .order_by(StockRecord.variation_id)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    # ==================== 写入 ====================

    def seed(
        self,
        product_id: str,
        variation_id: Optional[str],
        total_stock: int,
        source: SyncSource = SyncSource.SEED,
        operator: Optional[str] = None,
    ) -> bool:
        """库存记录不存在时插入；已存在则不做任何修改

        并发插入时由主键冲突决出唯一胜者，落败方的 IntegrityError 交给调用方处理。
        """
        if total_stock < 0:
            raise InvalidRequestError("总库存不能为负数")
        if self.get(product_id, variation_id) is not None:
            return False

        self._insert(product_id, variation_id, total_stock, source, None, ChangeType.SEED, operator, "初始化库存记录")
        logger.info(f"初始化库存记录: product_id={product_id}, variation_id={variation_id}, total={total_stock}")
        return True

    def reserve(
        self,
        product_id: str,
        variation_id: Optional[str],
        quantity: int,
        reservation_id: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> StockChange:
        """预占：仅当 reserved + quantity 不超过 total 时才增加 reserved_stock"""
        def compute(record):
            if record.reserved_stock + quantity > record.total_stock:
                return None
            return record.total_stock, record.reserved_stock + quantity

        return self._apply(
            product_id, variation_id, compute,
            change_type=ChangeType.RESERVE,
            reservation_id=reservation_id,
            operator=operator,
            source="reservation_service",
        )

    def release(
        self,
        product_id: str,
        variation_id: Optional[str],
        quantity: int,
        reservation_id: Optional[str] = None,
        operator: Optional[str] = None,
        change_type: ChangeType = ChangeType.RELEASE,
        source: str = "reservation_service",
    ) -> StockChange:
        """释放预占数量，归还可售库存（过期回收同样走这里）"""
        def compute(record):
            return record.total_stock, record.reserved_stock - quantity

        return self._apply(
            product_id, variation_id, compute,
            change_type=change_type,
            reservation_id=reservation_id,
            operator=operator,
            source=source,
        )

    def confirm(
        self,
        product_id: str,
        variation_id: Optional[str],
        quantity: int,
        reservation_id: Optional[str] = None,
        operator: Optional[str] = None,
    ) -> StockChange:
        """确认：预占转为实际出库，total 与 reserved 同时扣减

        远端下调总库存后 total 可能已低于 reserved，此时总库存扣到 0 为止，
        订单照常确认，后续由远端 webhook 校正总库存。
        """
        def compute(record):
            total = record.total_stock - quantity
            if total < 0:
                logger.warning(
                    f"确认时总库存不足，按 0 处理: product_id={product_id}, variation_id={variation_id}, "
                    f"total={record.total_stock}, quantity={quantity}"
                )
                total = 0
            return total, record.reserved_stock - quantity

        return self._apply(
            product_id, variation_id, compute,
            change_type=ChangeType.CONFIRM,
            reservation_id=reservation_id,
            operator=operator,
            source="reservation_service",
        )

    def set_total(
        self,
        product_id: str,
        variation_id: Optional[str],
        total_stock: int,
        sync_source: SyncSource,
        remote_modified_at: Optional[datetime] = None,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
        create_missing: bool = True,
    ) -> StockChange:
        """覆盖总库存（后写者胜），不触碰 reserved_stock

        带远端修改时间的事件若早于已应用的版本，视为乱序旧事件直接跳过。
        """
        if total_stock < 0:
            raise InvalidRequestError("总库存不能为负数")
        change_type = SET_TOTAL_CHANGE_TYPES[sync_source]

        if create_missing and self.get(product_id, variation_id) is None:
            after = self._insert(
                product_id, variation_id, total_stock, sync_source,
                remote_modified_at, change_type, operator, reason,
            )
            return None, after

        def compute(record):
            applied_at = as_utc(record.remote_modified_at)
            if remote_modified_at is not None and applied_at is not None and applied_at > as_utc(remote_modified_at):
                logger.info(
                    f"跳过乱序的旧库存事件: product_id={product_id}, "
                    f"event={remote_modified_at.isoformat()}, applied={applied_at.isoformat()}"
                )
                return None
            if total_stock < record.reserved_stock:
                logger.warning(
                    f"远端总库存低于已预占数量: product_id={product_id}, "
                    f"variation_id={variation_id}, total={total_stock}, reserved={record.reserved_stock}"
                )
            return total_stock, record.reserved_stock

        return self._apply(
            product_id, variation_id, compute,
            change_type=change_type,
            operator=operator,
            source=sync_source.value,
            reason=reason,
            sync_source=sync_source,
            remote_modified_at=remote_modified_at,
        )

    def restore(
        self,
        product_id: str,
        variation_id: Optional[str],
        quantity: int,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StockChange:
        """订单取消/退款后回补总库存，不触碰 reserved_stock"""
        if quantity <= 0:
            raise InvalidRequestError("回补数量必须大于0")

        def compute(record):
            return record.total_stock + quantity, record.reserved_stock

        return self._apply(
            product_id, variation_id, compute,
            change_type=ChangeType.WEBHOOK_RESTORE,
            operator=operator,
            source=SyncSource.WEBHOOK.value,
            reason=reason,
            sync_source=SyncSource.WEBHOOK,
        )

    def set_statement_timeout(self, seconds: int) -> None:
        """为当前事务设置语句超时；超时后事务整体回滚，不会留下部分写入"""
        if self.db.get_bind().dialect.name != "postgresql":
            return
        self.db.execute(text(f"SET LOCAL statement_timeout = {int(seconds * 1000)}"))

    # ==================== 内部实现 ====================

    def _insert(
        self,
        product_id: str,
        variation_id: Optional[str],
        total_stock: int,
        sync_source: SyncSource,
        remote_modified_at: Optional[datetime],
        change_type: ChangeType,
        operator: Optional[str],
        reason: Optional[str],
    ) -> StockLevel:
        record = StockRecord(
            product_id=product_id,
            variation_id=storage_variation(variation_id),
            total_stock=total_stock,
            reserved_stock=0,
            version=0,
            sync_source=sync_source,
            remote_modified_at=remote_modified_at,
        )
        self.db.add(record)
        self.db.flush()

        after = StockLevel.from_record(record)
        empty = StockLevel(
            product_id=product_id,
            variation_id=variation_id or None,
            total_stock=0,
            reserved_stock=0,
            available_stock=0,
        )
        self._audit(empty, after, change_type, operator=operator, source=sync_source.value, reason=reason)
        return after

    def _apply(
        self,
        product_id: str,
        variation_id: Optional[str],
        compute: Callable[[StockRecord], Optional[Tuple[int, int]]],
        change_type: ChangeType,
        reservation_id: Optional[str] = None,
        operator: Optional[str] = None,
        source: Optional[str] = None,
        reason: Optional[str] = None,
        sync_source: Optional[SyncSource] = None,
        remote_modified_at: Optional[datetime] = None,
    ) -> StockChange:
        """乐观并发更新：compute 返回新的 (total, reserved)，返回 None 表示放弃写入"""
        for attempt in range(1, self.max_retries + 1):
            record = self.get(product_id, variation_id)
            if record is None:
                raise ProductNotFoundError(product_id, variation_id)

            before = StockLevel.from_record(record)
            target = compute(record)
            if target is None:
                return before, None

            total, reserved = target
            self._check_invariant(before, total, reserved, change_type)

            values = {
                "total_stock": total,
                "reserved_stock": reserved,
                "version": record.version + 1,
                "updated_at": utcnow(),
            }
            if sync_source is not None:
                values["sync_source"] = sync_source
            if remote_modified_at is not None:
                values["remote_modified_at"] = remote_modified_at

            result = self.db.execute(
                update(StockRecord)
                .where(
                    StockRecord.product_id == record.product_id,
                    StockRecord.variation_id == record.variation_id,
                    StockRecord.version == record.version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                after = StockLevel(
                    product_id=before.product_id,
                    variation_id=before.variation_id,
                    total_stock=total,
                    reserved_stock=reserved,
                    available_stock=available_quantity(total, reserved),
                )
                self._audit(
                    before, after, change_type,
                    reservation_id=reservation_id,
                    operator=operator,
                    source=source,
                    reason=reason,
                )
                return before, after

            logger.debug(
                f"Stock version conflict, retry {attempt}/{self.max_retries}: "
                f"product_id={product_id}, variation_id={variation_id}"
            )

        logger.warning(f"库存更新冲突重试耗尽: product_id={product_id}, variation_id={variation_id}")
        raise ConcurrencyConflictError()

    def _check_invariant(self, before: StockLevel, total: int, reserved: int, change_type: ChangeType) -> None:
        # 远端下调总库存导致 reserved > total 是允许的；本地操作不得把 reserved 推过 total
        if total < 0 or reserved < 0 or (reserved > total and reserved > before.reserved_stock):
            logger.critical(
                f"库存不变量被破坏: product_id={before.product_id}, variation_id={before.variation_id}, "
                f"change={change_type.value}, total {before.total_stock}->{total}, "
                f"reserved {before.reserved_stock}->{reserved}"
            )
            raise InvariantViolationError(
                f"库存数据不一致: product_id={before.product_id}, total={total}, reserved={reserved}"
            )

    def _audit(
        self,
        before: StockLevel,
        after: StockLevel,
        change_type: ChangeType,
        reservation_id: Optional[str] = None,
        operator: Optional[str] = None,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        self.db.add(AuditLogEntry(
            product_id=after.product_id,
            variation_id=storage_variation(after.variation_id),
            reservation_id=reservation_id,
            change_type=change_type,
            quantity=after.available_stock - before.available_stock,
            before_available=before.available_stock,
            after_available=after.available_stock,
            before_total=before.total_stock,
            after_total=after.total_stock,
            operator=operator,
            source=source,
            reason=reason,
            created_at=utcnow(),
        ))
