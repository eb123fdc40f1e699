import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    CheckConstraint,
    TIMESTAMP,
    Enum,
    func,
)
from app.db.base import Base
from app.services.availability import available


# 1️ 库存来源枚举
class SyncSource(str, enum.Enum):
    WEBHOOK = "webhook"   # 远端 webhook 推送
    MANUAL = "manual"     # 人工调整
    SEED = "seed"         # 初始化 / 从远端查询 API 拉取
    RECONCILE = "reconcile"  # 主动拉取远端库存对账


# 2️ 库存记录表（权威库存）
class StockRecord(Base):
    __tablename__ = "stock_records"

    product_id = Column(
        String(64),
        primary_key=True,
        comment="商品ID",
    )

    # 无规格商品存空字符串，保证联合主键可比较
    variation_id = Column(
        String(64),
        primary_key=True,
        server_default="",
        comment="规格ID",
    )

    total_stock = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="远端后台的权威总库存",
    )

    reserved_stock = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="有效预占数量之和",
    )

    version = Column(
        Integer,
        nullable=False,
        server_default="0",
        comment="乐观锁版本号",
    )

    sync_source = Column(
        Enum(SyncSource, name="stock_sync_source_type"),
        nullable=False,
        server_default=SyncSource.SEED.name,
        comment="总库存最近一次的来源",
    )

    remote_modified_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="最近一次已应用的远端修改时间",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint(
            "total_stock >= 0",
            name="ck_total_stock_non_negative",
        ),
        CheckConstraint(
            "reserved_stock >= 0",
            name="ck_reserved_stock_non_negative",
        ),
    )

    @property
    def available_stock(self) -> int:
        return available(self)
