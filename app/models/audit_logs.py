import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Integer,
    String,
    TIMESTAMP,
    Enum,
    Index,
    func,
)
from app.db.base import Base


# 1定义库存变更类型
class ChangeType(str, enum.Enum):
    RESERVE = "RESERVE"                  # 预占库存
    CONFIRM = "CONFIRM"                  # 确认扣减
    RELEASE = "RELEASE"                  # 用户释放
    EXPIRE = "EXPIRE"                    # 超时回收
    WEBHOOK_SET = "WEBHOOK_SET"          # 远端推送总库存
    WEBHOOK_RESTORE = "WEBHOOK_RESTORE"  # 订单取消/退款回补
    MANUAL_SET = "MANUAL_SET"            # 人工调整
    RECONCILE_SET = "RECONCILE_SET"      # 远端对账覆盖总库存
    SEED = "SEED"                        # 初始化库存记录


# 2️库存审计日志表（只追加，不修改）
class AuditLogEntry(Base):
    __tablename__ = "stock_audit_logs"

    id = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )

    product_id = Column(
        String(64),
        nullable=False,
        comment="商品ID",
    )

    variation_id = Column(
        String(64),
        nullable=False,
        server_default="",
        comment="规格ID",
    )

    reservation_id = Column(
        String(32),
        nullable=True,
        index=True,
        comment="关联预占ID（webhook / 人工调整时为空）",
    )

    change_type = Column(
        Enum(ChangeType, name="stock_change_type"),
        nullable=False,
        comment="库存变更类型",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="可售库存变化量（带符号）",
    )

    before_available = Column(Integer, nullable=False, comment="变更前可售库存")
    after_available = Column(Integer, nullable=False, comment="变更后可售库存")
    before_total = Column(Integer, nullable=False, comment="变更前总库存")
    after_total = Column(Integer, nullable=False, comment="变更后总库存")

    operator = Column(
        String(128),
        nullable=True,
        comment="操作人/购物车/服务名",
    )

    source = Column(
        String(50),
        nullable=True,
        comment="来源：reservation_service / reaper / webhook / manual",
    )

    reason = Column(
        String(255),
        nullable=True,
        comment="变更原因",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


# 3️组合索引（按商品倒序查询审计记录）
Index(
    "idx_stock_audit_product_created_desc",
    AuditLogEntry.product_id,
    AuditLogEntry.variation_id,
    AuditLogEntry.created_at.desc(),
)
