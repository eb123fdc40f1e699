import enum

from sqlalchemy import (
    Column,
    String,
    Integer,
    TIMESTAMP,
    Enum,
    CheckConstraint,
    Index,
    func,
)
from app.db.base import Base


# 1️ 预占状态枚举（终态 CONFIRMED / RELEASED / EXPIRED 不可再变更）
class ReservationStatus(str, enum.Enum):
    ACTIVE = "active"         # 有效预占
    CONFIRMED = "confirmed"   # 订单完成，已实际扣减
    RELEASED = "released"     # 用户取消 / 购物车清空
    EXPIRED = "expired"       # 超时，由过期清理任务回收


TERMINAL_STATUSES = (
    ReservationStatus.CONFIRMED,
    ReservationStatus.RELEASED,
    ReservationStatus.EXPIRED,
)


# 2️ 预占表
class Reservation(Base):
    __tablename__ = "stock_reservations"

    id = Column(
        String(32),
        primary_key=True,
        comment="预占ID（不透明令牌）",
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

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    owner_id = Column(
        String(128),
        nullable=False,
        comment="购物车或用户标识",
    )

    status = Column(
        Enum(ReservationStatus, name="reservation_status_type"),
        nullable=False,
        server_default=ReservationStatus.ACTIVE.name,
        comment="预占状态",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="预占过期时间",
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    confirmed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    released_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "quantity > 0",
            name="ck_reservation_quantity_positive",
        ),
    )


# 3️ 高频查询优化索引

# 按商品统计有效预占
Index(
    "idx_reservation_product_status",
    Reservation.product_id,
    Reservation.variation_id,
    Reservation.status,
)

# 过期清理扫描
Index(
    "idx_reservation_status_expires",
    Reservation.status,
    Reservation.expires_at,
)

# 查询“我的预占”
Index(
    "idx_reservation_owner",
    Reservation.owner_id,
)
