import enum

from sqlalchemy import (
    Column,
    String,
    TIMESTAMP,
    Enum,
    Index,
    JSON,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from app.db.base import Base


# 1️ 幂等状态枚举

class IdempotencyStatus(str, enum.Enum):
    APPLIED = "APPLIED"    # 已应用到库存
    IGNORED = "IGNORED"    # 已确认无需处理（如非回补类订单状态）


# 2️ webhook 去重表

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    # 由事件自身标识（或负载摘要）得出的去重键
    key = Column(
        String(128),
        primary_key=True,
        comment="幂等唯一键",
    )

    status = Column(
        Enum(IdempotencyStatus, name="idempotency_status_type"),
        nullable=False,
        server_default=IdempotencyStatus.APPLIED.name,
        comment="处理结果",
    )

    # 首次处理的结果快照，重复投递时原样返回
    response_snapshot = Column(
        JSON().with_variant(JSONB, "postgresql"),
        nullable=True,
        comment="处理结果快照",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=False,
        comment="去重窗口截止时间（用于清理）",
    )



# 3️ 索引设计

Index(
    "idx_idempotency_keys_expires_at",
    IdempotencyKey.expires_at,
)
