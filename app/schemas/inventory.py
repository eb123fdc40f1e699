# app/schemas/inventory.py
"""库存引擎对外返回的结果类型"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from app.services.availability import available


class StockLevel(BaseModel):
    """某个 (商品, 规格) 的权威库存快照"""
    product_id: str
    variation_id: Optional[str] = None
    total_stock: int
    reserved_stock: int
    available_stock: int

    @classmethod
    def from_record(cls, record) -> "StockLevel":
        return cls(
            product_id=record.product_id,
            variation_id=record.variation_id or None,
            total_stock=record.total_stock,
            reserved_stock=record.reserved_stock,
            available_stock=available(record),
        )


class StockError(BaseModel):
    """库存不足：正常业务结果，携带当前可售数量以便调用方调整数量"""
    product_id: str
    variation_id: Optional[str] = None
    requested: int
    available_stock: int

    @property
    def message(self) -> str:
        return f"库存不足，仅剩 {self.available_stock} 件"


class ReservationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    variation_id: Optional[str] = None
    quantity: int
    owner_id: str
    status: str
    created_at: Optional[datetime] = None
    expires_at: datetime

    @field_validator("variation_id", mode="before")
    @classmethod
    def _empty_variation(cls, value):
        return value or None

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, value):
        return getattr(value, "value", value)


class AppliedChange(BaseModel):
    """webhook 处理成功（包括重复投递与无需处理的事件）"""
    kind: str
    dedupe_key: Optional[str] = None
    duplicate: bool = False
    ignored: bool = False
    affected: List[StockLevel] = []


class RejectedChange(BaseModel):
    """webhook 被拒绝；status_code 决定发送方是否重试（4xx 不重试，5xx 重试）"""
    status_code: int
    reason: str
