"""库存API专用的Pydantic模型和响应格式"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional

from app.schemas.inventory import ReservationView, StockLevel


# ==================== 请求模型 ====================

class ReserveStockRequest(BaseModel):
    """预占库存请求"""
    product_id: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="商品ID",
        examples=["1024"]
    )
    variation_id: Optional[str] = Field(
        None,
        max_length=64,
        description="规格ID",
        examples=["2048"]
    )
    quantity: int = Field(
        ...,
        gt=0,
        description="预占数量",
        examples=[2]
    )
    owner_id: str = Field(
        ...,
        min_length=1,
        max_length=128,
        description="购物车或用户标识",
        examples=["cart_7f3a9c"]
    )


class SetStockRequest(BaseModel):
    """人工设置总库存请求"""
    variation_id: Optional[str] = Field(
        None,
        max_length=64,
        description="规格ID"
    )
    total_stock: int = Field(
        ...,
        ge=0,
        description="总库存"
    )
    reason: Optional[str] = Field(
        None,
        max_length=255,
        description="调整原因"
    )


class BatchSnapshotRequest(BaseModel):
    """批量查询商品展示快照请求"""
    product_ids: List[str] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="商品ID列表",
        examples=[["1", "2", "3"]]
    )


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class ReservationResponse(BaseResponse):
    """预占结果响应"""
    data: Optional[ReservationView] = None
    available_stock: Optional[int] = Field(
        None,
        ge=0,
        description="库存不足时的当前可售数量"
    )


class ReservationListResponse(BaseResponse):
    data: List[ReservationView] = []
    count: int = 0


class StockLevelResponse(BaseResponse):
    """权威库存查询响应"""
    data: StockLevel


class SnapshotResponse(BaseResponse):
    """展示快照响应（可能来自缓存，允许短暂过期）"""
    data: Optional[Dict[str, Any]] = None


class BatchSnapshotResponse(BaseResponse):
    data: Dict[str, Optional[Dict[str, Any]]]


class StockUpdatesResponse(BaseResponse):
    data: Dict[str, Dict[str, Any]]


class OperationResponse(BaseResponse):
    """操作响应（确认、释放）"""
    data: Optional[bool] = Field(
        None,
        description="操作结果"
    )


class CleanupResponse(BaseResponse):
    """清理任务响应"""
    cleaned_count: Optional[int] = Field(
        None,
        ge=0,
        description="回收的预占数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )


class WebhookResponse(BaseResponse):
    kind: Optional[str] = None
    duplicate: bool = False
    ignored: bool = False
    affected: List[StockLevel] = []
