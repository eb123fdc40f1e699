"""库存预占 API 路由

涉及数据库的接口均为同步函数，由 FastAPI 放入线程池执行。
"""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Path, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.dependencies import (
    get_db,
    get_display_cache,
    get_reservation_service,
    require_internal_token,
)
from app.core.exceptions import InventoryError
from app.schemas.inventory import ReservationView, StockError
from app.schemas.inventory_api import (
    BatchSnapshotRequest,
    BatchSnapshotResponse,
    CeleryTaskResponse,
    CleanupResponse,
    OperationResponse,
    ReservationListResponse,
    ReservationResponse,
    ReserveStockRequest,
    SetStockRequest,
    SnapshotResponse,
    StockLevelResponse,
    StockUpdatesResponse,
    TaskStatusResponse,
)
from app.services.display_cache import DisplayCache, build_snapshot
from app.services.expiration_reaper import ExpirationReaper
from app.services.reservation_service import ReservationService
from app.services.stock_store import StockStore
from tasks.inventory_tasks import reap_expired_reservations as celery_reap_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        400: {"description": "请求参数错误"},
        404: {"description": "资源未找到"},
        422: {"description": "请求验证失败"},
        429: {"description": "有效预占数量超过上限"},
        503: {"description": "库存服务暂不可用，可重试"},
    }
)


@router.post(
    "/reservations",
    response_model=ReservationResponse,
    summary="预占库存",
    description="""为购物车预占指定商品（规格）的库存，防止超卖。

    **特点：**
    - 基于版本号的条件更新，多实例部署下同样不会超卖
    - 预占有效期默认 15 分钟，过期后由清理任务自动归还
    - 库存不足时返回 409，并携带当前可售数量
    """,
    responses={
        409: {
            "description": "库存不足",
            "content": {
                "application/json": {
                    "example": {
                        "success": False,
                        "message": "库存不足，仅剩 1 件",
                        "data": None,
                        "available_stock": 1
                    }
                }
            }
        }
    }
)
def create_reservation(
    request: ReserveStockRequest = Body(..., description="预占请求参数"),
    service: ReservationService = Depends(get_reservation_service),
):
    result = service.create_reservation(
        request.product_id,
        request.quantity,
        request.owner_id,
        variation_id=request.variation_id,
    )
    if isinstance(result, StockError):
        body = ReservationResponse(
            success=False,
            message=result.message,
            available_stock=result.available_stock,
        )
        return JSONResponse(status_code=409, content=body.model_dump())

    return ReservationResponse(
        success=True,
        message="预占成功",
        data=ReservationView.model_validate(result),
    )


@router.post(
    "/reservations/{reservation_id}/confirm",
    response_model=OperationResponse,
    summary="确认预占",
    description="""订单完成后确认预占，实际扣减总库存。

    **注意：**
    - 只能确认仍然有效（ACTIVE 且未过期）的预占
    - 对已确认的预占重复调用视为成功
    """,
)
def confirm_reservation(
    reservation_id: str = Path(..., max_length=32, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    result = service.confirm_reservation(reservation_id)
    return {
        "success": result,
        "message": "确认成功" if result else "预占已失效，无法确认",
        "data": result,
    }


@router.post(
    "/reservations/{reservation_id}/release",
    response_model=OperationResponse,
    summary="释放预占",
    description="""取消订单或移出购物车时释放预占，归还可售库存。

    已过期的预占由清理任务统一回收，这里不会重复归还。
    """,
)
def release_reservation(
    reservation_id: str = Path(..., max_length=32, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    result = service.release_reservation(reservation_id)
    return {
        "success": result,
        "message": "释放成功" if result else "预占已失效，无需释放",
        "data": result,
    }


@router.get(
    "/reservations/{reservation_id}",
    response_model=ReservationResponse,
    summary="查询预占",
)
def get_reservation(
    reservation_id: str = Path(..., max_length=32, description="预占ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = service.get_reservation(reservation_id)
    return ReservationResponse(success=True, data=ReservationView.model_validate(reservation))


@router.get(
    "/reservations",
    response_model=ReservationListResponse,
    summary="查询购物车的预占",
)
def list_reservations(
    owner_id: str = Query(..., min_length=1, max_length=128, description="购物车或用户标识"),
    include_inactive: bool = Query(False, description="是否包含已失效的预占"),
    service: ReservationService = Depends(get_reservation_service),
):
    reservations = service.list_owner_reservations(owner_id, include_inactive)
    return ReservationListResponse(
        success=True,
        data=[ReservationView.model_validate(r) for r in reservations],
        count=len(reservations),
    )


@router.get(
    "/stock/{product_id}",
    response_model=StockLevelResponse,
    summary="查询权威库存",
    description="直接读取数据库中的权威库存，不经过展示缓存。",
)
def get_stock(
    product_id: str = Path(..., max_length=64, description="商品ID"),
    variation_id: Optional[str] = Query(None, max_length=64, description="规格ID"),
    service: ReservationService = Depends(get_reservation_service),
):
    level = service.check_available_stock(product_id, variation_id)
    return StockLevelResponse(success=True, data=level)


@router.put(
    "/stock/{product_id}",
    response_model=StockLevelResponse,
    summary="人工设置总库存",
    description="内部管理接口，需要 Authorization: Bearer <token>。不影响已有预占。",
    dependencies=[Depends(require_internal_token)],
)
def set_stock(
    product_id: str = Path(..., max_length=64, description="商品ID"),
    request: SetStockRequest = Body(...),
    service: ReservationService = Depends(get_reservation_service),
):
    level = service.set_total_stock(
        product_id,
        request.total_stock,
        variation_id=request.variation_id,
        operator="admin_api",
        reason=request.reason,
    )
    return StockLevelResponse(success=True, message="设置成功", data=level)


@router.get(
    "/products/{product_id}/snapshot",
    response_model=SnapshotResponse,
    summary="商品展示库存",
    description="""商品页展示用的库存快照。

    **缓存策略：**
    - 优先读取 Redis 缓存，未命中时从权威库存构建并回填
    - 数据可能短暂过期，不能作为下单依据
    """,
)
def get_product_snapshot(
    product_id: str = Path(..., max_length=64, description="商品ID"),
    db: Session = Depends(get_db),
    cache: DisplayCache = Depends(get_display_cache),
):
    store = StockStore(db)
    snapshot = cache.read_through(product_id, lambda pid: build_snapshot(store, pid))
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"商品库存记录不存在: {product_id}")
    return SnapshotResponse(success=True, data=snapshot)


@router.post(
    "/products/snapshots",
    response_model=BatchSnapshotResponse,
    summary="批量查询商品展示库存",
    description="""批量读取商品展示快照，单次最多 100 个商品。

    Redis MGET 读取命中部分，未命中的商品回源后用 pipeline 批量回填。
    """,
)
def batch_product_snapshots(
    request: BatchSnapshotRequest = Body(..., description="批量查询请求参数"),
    db: Session = Depends(get_db),
    cache: DisplayCache = Depends(get_display_cache),
):
    store = StockStore(db)
    snapshots = cache.read_many(request.product_ids, lambda pid: build_snapshot(store, pid))
    return BatchSnapshotResponse(success=True, data=snapshots)


@router.get(
    "/stock-updates",
    response_model=StockUpdatesResponse,
    summary="轮询库存变更",
    description="返回最近一分钟内发生过库存变更的商品，products 为逗号分隔的商品ID。",
)
def get_stock_updates(
    products: str = Query(..., min_length=1, description="逗号分隔的商品ID", examples=["1,2,3"]),
    cache: DisplayCache = Depends(get_display_cache),
):
    product_ids = [pid.strip() for pid in products.split(",") if pid.strip()][:100]
    return StockUpdatesResponse(success=True, data=cache.recent_stock_updates(product_ids))


@router.post(
    "/cleanup/manual",
    response_model=CleanupResponse,
    summary="手动回收过期预占",
    dependencies=[Depends(require_internal_token)],
)
def manual_cleanup(
    batch_size: int = Query(500, gt=0, le=5000, description="每页扫描条数"),
    db: Session = Depends(get_db),
    cache: DisplayCache = Depends(get_display_cache),
):
    """手动触发一轮过期回收（API 直接调用回收器）"""
    try:
        count = ExpirationReaper(db, cache).sweep(batch_size)
        return {
            "success": True,
            "message": "手动清理完成",
            "cleaned_count": count
        }
    except InventoryError:
        raise
    except Exception as e:
        logger.error(f"手动清理失败: {str(e)}")
        db.rollback()
        raise


@router.post(
    "/cleanup/celery",
    response_model=CeleryTaskResponse,
    summary="提交异步回收任务",
    dependencies=[Depends(require_internal_token)],
)
def celery_cleanup(batch_size: int = Query(500, gt=0, le=5000, description="每页扫描条数")):
    """触发 Celery 异步回收任务"""
    try:
        task = celery_reap_task.delay(batch_size)
        return {
            "success": True,
            "message": "已提交异步清理任务",
            "task_id": task.id
        }
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        raise HTTPException(status_code=503, detail="任务队列暂不可用")


@router.get(
    "/cleanup/status/{task_id}",
    response_model=TaskStatusResponse,
    summary="查询异步回收任务状态",
)
def get_cleanup_status(task_id: str):
    """查询 Celery 任务执行状态"""
    task = celery_reap_task.AsyncResult(task_id)

    if task.state == 'PENDING':
        status = "任务等待中"
    elif task.state == 'SUCCESS':
        status = f"任务完成: {task.result}"
    elif task.state == 'FAILURE':
        status = f"任务失败: {str(task.info)}"
    else:
        status = f"任务状态: {task.state}"

    return {
        "task_id": task_id,
        "status": status,
        "state": task.state
    }
