"""远端电商后台 webhook 接收路由"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.dependencies import get_db, get_display_cache
from app.schemas.inventory import RejectedChange
from app.schemas.inventory_api import WebhookResponse
from app.services.display_cache import DisplayCache
from app.services.webhook_ingestion import WebhookIngestion

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhook"])


@router.get("/inventory", summary="Webhook 地址校验")
async def webhook_info():
    return {"success": True, "message": "Inventory webhook endpoint"}


@router.post(
    "/inventory",
    response_model=WebhookResponse,
    summary="接收库存与订单事件",
    description="""接收远端后台的商品库存变更与订单状态变更事件。

    **返回码：**
    - 200 已处理（包括重复投递与无需处理的事件）
    - 400 请求体不合法，远端不应重试
    - 401 签名校验失败
    - 503 暂时无法处理，远端会重新投递
    """,
)
async def receive_inventory_webhook(
    request: Request,
    db: Session = Depends(get_db),
    cache: DisplayCache = Depends(get_display_cache),
):
    # 签名基于原始字节，必须在任何解析之前读取
    raw_body = await request.body()
    signature = request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER)
    topic = request.headers.get(settings.WEBHOOK_TOPIC_HEADER)

    ingestion = WebhookIngestion(db, cache)
    result = await run_in_threadpool(ingestion.receive, raw_body, signature, topic)

    if isinstance(result, RejectedChange):
        return JSONResponse(
            status_code=result.status_code,
            content={"success": False, "message": result.reason},
        )
    return WebhookResponse(
        success=True,
        message="Webhook processed",
        kind=result.kind,
        duplicate=result.duplicate,
        ignored=result.ignored,
        affected=result.affected,
    )
