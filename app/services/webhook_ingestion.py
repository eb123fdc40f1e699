"""远端电商后台 webhook 处理

处理流程：签名校验 -> 解析 -> 分类 -> 去重登记 -> 应用库存变更 -> 提交 -> 缓存失效。
去重键与库存变更同事务提交，处理失败时整体回滚并返回 503，远端会重新投递。
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union
from urllib.parse import parse_qs

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    ConcurrencyConflictError,
    InvalidRequestError,
    InvariantViolationError,
    ProductNotFoundError,
)
from app.core.timeutils import parse_remote_timestamp
from app.models.idempotency_keys import IdempotencyStatus
from app.models.stock_records import SyncSource
from app.schemas.inventory import AppliedChange, RejectedChange, StockLevel
from app.services.display_cache import DisplayCache
from app.services.idempotency import IdempotencyStore
from app.services.stock_store import StockStore
from app.services.webhook_signature import WebhookSignatureVerifier

logger = logging.getLogger(__name__)

# 这些订单状态意味着已扣减的库存需要回补
RESTOCK_ORDER_STATUSES = {"cancelled", "refunded", "failed"}

KIND_STOCK = "stock"
KIND_ORDER = "order"
KIND_PING = "ping"

WebhookResult = Union[AppliedChange, RejectedChange]


class WebhookIngestion:

    def __init__(
        self,
        db: Session,
        cache: Optional[DisplayCache] = None,
        verifier: Optional[WebhookSignatureVerifier] = None,
    ):
        self.db = db
        self.cache = cache
        self.verifier = verifier or WebhookSignatureVerifier()
        self.store = StockStore(db)
        self.dedupe = IdempotencyStore(db)

    def receive(self, raw_body: bytes, signature: Optional[str], topic: Optional[str] = None) -> WebhookResult:
        """处理一次 webhook 投递

        Args:
            raw_body: 原始请求体（签名基于原始字节计算）
            signature: 签名请求头
            topic: 事件主题请求头，如 product.updated / order.updated

        Returns:
            AppliedChange 或 RejectedChange
        """
        if not self.verifier.verify(raw_body, signature):
            logger.error(f"Webhook 签名校验失败: topic={topic}, body_size={len(raw_body)}")
            return RejectedChange(status_code=401, reason="Invalid signature")

        if self._is_ping(raw_body):
            logger.info("收到 webhook 测试投递")
            return AppliedChange(kind=KIND_PING, ignored=True)

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            logger.warning(f"Webhook 请求体无法解析: topic={topic}")
            return RejectedChange(status_code=400, reason="Malformed payload")
        if not isinstance(payload, dict) or payload.get("id") in (None, ""):
            logger.warning(f"Webhook 请求体缺少 id: topic={topic}")
            return RejectedChange(status_code=400, reason="Malformed payload")

        kind = self._classify(payload, topic)
        if kind is None:
            logger.info(f"忽略不支持的 webhook 主题: topic={topic}")
            return AppliedChange(kind="unknown", ignored=True)

        if kind == KIND_ORDER and not self._needs_restock(payload):
            logger.info(f"订单状态无需回补库存，忽略: order_id={payload['id']}, status={payload.get('status')}")
            return AppliedChange(kind=kind, ignored=True)

        dedupe_key = self._dedupe_key(kind, payload, raw_body)
        try:
            result = self._apply(kind, payload, dedupe_key)
        except InvalidRequestError as e:
            self.db.rollback()
            logger.warning(f"Webhook 数据不合法: key={dedupe_key}, error={e.message}")
            return RejectedChange(status_code=400, reason="Malformed payload")
        except InvariantViolationError:
            self.db.rollback()
            raise
        except (ConcurrencyConflictError, SQLAlchemyError) as e:
            # 包括并发重投时的主键冲突；重投时该事件会被识别为重复
            self.db.rollback()
            logger.error(f"Webhook 处理失败，等待远端重投: key={dedupe_key}, error={str(e)}")
            return RejectedChange(status_code=503, reason="Temporarily unavailable")

        self._after_commit(result.affected)
        return result

    # ==================== 解析与分类 ====================

    @staticmethod
    def _is_ping(raw_body: bytes) -> bool:
        """远端保存 webhook 时发送的测试请求是表单格式 webhook_id=<id>"""
        try:
            text = raw_body.decode("utf-8").strip()
        except UnicodeDecodeError:
            return False
        if not text.startswith("webhook_id="):
            return False
        return "webhook_id" in parse_qs(text)

    @staticmethod
    def _classify(payload: Dict[str, Any], topic: Optional[str]) -> Optional[str]:
        if topic:
            resource = topic.split(".", 1)[0]
            if resource in ("product", "product_variation"):
                return KIND_STOCK
            if resource == "order":
                return KIND_ORDER
            return None
        # 未携带主题时按结构判断
        if "line_items" in payload:
            return KIND_ORDER
        if "stock_quantity" in payload or "manage_stock" in payload:
            return KIND_STOCK
        return None

    @staticmethod
    def _needs_restock(payload: Dict[str, Any]) -> bool:
        return str(payload.get("status") or "").lower() in RESTOCK_ORDER_STATUSES

    @staticmethod
    def _dedupe_key(kind: str, payload: Dict[str, Any], raw_body: bytes) -> str:
        if kind == KIND_ORDER:
            return f"order:{payload['id']}:restock"
        # 修改时间只精确到秒，同一秒内的两次不同更新必须得到不同的键
        return f"stock:{payload['id']}:{hashlib.sha256(raw_body).hexdigest()}"

    @staticmethod
    def _stock_targets(payload: Dict[str, Any]) -> List[Tuple[str, Optional[str], Dict[str, Any]]]:
        """列出事件涉及的 (商品, 规格, 数据)；只处理开启库存管理的条目"""
        targets = []
        parent_id = payload.get("parent_id")
        if parent_id:
            targets.append((str(parent_id), str(payload["id"]), payload))
        else:
            targets.append((str(payload["id"]), None, payload))
            variations = payload.get("variations") or []
            if not isinstance(variations, list):
                raise InvalidRequestError("variations 格式不合法")
            for variation in variations:
                # 通常只是规格 id 列表，展开后的对象才携带库存
                if isinstance(variation, dict) and variation.get("id"):
                    targets.append((str(payload["id"]), str(variation["id"]), variation))
        return [t for t in targets if t[2].get("manage_stock") and t[2].get("stock_quantity") is not None]

    # ==================== 应用 ====================

    def _apply(self, kind: str, payload: Dict[str, Any], dedupe_key: str) -> AppliedChange:
        self.store.set_statement_timeout(settings.WEBHOOK_TIMEOUT_SECONDS)

        if not self.dedupe.claim(dedupe_key):
            self.db.rollback()
            logger.info(f"Webhook 重复投递: key={dedupe_key}")
            return AppliedChange(kind=kind, dedupe_key=dedupe_key, duplicate=True)

        if kind == KIND_STOCK:
            affected = self._apply_stock(payload)
        else:
            affected = self._apply_order(payload)

        ignored = affected is None
        affected = affected or []
        self.dedupe.record_outcome(
            dedupe_key,
            IdempotencyStatus.IGNORED if ignored else IdempotencyStatus.APPLIED,
            {"affected": [level.model_dump() for level in affected]},
        )
        self.db.commit()

        logger.info(
            f"Webhook 处理完成: kind={kind}, key={dedupe_key}, "
            f"ignored={ignored}, affected={len(affected)}"
        )
        return AppliedChange(kind=kind, dedupe_key=dedupe_key, ignored=ignored, affected=affected)

    def _apply_stock(self, payload: Dict[str, Any]) -> Optional[List[StockLevel]]:
        targets = self._stock_targets(payload)
        if not targets:
            logger.info(f"商品未开启库存管理，忽略: id={payload.get('id')}")
            return None

        modified_at = parse_remote_timestamp(payload.get("date_modified_gmt") or payload.get("date_modified"))
        affected = []
        for product_id, variation_id, data in targets:
            try:
                quantity = int(data["stock_quantity"])
            except (TypeError, ValueError):
                raise InvalidRequestError(f"库存数量不合法: {data.get('stock_quantity')}")
            _, after = self.store.set_total(
                product_id, variation_id, max(0, quantity),
                sync_source=SyncSource.WEBHOOK,
                remote_modified_at=modified_at,
                operator="webhook",
                reason="远端库存更新",
            )
            if after is not None:
                affected.append(after)
        return affected

    def _apply_order(self, payload: Dict[str, Any]) -> List[StockLevel]:
        status = str(payload.get("status")).lower()

        line_items = payload.get("line_items") or []
        if not isinstance(line_items, list):
            raise InvalidRequestError("line_items 格式不合法")

        affected = []
        for item in line_items:
            if not isinstance(item, dict):
                raise InvalidRequestError(f"订单商品格式不合法: {item!r}")
            product_id = item.get("product_id")
            if not product_id:
                continue
            try:
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                raise InvalidRequestError(f"订单商品数量不合法: {item.get('quantity')}")
            if quantity <= 0:
                continue
            variation_id = str(item["variation_id"]) if item.get("variation_id") else None

            try:
                _, after = self.store.restore(
                    str(product_id), variation_id, quantity,
                    operator="webhook",
                    reason=f"订单 {payload['id']} 状态为 {status}，回补库存",
                )
            except ProductNotFoundError:
                logger.warning(f"回补库存时商品记录不存在，跳过: product_id={product_id}, variation_id={variation_id}")
                continue
            if after is not None:
                affected.append(after)
        return affected

    def _after_commit(self, affected: List[StockLevel]) -> None:
        if self.cache is None or not affected:
            return
        self.cache.invalidate_many(level.product_id for level in affected)
        for level in affected:
            self.cache.publish_stock_update(level.product_id, {
                "variation_id": level.variation_id,
                "available_stock": level.available_stock,
                "reason": "webhook",
            })
