"""远端电商后台（WooCommerce REST v3）库存查询客户端"""

import logging
from datetime import datetime
from typing import NamedTuple, Optional

import requests

from app.core.config import settings
from app.core.timeutils import parse_remote_timestamp

logger = logging.getLogger(__name__)


class RemoteStock(NamedTuple):
    quantity: int
    modified_at: Optional[datetime]


class CommerceClient:

    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.auth = (consumer_key, consumer_secret)
        self.timeout = timeout or settings.COMMERCE_API_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    def product_url(self, product_id: str, variation_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/wp-json/wc/v3/products/{product_id}"
        if variation_id:
            url += f"/variations/{variation_id}"
        return url

    def fetch_stock(self, product_id: str, variation_id: Optional[str] = None) -> Optional[RemoteStock]:
        """查询远端权威库存及其修改时间

        Returns:
            RemoteStock；商品不存在或未开启库存管理时返回 None

        Raises:
            requests.RequestException: 网络或远端服务异常（瞬时故障）
        """
        url = self.product_url(product_id, variation_id)
        response = self.session.get(url, auth=self.auth, timeout=self.timeout)
        if response.status_code == 404:
            logger.info(f"远端商品不存在: product_id={product_id}, variation_id={variation_id}")
            return None
        response.raise_for_status()

        data = response.json()
        if not data.get("manage_stock") or data.get("stock_quantity") is None:
            return None
        return RemoteStock(
            quantity=max(0, int(data["stock_quantity"])),
            modified_at=parse_remote_timestamp(data.get("date_modified_gmt")),
        )

    def fetch_stock_quantity(self, product_id: str, variation_id: Optional[str] = None) -> Optional[int]:
        remote = self.fetch_stock(product_id, variation_id)
        return remote.quantity if remote else None


def get_commerce_client() -> Optional[CommerceClient]:
    """未配置远端地址时返回 None"""
    if not settings.COMMERCE_API_URL:
        return None
    return CommerceClient(
        settings.COMMERCE_API_URL,
        settings.COMMERCE_CONSUMER_KEY,
        settings.COMMERCE_CONSUMER_SECRET,
    )
