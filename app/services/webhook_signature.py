"""Webhook 签名校验

签名为 HMAC-SHA256(secret, 原始请求体)。远端后台默认以 base64 编码发送；
其他编码只有在 WEBHOOK_SIGNATURE_FORMATS 中显式开启后才接受。
"""

import base64
import hashlib
import hmac
import logging
from typing import Callable, Dict, Iterable, Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


def _base64(digest: bytes) -> str:
    return base64.b64encode(digest).decode("ascii")


def _hex(digest: bytes) -> str:
    return digest.hex()


def _prefixed_hex(digest: bytes) -> str:
    return "sha256=" + digest.hex()


def _prefixed_base64(digest: bytes) -> str:
    return "sha256=" + _base64(digest)


# 兼容表：格式名 -> 摘要编码方式
SIGNATURE_FORMATS: Dict[str, Callable[[bytes], str]] = {
    "base64": _base64,
    "hex": _hex,
    "sha256=hex": _prefixed_hex,
    "sha256=base64": _prefixed_base64,
}


def sign(secret: str, raw_body: bytes, fmt: str = "base64") -> str:
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return SIGNATURE_FORMATS[fmt](digest)


class WebhookSignatureVerifier:

    def __init__(self, secret: Optional[str] = None, formats: Optional[Iterable[str]] = None):
        self.secret = settings.WEBHOOK_SECRET if secret is None else secret
        formats = list(formats if formats is not None else settings.WEBHOOK_SIGNATURE_FORMATS)
        unknown = [f for f in formats if f not in SIGNATURE_FORMATS]
        if unknown:
            raise ValueError(f"Unsupported webhook signature formats: {unknown}")
        self.formats = formats

    def verify(self, raw_body: bytes, signature: Optional[str]) -> bool:
        if not self.secret:
            logger.error("Webhook 密钥未配置，拒绝所有 webhook 请求")
            return False
        if not signature:
            return False

        signature = signature.strip()
        for fmt in self.formats:
            expected = sign(self.secret, raw_body, fmt)
            if hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8")):
                return True
        return False
