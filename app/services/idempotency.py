"""Webhook 去重窗口

以事件键插入 idempotency_keys 表实现“不存在才插入”。插入与库存变更在同一事务中，
事务回滚时键也一并消失，远端重投时会被重新处理。
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.timeutils import as_utc, utcnow
from app.models.idempotency_keys import IdempotencyKey, IdempotencyStatus

logger = logging.getLogger(__name__)


class IdempotencyStore:

    def __init__(self, db: Session, retention_hours: Optional[int] = None):
        self.db = db
        self.retention = timedelta(hours=retention_hours or settings.WEBHOOK_DEDUPE_RETENTION_HOURS)

    def claim(
        self,
        key: str,
        status: IdempotencyStatus = IdempotencyStatus.APPLIED,
        snapshot: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """登记事件键，返回 False 表示窗口内已处理过该事件"""
        now = now or utcnow()
        existing = self.db.get(IdempotencyKey, key)
        if existing is not None:
            if as_utc(existing.expires_at) > now:
                logger.debug(f"Duplicate webhook event: {key}")
                return False
            # 已过保留期的旧键视为不存在
            self.db.delete(existing)
            self.db.flush()

        # 并发重投时主键冲突抛出 IntegrityError，由调用方回滚后按重复事件处理
        self.db.add(IdempotencyKey(
            key=key,
            status=status,
            response_snapshot=snapshot,
            created_at=now,
            expires_at=now + self.retention,
        ))
        self.db.flush()
        return True

    def record_outcome(self, key: str, status: IdempotencyStatus, snapshot: Optional[dict] = None) -> None:
        entry = self.db.get(IdempotencyKey, key)
        if entry is None:
            return
        entry.status = status
        entry.response_snapshot = snapshot
        self.db.flush()

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        result = self.db.execute(
            delete(IdempotencyKey)
            .where(IdempotencyKey.expires_at < (now or utcnow()))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
