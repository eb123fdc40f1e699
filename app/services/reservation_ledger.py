"""预占台账

预占记录的唯一写入方。状态变更一律使用带前置状态的条件更新
(WHERE status = 'ACTIVE')，只有一个调用方能把某条预占从 ACTIVE
迁出；用户确认/释放与过期清理并发时不会重复归还库存。
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.timeutils import utcnow
from app.models.reservations import Reservation, ReservationStatus
from app.services.stock_store import storage_variation


def new_reservation_id() -> str:
    return uuid.uuid4().hex


class ReservationLedger:

    def __init__(self, db: Session, ttl_minutes: Optional[int] = None):
        self.db = db
        self.ttl = timedelta(minutes=ttl_minutes or settings.RESERVATION_TTL_MINUTES)

    def create(
        self,
        product_id: str,
        variation_id: Optional[str],
        quantity: int,
        owner_id: str,
        reservation_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Reservation:
        now = now or utcnow()
        reservation = Reservation(
            id=reservation_id or new_reservation_id(),
            product_id=product_id,
            variation_id=storage_variation(variation_id),
            quantity=quantity,
            owner_id=owner_id,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(reservation)
        self.db.flush()
        return reservation

    def get(self, reservation_id: str) -> Optional[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def transition(
        self,
        reservation_id: str,
        target: ReservationStatus,
        now: datetime,
        expired: bool = False,
    ) -> bool:
        """把 ACTIVE 预占迁移到终态，返回本次调用是否胜出

        expired=False 时只迁移尚未过期的预占（用户确认/释放）；
        expired=True 时只迁移已过期的预占（过期清理）。
        """
        conditions = [
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.ACTIVE,
        ]
        if expired:
            conditions.append(Reservation.expires_at < now)
        else:
            conditions.append(Reservation.expires_at > now)

        values = {"status": target, "updated_at": now}
        if target == ReservationStatus.CONFIRMED:
            values["confirmed_at"] = now
        else:
            values["released_at"] = now

        result = self.db.execute(
            update(Reservation)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def find_expired(
        self,
        now: datetime,
        limit: int,
        after_id: Optional[str] = None,
    ) -> List[Reservation]:
        """按 id 分页扫描已过期但仍为 ACTIVE 的预占"""
        stmt = select(Reservation).where(
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at < now,
        )
        if after_id is not None:
            stmt = stmt.where(Reservation.id > after_id)
        stmt = stmt.order_by(Reservation.id).limit(limit)
        return list(self.db.execute(stmt).scalars().all())

    def count_expired(self, now: datetime) -> int:
        stmt = select(func.count()).select_from(Reservation).where(
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at < now,
        )
        return self.db.execute(stmt).scalar_one()

    def count_active_for_owner(self, owner_id: str, now: datetime) -> int:
        stmt = select(func.count()).select_from(Reservation).where(
            Reservation.owner_id == owner_id,
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at > now,
        )
        return self.db.execute(stmt).scalar_one()

    def list_for_owner(
        self,
        owner_id: str,
        now: datetime,
        include_inactive: bool = False,
    ) -> List[Reservation]:
        stmt = select(Reservation).where(Reservation.owner_id == owner_id)
        if not include_inactive:
            stmt = stmt.where(
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.expires_at > now,
            )
        stmt = stmt.order_by(Reservation.created_at.desc())
        return list(self.db.execute(stmt).scalars().all())
