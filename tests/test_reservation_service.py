"""预占服务单元测试"""
import pytest
from datetime import timedelta
from unittest.mock import Mock

import requests

from app.core.exceptions import (
    InvalidRequestError,
    ProductNotFoundError,
    ReservationLimitError,
    ReservationNotFoundError,
    UpstreamUnavailableError,
)
from app.core.timeutils import utcnow
from app.models.reservations import Reservation, ReservationStatus
from app.models.stock_records import SyncSource
from app.schemas.inventory import StockError
from app.services.commerce_client import CommerceClient
from app.services.display_cache import DisplayCache
from app.services.reservation_service import ReservationService
from app.services.stock_store import StockStore


def expire_reservation(db, reservation_id):
    """把预占的过期时间拨到过去"""
    reservation = db.get(Reservation, reservation_id)
    reservation.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()


class TestCreateReservation:
    """预占创建测试类"""

    def test_create_reservation_success(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)

        reservation = service.create_reservation("1001", 3, "cart_1")

        assert isinstance(reservation, Reservation)
        assert reservation.status == ReservationStatus.ACTIVE
        assert len(reservation.id) == 32
        delta = reservation.expires_at - reservation.created_at
        assert delta == timedelta(minutes=15)
        level = service.check_available_stock("1001")
        assert level.reserved_stock == 3
        assert level.available_stock == 2

    def test_create_reservation_insufficient_stock(self, db_session, seed_stock):
        seed_stock("1001", total=2)
        service = ReservationService(db_session)

        result = service.create_reservation("1001", 3, "cart_1")

        assert isinstance(result, StockError)
        assert result.available_stock == 2
        assert result.requested == 3
        assert "2" in result.message
        assert service.check_available_stock("1001").reserved_stock == 0
        assert service.list_owner_reservations("cart_1") == []

    def test_last_unit_goes_to_one_cart(self, db_session, seed_stock):
        seed_stock("1001", total=1)
        service = ReservationService(db_session)

        first = service.create_reservation("1001", 1, "cart_1")
        second = service.create_reservation("1001", 1, "cart_2")

        assert isinstance(first, Reservation)
        assert isinstance(second, StockError)
        assert second.available_stock == 0

    def test_concurrent_reservations_never_both_succeed(self, session_factory, seed_stock):
        """总库存 5，两个购物车同时各预占 3 件：只有一个成功"""
        seed_stock("1001", total=5)
        first_db = session_factory()
        other_db = session_factory()
        service = ReservationService(first_db)
        original_get = service.store.get
        raced = []

        def racing_get(product_id, variation_id=None):
            record = original_get(product_id, variation_id)
            # 第一次读取用于检查记录是否存在，第二次才是预占前的读取
            if len(raced) == 1:
                winner = ReservationService(other_db).create_reservation("1001", 3, "cart_2")
                assert isinstance(winner, Reservation)
            raced.append(True)
            return record

        service.store.get = racing_get
        result = service.create_reservation("1001", 3, "cart_1")

        assert isinstance(result, StockError)
        assert result.available_stock == 2
        level = ReservationService(other_db).check_available_stock("1001")
        assert level.reserved_stock == 3
        assert level.available_stock == 2
        first_db.close()
        other_db.close()

    @pytest.mark.parametrize("product_id,quantity,owner_id", [
        ("", 1, "cart_1"),
        ("1001", 0, "cart_1"),
        ("1001", -2, "cart_1"),
        ("1001", 1, ""),
    ])
    def test_create_reservation_invalid_input(self, db_session, seed_stock, product_id, quantity, owner_id):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)

        with pytest.raises(InvalidRequestError):
            service.create_reservation(product_id, quantity, owner_id)

    def test_create_reservation_unknown_product(self, db_session):
        with pytest.raises(ProductNotFoundError):
            ReservationService(db_session).create_reservation("404", 1, "cart_1")

    def test_owner_reservation_limit(self, db_session, seed_stock):
        seed_stock("1001", total=100)
        service = ReservationService(db_session)
        service.max_per_owner = 2

        service.create_reservation("1001", 1, "cart_1")
        service.create_reservation("1001", 1, "cart_1")

        with pytest.raises(ReservationLimitError):
            service.create_reservation("1001", 1, "cart_1")
        # 其他购物车不受影响
        assert isinstance(service.create_reservation("1001", 1, "cart_2"), Reservation)

    def test_expired_reservations_do_not_count_toward_limit(self, db_session, seed_stock):
        seed_stock("1001", total=100)
        service = ReservationService(db_session)
        service.max_per_owner = 1

        first = service.create_reservation("1001", 1, "cart_1")
        expire_reservation(db_session, first.id)

        assert isinstance(service.create_reservation("1001", 1, "cart_1"), Reservation)

    def test_lazy_seed_from_commerce_api(self, db_session):
        commerce = Mock(spec=CommerceClient)
        commerce.fetch_stock_quantity.return_value = 4
        service = ReservationService(db_session, commerce=commerce)

        reservation = service.create_reservation("3003", 1, "cart_1", variation_id="12")

        assert isinstance(reservation, Reservation)
        commerce.fetch_stock_quantity.assert_called_once_with("3003", "12")
        level = service.check_available_stock("3003", "12")
        assert level.total_stock == 4
        assert level.available_stock == 3

    def test_lazy_seed_unknown_remote_product(self, db_session):
        commerce = Mock(spec=CommerceClient)
        commerce.fetch_stock_quantity.return_value = None
        service = ReservationService(db_session, commerce=commerce)

        with pytest.raises(ProductNotFoundError):
            service.create_reservation("3003", 1, "cart_1")

    def test_lazy_seed_remote_failure(self, db_session):
        commerce = Mock(spec=CommerceClient)
        commerce.fetch_stock_quantity.side_effect = requests.ConnectionError("timeout")
        service = ReservationService(db_session, commerce=commerce)

        with pytest.raises(UpstreamUnavailableError):
            service.create_reservation("3003", 1, "cart_1")

    def test_existing_record_skips_commerce_api(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        commerce = Mock(spec=CommerceClient)
        service = ReservationService(db_session, commerce=commerce)

        service.create_reservation("1001", 1, "cart_1")

        commerce.fetch_stock_quantity.assert_not_called()

    def test_cache_invalidated_after_commit(self, db_session, seed_stock, mock_redis):
        seed_stock("1001", total=5)
        service = ReservationService(db_session, cache=DisplayCache(mock_redis))

        service.create_reservation("1001", 2, "cart_1")

        mock_redis.delete.assert_called_once_with("product:1001")
        key, ttl, _ = mock_redis.setex.call_args[0]
        assert key == "stock_update:1001"
        assert ttl == 60


class TestRetireReservation:
    """确认与释放测试类"""

    def test_confirm_reservation(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")

        assert service.confirm_reservation(reservation.id) is True

        level = service.check_available_stock("1001")
        assert level.total_stock == 3
        assert level.reserved_stock == 0
        current = service.get_reservation(reservation.id)
        assert current.status == ReservationStatus.CONFIRMED
        assert current.confirmed_at is not None

    def test_release_reservation(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")

        assert service.release_reservation(reservation.id) is True

        level = service.check_available_stock("1001")
        assert level.total_stock == 5
        assert level.available_stock == 5
        assert service.get_reservation(reservation.id).status == ReservationStatus.RELEASED

    def test_release_is_idempotent(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")

        assert service.release_reservation(reservation.id) is True
        assert service.release_reservation(reservation.id) is True

        assert service.check_available_stock("1001").reserved_stock == 0

    def test_confirm_is_idempotent(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")

        service.confirm_reservation(reservation.id)
        assert service.confirm_reservation(reservation.id) is True

        assert service.check_available_stock("1001").total_stock == 3

    def test_confirm_released_reservation_fails(self, db_session, seed_stock):
        """已释放的预占不能再确认，库存不变"""
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")
        service.release_reservation(reservation.id)
        before = service.check_available_stock("1001")

        assert service.confirm_reservation(reservation.id) is False

        assert service.check_available_stock("1001") == before
        assert service.get_reservation(reservation.id).status == ReservationStatus.RELEASED

    def test_confirm_expired_reservation_fails(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 2, "cart_1")
        expire_reservation(db_session, reservation.id)

        assert service.confirm_reservation(reservation.id) is False

        level = service.check_available_stock("1001")
        assert level.total_stock == 5
        # 预占数量留给过期回收任务归还
        assert level.reserved_stock == 2
        assert service.get_reservation(reservation.id).status == ReservationStatus.ACTIVE

    def test_confirm_after_upstream_lowers_total(self, db_session, seed_stock):
        """远端把总库存下调到低于已预占数量后，有效预占仍可确认，总库存扣到 0"""
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        reservation = service.create_reservation("1001", 3, "cart_1")
        StockStore(db_session).set_total("1001", None, 2, sync_source=SyncSource.WEBHOOK)
        db_session.commit()

        assert service.confirm_reservation(reservation.id) is True

        level = service.check_available_stock("1001")
        assert level.total_stock == 0
        assert level.reserved_stock == 0
        assert level.available_stock == 0
        assert service.get_reservation(reservation.id).status == ReservationStatus.CONFIRMED

    def test_unknown_reservation(self, db_session):
        service = ReservationService(db_session)

        with pytest.raises(ReservationNotFoundError):
            service.confirm_reservation("0" * 32)
        with pytest.raises(ReservationNotFoundError):
            service.release_reservation("0" * 32)


class TestReservationQueries:

    def test_list_owner_reservations(self, db_session, seed_stock):
        seed_stock("1001", total=10)
        service = ReservationService(db_session)
        kept = service.create_reservation("1001", 1, "cart_1")
        released = service.create_reservation("1001", 1, "cart_1")
        service.create_reservation("1001", 1, "cart_2")
        service.release_reservation(released.id)

        active = service.list_owner_reservations("cart_1")
        everything = service.list_owner_reservations("cart_1", include_inactive=True)

        assert [r.id for r in active] == [kept.id]
        assert len(everything) == 2

    def test_set_total_stock_manual(self, db_session, seed_stock):
        seed_stock("1001", total=5)
        service = ReservationService(db_session)
        service.create_reservation("1001", 2, "cart_1")

        level = service.set_total_stock("1001", 8, operator="admin")

        assert level.total_stock == 8
        assert level.reserved_stock == 2
        assert StockStore(db_session).get_level("1001").available_stock == 6
