"""Celery 任务单元测试"""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch
from sqlalchemy import select

from app.models.audit_logs import AuditLogEntry, ChangeType
from app.models.stock_records import SyncSource
from app.schemas.inventory import StockLevel
from app.services.commerce_client import RemoteStock
from app.services.stock_store import StockStore
from tasks.inventory_tasks import (
    purge_idempotency_keys,
    reap_expired_reservations,
    reconcile_stock,
)


class TestInventoryTasks:
    """库存 Celery 任务测试类"""

    def test_reap_expired_reservations_success(self):
        """测试回收过期预占任务成功"""
        reaper_mock = Mock()
        reaper_mock.sweep.return_value = 5
        reaper_mock.failed = 0
        db_mock = Mock()

        with patch('tasks.inventory_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.inventory_tasks.ExpirationReaper') as mock_reaper, \
             patch('tasks.inventory_tasks.redis_client'):

            mock_session_local.return_value = db_mock
            mock_reaper.return_value = reaper_mock

            result = reap_expired_reservations(batch_size=100)

            assert result == "成功回收 5 条过期预占记录"
            reaper_mock.sweep.assert_called_once_with(100)
            db_mock.close.assert_called_once()

    def test_reap_expired_reservations_partial_failure(self):
        reaper_mock = Mock()
        reaper_mock.sweep.return_value = 3
        reaper_mock.failed = 2

        with patch('tasks.inventory_tasks.SessionLocal'), \
             patch('tasks.inventory_tasks.ExpirationReaper') as mock_reaper, \
             patch('tasks.inventory_tasks.redis_client'):

            mock_reaper.return_value = reaper_mock

            result = reap_expired_reservations()

            assert "3" in result
            assert "2 条失败" in result

    def test_reap_expired_reservations_exception(self):
        """测试回收任务异常"""
        db_mock = Mock()

        with patch('tasks.inventory_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.inventory_tasks.ExpirationReaper') as mock_reaper, \
             patch('tasks.inventory_tasks.redis_client'):

            mock_session_local.return_value = db_mock
            mock_reaper.return_value.sweep.side_effect = Exception("数据库错误")

            with pytest.raises(Exception) as exc_info:
                reap_expired_reservations()

            assert "数据库错误" in str(exc_info.value)
            db_mock.rollback.assert_called_once()
            db_mock.close.assert_called_once()

    def test_purge_idempotency_keys(self):
        db_mock = Mock()

        with patch('tasks.inventory_tasks.SessionLocal') as mock_session_local, \
             patch('tasks.inventory_tasks.IdempotencyStore') as mock_store:

            mock_session_local.return_value = db_mock
            mock_store.return_value.purge_expired.return_value = 7

            assert purge_idempotency_keys() == 7
            db_mock.commit.assert_called_once()
            db_mock.close.assert_called_once()

    def test_reconcile_stock(self):
        db_mock = Mock()
        client_mock = Mock()
        modified_at = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)
        client_mock.fetch_stock.return_value = RemoteStock(12, modified_at)
        level = StockLevel(product_id="1001", total_stock=12, reserved_stock=2, available_stock=10)

        with patch('tasks.inventory_tasks.get_commerce_client', return_value=client_mock), \
             patch('tasks.inventory_tasks.SessionLocal', return_value=db_mock), \
             patch('tasks.inventory_tasks.StockStore') as mock_store, \
             patch('tasks.inventory_tasks.redis_client') as mock_redis:

            mock_store.return_value.set_total.return_value = (None, level)

            result = reconcile_stock("1001")

            assert result["available_stock"] == 10
            call = mock_store.return_value.set_total.call_args
            assert call[0][:3] == ("1001", None, 12)
            assert call[1]["sync_source"] == SyncSource.RECONCILE
            assert call[1]["remote_modified_at"] == modified_at
            db_mock.commit.assert_called_once()
            mock_redis.delete.assert_called_once_with("product:1001")

    def test_reconcile_does_not_overwrite_newer_webhook(self, session_factory, seed_stock):
        """对账拉到的数据早于已应用的 webhook 时不覆盖总库存"""
        seed_stock("1001", total=5)
        db = session_factory()
        StockStore(db).set_total(
            "1001", None, 8,
            sync_source=SyncSource.WEBHOOK,
            remote_modified_at=datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc),
        )
        db.commit()
        db.close()
        client_mock = Mock()
        client_mock.fetch_stock.return_value = RemoteStock(3, datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc))

        with patch('tasks.inventory_tasks.get_commerce_client', return_value=client_mock), \
             patch('tasks.inventory_tasks.SessionLocal', session_factory), \
             patch('tasks.inventory_tasks.redis_client') as mock_redis:

            assert reconcile_stock("1001") is None
            mock_redis.delete.assert_not_called()

        db = session_factory()
        record = StockStore(db).get("1001")
        assert record.total_stock == 8
        assert record.sync_source == SyncSource.WEBHOOK
        db.close()

    def test_reconcile_audited_as_reconcile(self, session_factory, seed_stock):
        seed_stock("1001", total=5)
        client_mock = Mock()
        client_mock.fetch_stock.return_value = RemoteStock(7, None)

        with patch('tasks.inventory_tasks.get_commerce_client', return_value=client_mock), \
             patch('tasks.inventory_tasks.SessionLocal', session_factory), \
             patch('tasks.inventory_tasks.redis_client'):

            assert reconcile_stock("1001")["total_stock"] == 7

        db = session_factory()
        entry = db.execute(
            select(AuditLogEntry).order_by(AuditLogEntry.id.desc())
        ).scalars().first()
        assert entry.change_type == ChangeType.RECONCILE_SET
        assert StockStore(db).get("1001").sync_source == SyncSource.RECONCILE
        db.close()

    def test_reconcile_stock_without_client(self):
        with patch('tasks.inventory_tasks.get_commerce_client', return_value=None), \
             patch('tasks.inventory_tasks.SessionLocal') as mock_session_local:

            assert reconcile_stock("1001") is None
            mock_session_local.assert_not_called()

    def test_beat_schedule_registered(self):
        from celery_app import app

        tasks = {entry['task'] for entry in app.conf.beat_schedule.values()}
        assert 'tasks.inventory.reap_expired_reservations' in tasks
        assert 'tasks.inventory.purge_idempotency_keys' in tasks
