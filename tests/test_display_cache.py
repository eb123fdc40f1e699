"""展示缓存测试"""
import json
from unittest.mock import Mock

from redis.exceptions import ConnectionError as RedisConnectionError

from app.services.display_cache import DisplayCache, build_snapshot
from app.services.reservation_service import ReservationService
from app.services.stock_store import StockStore


class TestDisplayCache:
    """展示缓存测试类"""

    def test_read_through_cache_hit(self, mock_redis):
        mock_redis.get.return_value = json.dumps({"product_id": "1001", "available_stock": 3})
        loader = Mock()

        snapshot = DisplayCache(mock_redis).read_through("1001", loader)

        assert snapshot["available_stock"] == 3
        mock_redis.get.assert_called_once_with("product:1001")
        # 缓存命中不应该回源
        loader.assert_not_called()

    def test_read_through_cache_miss(self, mock_redis):
        mock_redis.get.return_value = None
        loader = Mock(return_value={"product_id": "1001", "available_stock": 5})

        snapshot = DisplayCache(mock_redis, ttl=300).read_through("1001", loader)

        assert snapshot["available_stock"] == 5
        loader.assert_called_once_with("1001")
        key, ttl, value = mock_redis.setex.call_args[0]
        assert key == "product:1001"
        assert ttl == 300
        assert json.loads(value)["available_stock"] == 5

    def test_missing_product_not_cached(self, mock_redis):
        snapshot = DisplayCache(mock_redis).read_through("404", Mock(return_value=None))

        assert snapshot is None
        mock_redis.setex.assert_not_called()

    def test_redis_failure_falls_back_to_loader(self, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("down")
        mock_redis.setex.side_effect = RedisConnectionError("down")
        loader = Mock(return_value={"product_id": "1001", "available_stock": 5})

        snapshot = DisplayCache(mock_redis).read_through("1001", loader)

        assert snapshot["available_stock"] == 5

    def test_malformed_entry_discarded(self, mock_redis):
        mock_redis.get.return_value = "{broken"
        loader = Mock(return_value={"product_id": "1001"})

        assert DisplayCache(mock_redis).read_through("1001", loader) == {"product_id": "1001"}

    def test_no_redis_is_noop(self):
        cache = DisplayCache(None)
        loader = Mock(return_value={"product_id": "1001"})

        assert cache.read_through("1001", loader) == {"product_id": "1001"}
        cache.invalidate("1001")
        cache.publish_stock_update("1001", {"available_stock": 1})
        assert cache.recent_stock_updates(["1001"]) == {}

    def test_read_many_fills_misses(self, mock_redis):
        mock_redis.mget.return_value = [json.dumps({"product_id": "1"}), None]
        pipe = Mock()
        mock_redis.pipeline.return_value = pipe
        loader = Mock(return_value={"product_id": "2"})

        result = DisplayCache(mock_redis).read_many(["1", "2"], loader)

        assert result == {"1": {"product_id": "1"}, "2": {"product_id": "2"}}
        mock_redis.mget.assert_called_once_with(["product:1", "product:2"])
        loader.assert_called_once_with("2")
        pipe.setex.assert_called_once()
        pipe.execute.assert_called_once()

    def test_invalidate_swallows_errors(self, mock_redis):
        mock_redis.delete.side_effect = RedisConnectionError("down")

        DisplayCache(mock_redis).invalidate("1001")

        mock_redis.delete.assert_called_once_with("product:1001")

    def test_publish_and_poll_stock_updates(self, mock_redis):
        cache = DisplayCache(mock_redis, update_ttl=60)

        cache.publish_stock_update("1001", {"available_stock": 4})

        key, ttl, value = mock_redis.setex.call_args[0]
        assert key == "stock_update:1001"
        assert ttl == 60
        message = json.loads(value)
        assert message["product_id"] == "1001"
        assert message["available_stock"] == 4
        assert "timestamp" in message

        mock_redis.mget.return_value = [value, None]
        assert cache.recent_stock_updates(["1001", "2002"]) == {"1001": message}


class TestBuildSnapshot:

    def test_snapshot_aggregates_variations(self, db_session, seed_stock):
        seed_stock("1001", total=5, variation_id="11")
        seed_stock("1001", total=3, variation_id="12")
        ReservationService(db_session).create_reservation("1001", 2, "cart_1", variation_id="11")

        snapshot = build_snapshot(StockStore(db_session), "1001")

        assert snapshot["total_stock"] == 8
        assert snapshot["reserved_stock"] == 2
        assert snapshot["available_stock"] == 6
        assert snapshot["in_stock"] is True
        assert snapshot["variations"] == {"11": 3, "12": 3}

    def test_snapshot_missing_product(self, db_session):
        assert build_snapshot(StockStore(db_session), "404") is None
