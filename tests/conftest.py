"""测试配置和 fixtures"""
import pytest
from unittest.mock import Mock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from redis import Redis

import app.models  # noqa: F401
from app.db.base import Base
from app.models.stock_records import SyncSource
from app.services.stock_store import StockStore


@pytest.fixture
def db_engine(tmp_path):
    """每个测试独立的 SQLite 文件库（多个会话可并发访问同一份数据）"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'inventory.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """创建真实数据库会话"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def seed_stock(session_factory):
    """写入一条库存记录，返回 (product_id, variation_id, total)"""
    def _seed(product_id="1001", total=10, variation_id=None):
        db = session_factory()
        try:
            StockStore(db).seed(product_id, variation_id, total, source=SyncSource.SEED)
            db.commit()
        finally:
            db.close()
        return product_id, variation_id, total
    return _seed


@pytest.fixture
def mock_redis():
    """创建模拟 Redis 客户端"""
    redis_mock = Mock(spec=Redis)
    redis_mock.get.return_value = None
    redis_mock.setex.return_value = True
    redis_mock.delete.return_value = 1
    redis_mock.mget.return_value = [None, None]
    redis_mock.pipeline.return_value = Mock()
    return redis_mock


@pytest.fixture
def product_payload():
    """远端后台商品更新事件示例"""
    return {
        "id": 1001,
        "name": "测试商品",
        "slug": "test-product",
        "manage_stock": True,
        "stock_quantity": 10,
        "stock_status": "instock",
        "date_modified_gmt": "2026-10-18T08:00:00",
        "variations": [],
    }


@pytest.fixture
def order_payload():
    """远端后台订单事件示例"""
    return {
        "id": 5001,
        "status": "cancelled",
        "date_modified_gmt": "2026-10-18T09:00:00",
        "line_items": [
            {"id": 1, "product_id": 1001, "variation_id": 0, "quantity": 2},
        ],
    }
