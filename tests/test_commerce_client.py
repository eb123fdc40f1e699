"""远端库存查询客户端测试"""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

import requests

from app.services.commerce_client import CommerceClient, RemoteStock, get_commerce_client


def make_response(status_code=200, payload=None):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return response


@pytest.fixture
def session():
    return Mock(spec=requests.Session)


class TestCommerceClient:

    def test_product_url(self):
        client = CommerceClient("https://shop.example.com/", "ck", "cs")

        assert client.product_url("1001") == "https://shop.example.com/wp-json/wc/v3/products/1001"
        assert client.product_url("1001", "11").endswith("/products/1001/variations/11")

    def test_fetch_stock_quantity(self, session):
        session.get.return_value = make_response(payload={"manage_stock": True, "stock_quantity": 7})
        client = CommerceClient("https://shop.example.com", "ck", "cs", timeout=3, session=session)

        assert client.fetch_stock_quantity("1001") == 7
        session.get.assert_called_once_with(
            "https://shop.example.com/wp-json/wc/v3/products/1001",
            auth=("ck", "cs"),
            timeout=3,
        )

    def test_fetch_stock_with_modified_time(self, session):
        session.get.return_value = make_response(payload={
            "manage_stock": True,
            "stock_quantity": 7,
            "date_modified_gmt": "2026-10-18T08:00:00",
        })
        client = CommerceClient("https://shop.example.com", "ck", "cs", session=session)

        remote = client.fetch_stock("1001", "11")

        assert remote == RemoteStock(7, datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc))
        assert session.get.call_args[0][0].endswith("/products/1001/variations/11")

    def test_unknown_product(self, session):
        session.get.return_value = make_response(status_code=404)
        client = CommerceClient("https://shop.example.com", "ck", "cs", session=session)

        assert client.fetch_stock_quantity("404") is None

    def test_unmanaged_stock(self, session):
        session.get.return_value = make_response(payload={"manage_stock": False, "stock_quantity": None})
        client = CommerceClient("https://shop.example.com", "ck", "cs", session=session)

        assert client.fetch_stock_quantity("1001") is None

    def test_negative_remote_stock_clamped(self, session):
        session.get.return_value = make_response(payload={"manage_stock": True, "stock_quantity": -2})
        client = CommerceClient("https://shop.example.com", "ck", "cs", session=session)

        assert client.fetch_stock_quantity("1001") == 0

    def test_server_error_raises(self, session):
        session.get.return_value = make_response(status_code=502)
        client = CommerceClient("https://shop.example.com", "ck", "cs", session=session)

        with pytest.raises(requests.HTTPError):
            client.fetch_stock_quantity("1001")

    def test_get_commerce_client_unconfigured(self):
        with patch("app.services.commerce_client.settings") as mock_settings:
            mock_settings.COMMERCE_API_URL = ""
            assert get_commerce_client() is None

    def test_get_commerce_client_configured(self):
        with patch("app.services.commerce_client.settings") as mock_settings:
            mock_settings.COMMERCE_API_URL = "https://shop.example.com"
            mock_settings.COMMERCE_CONSUMER_KEY = "ck"
            mock_settings.COMMERCE_CONSUMER_SECRET = "cs"
            mock_settings.COMMERCE_API_TIMEOUT_SECONDS = 5
            client = get_commerce_client()

        assert isinstance(client, CommerceClient)
        assert client.auth == ("ck", "cs")
