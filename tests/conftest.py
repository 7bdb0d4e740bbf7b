"""Shared fixtures: a throwaway SQLite database per test, fake catalog services, in-memory broker."""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import Database
from main import create_app
from messaging.broker import InMemoryBroker
from services.cart_store import CartStore
from utils.cache import MemoryCache
from utils.catalog_client import CouponCatalog, ProductCatalog
from utils.errors import TransportError

PRODUCTS = [
    {"productId": 1, "name": "Product A", "price": 10.0, "categoryName": "Books"},
    {"productId": 2, "name": "Product B", "price": 5.0, "categoryName": "Games"},
    {"productId": 3, "name": "Product C", "price": 2.5},
]

COUPONS = {
    "SAVE5": {"couponCode": "SAVE5", "discountAmount": 5.0, "minimumAmount": 20},
    "BIGSPENDER": {"couponCode": "BIGSPENDER", "discountAmount": 5.0, "minimumAmount": 100},
}


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        SECRET_KEY="test-secret",
        PRODUCT_API_URL="http://products.test",
        COUPON_API_URL="http://coupons.test",
        BROKER_URL="memory://",
        CACHE_URL="memory://",
        MAX_DELIVERY_COUNT=3,
        RECEIVE_TIMEOUT_SECONDS=0.05,
        CONSUMER_ENABLED=False,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings.DATABASE_URL)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def cart_store(database, cache):
    return CartStore(database, cache, cache_ttl_seconds=60)


@pytest.fixture
def broker():
    return InMemoryBroker(max_delivery_count=3)


def catalog_handler(products, coupons, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        path = request.url.path
        if path == "/api/product":
            return httpx.Response(200, json={"result": products, "isSuccess": True, "message": ""})
        if path.startswith("/api/product/"):
            product_id = int(path.rsplit("/", 1)[1])
            product = next((p for p in products if p["productId"] == product_id), None)
            return httpx.Response(200, json={"result": product, "isSuccess": product is not None, "message": ""})
        if path.startswith("/api/coupon/GetByCode/"):
            coupon = coupons.get(path.rsplit("/", 1)[1].upper())
            return httpx.Response(200, json={"result": coupon, "isSuccess": coupon is not None, "message": ""})
        return httpx.Response(404)

    return handler


@pytest.fixture
def catalog_calls():
    return []


@pytest.fixture
def products(catalog_calls):
    transport = httpx.MockTransport(catalog_handler(PRODUCTS, COUPONS, catalog_calls))
    return ProductCatalog("http://products.test", transport=transport)


@pytest.fixture
def coupons(catalog_calls):
    transport = httpx.MockTransport(catalog_handler(PRODUCTS, COUPONS, catalog_calls))
    return CouponCatalog("http://coupons.test", transport=transport)


@pytest.fixture
def unreachable_transport():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.MockTransport(handler)


class RecordingBroker(InMemoryBroker):
    """In-memory broker that also remembers what was published."""

    def __init__(self, max_delivery_count=3):
        super().__init__(max_delivery_count)
        self.published = []

    async def publish(self, queue, body, correlation_id=None):
        self.published.append((queue, json.loads(body), correlation_id))
        return await super().publish(queue, body, correlation_id)


class DownBroker(InMemoryBroker):
    async def publish(self, queue, body, correlation_id=None):
        raise TransportError("broker unreachable")


@pytest.fixture
def recording_broker():
    return RecordingBroker()


@pytest.fixture
def make_client(settings, products, coupons):
    """Builds a TestClient (lifespan included) around a fully wired app."""
    clients = []

    def _make(broker=None, **overrides):
        app = create_app(
            settings.model_copy(update=overrides),
            broker=broker or RecordingBroker(),
            cache=MemoryCache(),
            products=products,
            coupons=coupons,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
