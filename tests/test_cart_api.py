"""Cart endpoints end to end through the FastAPI app."""

import time

import pytest
from sqlalchemy import select

from conftest import DownBroker, RecordingBroker
from models.notification_log import NotificationLog

USER = "8c5a3c1e-2b7d-4d0e-9a51-6f1d2e3c4b5a"


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def client(make_client, broker):
    return make_client(broker)


def _upsert(client, product_id, quantity, user_id=USER):
    return client.post("/cart/upsert", json={"userId": user_id, "productId": product_id, "quantity": quantity})


class TestCartEndpoints:
    def test_upsert_then_get_priced_cart(self, client):
        assert _upsert(client, 1, 2).status_code == 200
        assert _upsert(client, 2, 1).status_code == 200

        response = client.get(f"/cart/{USER}")

        assert response.status_code == 200
        body = response.json()
        assert body["cartHeader"]["userId"] == USER
        assert body["cartHeader"]["cartTotal"] == 25
        assert body["subtotal"] == 25
        assert {line["productId"]: line["quantity"] for line in body["cartDetails"]} == {1: 2, 2: 1}
        assert body["cartDetails"][0]["product"]["name"] == "Product A"

    def test_upsert_accumulates(self, client):
        _upsert(client, 1, 2)
        body = _upsert(client, 1, 3).json()

        assert [line["quantity"] for line in body["cartDetails"]] == [5]

    def test_apply_and_remove_coupon(self, client):
        _upsert(client, 1, 2)
        _upsert(client, 2, 1)

        assert client.post("/cart/apply-coupon", json={"userId": USER, "couponCode": "SAVE5"}).json() == {"result": True}
        header = client.get(f"/cart/{USER}").json()["cartHeader"]
        assert header["couponCode"] == "SAVE5"
        assert header["discount"] == 5
        assert header["cartTotal"] == 20

        assert client.post("/cart/remove-coupon", json={"userId": USER}).json() == {"result": True}
        header = client.get(f"/cart/{USER}").json()["cartHeader"]
        assert header["couponCode"] is None
        assert header["cartTotal"] == 25

    def test_remove_last_line_deletes_cart(self, client):
        line_id = _upsert(client, 1, 2).json()["cartDetails"][0]["cartDetailsId"]

        assert client.post("/cart/remove", json={"lineId": line_id}).json() == {"result": True}
        assert client.get(f"/cart/{USER}").status_code == 404

    def test_remove_unknown_line(self, client):
        assert client.post("/cart/remove", json={"lineId": 12345}).json() == {"result": False}
        assert client.post("/cart/remove", json={"lineId": 12345, "strict": True}).status_code == 404

    def test_missing_product_is_flagged(self, client):
        _upsert(client, 1, 1)
        _upsert(client, 77, 1)

        body = client.get(f"/cart/{USER}").json()

        assert body["hasMissingProducts"] is True
        assert body["cartHeader"]["cartTotal"] == 10


class TestCartErrors:
    def test_unknown_cart_is_404(self, client):
        response = client.get(f"/cart/{USER}")

        assert response.status_code == 404
        assert "detail" in response.json()

    def test_non_positive_quantity_is_400(self, client):
        assert _upsert(client, 1, 0).status_code == 400

    def test_coupon_on_missing_cart_is_404(self, client):
        assert client.post("/cart/apply-coupon", json={"userId": USER, "couponCode": "SAVE5"}).status_code == 404

    def test_invalid_payload_is_422(self, client):
        assert client.post("/cart/upsert", json={"userId": USER, "productId": "abc"}).status_code == 422


class TestEmailCart:
    def test_email_cart_queues_priced_snapshot(self, client, broker):
        _upsert(client, 1, 2)
        _upsert(client, 2, 1)
        client.post("/cart/apply-coupon", json={"userId": USER, "couponCode": "SAVE5"})

        response = client.post(
            "/cart/email-cart",
            json={"userId": USER, "email": "buyer@example.com"},
            headers={"X-Correlation-ID": "corr-email"},
        )

        assert response.status_code == 202
        assert response.json() == {"queued": True}
        [(queue, body, correlation_id)] = broker.published
        assert queue == "emailshoppingcart"
        assert correlation_id == "corr-email"
        assert body["type"] == "cart-email"
        assert body["email"] == "buyer@example.com"
        assert body["cartHeader"]["cartTotal"] == 20
        assert body["correlationId"] == "corr-email"

    def test_email_cart_for_missing_cart_is_404(self, client, broker):
        response = client.post("/cart/email-cart", json={"userId": USER, "email": "buyer@example.com"})

        assert response.status_code == 404
        assert broker.published == []

    def test_email_cart_rejects_invalid_email(self, client):
        _upsert(client, 1, 1)

        assert client.post("/cart/email-cart", json={"userId": USER, "email": "not-an-email"}).status_code == 422

    def test_broker_outage_does_not_fail_request(self, make_client):
        client = make_client(DownBroker())
        _upsert(client, 1, 1)

        response = client.post("/cart/email-cart", json={"userId": USER, "email": "buyer@example.com"})

        assert response.status_code == 202
        assert response.json() == {"queued": False}
        assert client.get("/health").json()["failed_publishes"] == 1


class TestCorrelation:
    def test_incoming_correlation_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"

    def test_correlation_id_is_generated_when_absent(self, client):
        first = client.get("/health").headers["X-Correlation-ID"]
        second = client.get("/health").headers["X-Correlation-ID"]

        assert first and second and first != second


def test_health(client):
    body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["consumer_running"] is True
    assert body["failed_publishes"] == 0


def _logged_recipients(client):
    async def _read():
        async with client.app.state.database.session_factory() as session:
            return [entry.recipient for entry in await session.scalars(select(NotificationLog))]

    return client.portal.call(_read)


def test_in_memory_broker_is_consumed_without_consumer_flag(client):
    _upsert(client, 1, 1)

    assert client.post("/cart/email-cart", json={"userId": USER, "email": "buyer@example.com"}).json() == {"queued": True}

    deadline = time.monotonic() + 5
    while not _logged_recipients(client) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert _logged_recipients(client) == ["buyer@example.com"]
