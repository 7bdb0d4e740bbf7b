"""Notification consumer: ack after commit, retry, dead-lettering, queue isolation and shutdown."""

import asyncio

import anyio
import pytest
from sqlalchemy import select

from messaging.consumer import MessageOutcome, NotificationConsumer
from messaging.events import CartEmailRequested, UserRegistered, encode_event
from models.notification_log import NotificationLog
from schemas.cart import CartHeaderDto, CartLineDto, ProductDto
from services.notifications import NotificationProcessor

pytestmark = pytest.mark.anyio

CART_QUEUE = "emailshoppingcart"
USER_QUEUE = "loguser"


def _cart_email(email="buyer@example.com"):
    return CartEmailRequested(
        cart_header=CartHeaderDto(cart_header_id=1, user_id="user-1", cart_total=25),
        cart_details=[
            CartLineDto(
                cart_details_id=1,
                cart_header_id=1,
                product_id=1,
                quantity=2,
                product=ProductDto(product_id=1, name="Product A", price=10.0),
            ),
            CartLineDto(cart_details_id=2, cart_header_id=1, product_id=99, quantity=1, product_missing=True),
        ],
        email=email,
        correlation_id="corr-cart",
    )


async def _logs(database):
    async with database.session_factory() as session:
        return list(await session.scalars(select(NotificationLog).order_by(NotificationLog.id)))


async def _drain(consumer, broker, queue):
    outcomes = []
    while True:
        delivery = await broker.receive(queue, timeout=0.01)
        if delivery is None:
            return outcomes
        outcomes.append(await consumer.handle(delivery))


async def _wait_for(condition, timeout=5.0):
    with anyio.fail_after(timeout):
        while not condition():
            await anyio.sleep(0.01)


class FailingFor(NotificationProcessor):
    """Fails every message addressed to one recipient."""

    def __init__(self, session_factory, recipient):
        super().__init__(session_factory)
        self.recipient = recipient
        self.attempts = 0

    async def process(self, event, message_id=None):
        if event.email == self.recipient:
            self.attempts += 1
            raise RuntimeError("mail relay rejected message")
        return await super().process(event, message_id)


class BlockingCartEmails(NotificationProcessor):
    """Never finishes cart emails; everything else is processed normally."""

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.entered = asyncio.Event()

    async def process(self, event, message_id=None):
        if isinstance(event, CartEmailRequested):
            self.entered.set()
            await asyncio.Event().wait()
        return await super().process(event, message_id)


@pytest.fixture
def processor(database):
    return NotificationProcessor(database.session_factory)


@pytest.fixture
def consumer(broker, processor):
    return NotificationConsumer(broker, processor, queues=[CART_QUEUE, USER_QUEUE], receive_timeout=0.02)


class TestHandle:
    async def test_cart_email_is_logged_and_completed(self, consumer, broker, database):
        message_id = await broker.publish(CART_QUEUE, encode_event(_cart_email()), correlation_id="corr-cart")

        assert await _drain(consumer, broker, CART_QUEUE) == [MessageOutcome.COMPLETED]

        [entry] = await _logs(database)
        assert entry.recipient == "buyer@example.com"
        assert entry.event_type == "cart-email"
        assert entry.message_id == message_id
        assert entry.correlation_id == "corr-cart"
        assert "Cart Email Requested" in entry.message
        assert "Total 25.00" in entry.message
        assert "<li>Product A x 2</li>" in entry.message
        assert "Product #99 (unavailable)" in entry.message
        assert await broker.dead_letters(CART_QUEUE) == []

    async def test_user_registration_is_logged(self, consumer, broker, database):
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="new@example.com")))

        await _drain(consumer, broker, USER_QUEUE)

        [entry] = await _logs(database)
        assert entry.event_type == "user-registered"
        assert "User Registration Successful" in entry.message
        assert "new@example.com" in entry.message

    async def test_unknown_message_type_is_dead_lettered_without_logging(self, consumer, broker, database):
        await broker.publish(USER_QUEUE, '{"type": "order-shipped", "email": "x@example.com"}')

        assert await _drain(consumer, broker, USER_QUEUE) == [MessageOutcome.DEAD_LETTERED]

        assert await _logs(database) == []
        [dead] = await broker.dead_letters(USER_QUEUE)
        assert dead.delivery_count == 1
        assert consumer.stats[USER_QUEUE]["dead_lettered"] == 1

    async def test_poison_message_is_retried_then_dead_lettered(self, broker, database):
        processor = FailingFor(database.session_factory, "poison@example.com")
        consumer = NotificationConsumer(broker, processor, queues=[USER_QUEUE])
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="poison@example.com")))
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="fine@example.com")))

        outcomes = await _drain(consumer, broker, USER_QUEUE)

        assert outcomes.count(MessageOutcome.FAILED) == 3
        assert outcomes.count(MessageOutcome.COMPLETED) == 1
        assert processor.attempts == broker.max_delivery_count
        assert [e.recipient for e in await _logs(database)] == ["fine@example.com"]
        [dead] = await broker.dead_letters(USER_QUEUE)
        assert dead.properties["reason"] == "MaxDeliveryCountExceeded"

    async def test_failed_message_is_logged_once_after_recovery(self, consumer, broker, database):
        consumer.processor = FailingFor(database.session_factory, "flaky@example.com")
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="flaky@example.com")))

        delivery = await broker.receive(USER_QUEUE, timeout=0.1)
        assert await consumer.handle(delivery) == MessageOutcome.FAILED

        consumer.processor = NotificationProcessor(database.session_factory)
        assert await _drain(consumer, broker, USER_QUEUE) == [MessageOutcome.COMPLETED]
        assert len(await _logs(database)) == 1


class TestWorkers:
    async def test_running_consumer_drains_both_queues(self, consumer, broker, database):
        await broker.publish(CART_QUEUE, encode_event(_cart_email()))
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="new@example.com")))

        consumer.start()
        assert consumer.running
        try:
            await _wait_for(lambda: sum(c["completed"] for c in consumer.stats.values()) == 2)
        finally:
            await consumer.stop(timeout=1)

        assert not consumer.running
        assert {e.event_type for e in await _logs(database)} == {"cart-email", "user-registered"}

    async def test_stuck_queue_does_not_block_other_queue(self, broker, database):
        processor = BlockingCartEmails(database.session_factory)
        consumer = NotificationConsumer(broker, processor, queues=[CART_QUEUE, USER_QUEUE], receive_timeout=0.02)
        await broker.publish(CART_QUEUE, encode_event(_cart_email()))
        await broker.publish(USER_QUEUE, encode_event(UserRegistered(email="new@example.com")))

        consumer.start()
        try:
            await _wait_for(lambda: consumer.stats[USER_QUEUE]["completed"] == 1)
            assert processor.entered.is_set()
        finally:
            await consumer.stop(timeout=0.1)

    async def test_stop_hands_in_flight_message_back_to_broker(self, broker, database):
        processor = BlockingCartEmails(database.session_factory)
        consumer = NotificationConsumer(broker, processor, queues=[CART_QUEUE], receive_timeout=0.02)
        await broker.publish(CART_QUEUE, encode_event(_cart_email()))

        consumer.start()
        with anyio.fail_after(5):
            await processor.entered.wait()
        await consumer.stop(timeout=0.05)

        assert broker.pending_count(CART_QUEUE) == 1
        assert await _logs(database) == []
        redelivered = await broker.receive(CART_QUEUE, timeout=0.1)
        assert redelivered.delivery_count == 2
