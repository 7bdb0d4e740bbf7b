# backend/messaging/broker.py
import asyncio
import logging
import socket
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from config import Settings
from utils.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    queue: str
    message_id: str
    body: str
    correlation_id: Optional[str] = None
    # 1 on first delivery, incremented on every redelivery
    delivery_count: int = 1
    properties: Dict[str, str] = field(default_factory=dict)
    # Backend handle used to settle the message
    receipt: Any = None


class Broker(ABC):
    """
    Durable queue broker with at-least-once delivery.

    A received message stays owned by the consumer until it is completed,
    abandoned (redelivered later) or dead-lettered. The broker, not the
    consumer, decides when a repeatedly abandoned message is dead-lettered.
    """

    max_delivery_count: int = 10
    # True when messages never leave this process, so only an in-process consumer can read them
    process_local: bool = False

    @abstractmethod
    async def publish(self, queue: str, body: str, correlation_id: Optional[str] = None) -> str: ...

    @abstractmethod
    async def receive(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]: ...

    @abstractmethod
    async def complete(self, delivery: Delivery) -> None: ...

    @abstractmethod
    async def abandon(self, delivery: Delivery) -> None: ...

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, reason: str) -> None: ...

    @abstractmethod
    async def dead_letters(self, queue: str) -> List[Delivery]: ...

    async def close(self) -> None:
        return None


def dead_letter_queue(queue: str) -> str:
    return f"{queue}/$deadletter"


class InMemoryBroker(Broker):
    """Single-process broker backed by asyncio queues."""

    process_local = True

    def __init__(self, max_delivery_count: int = 10):
        self.max_delivery_count = max_delivery_count
        self._queues: Dict[str, asyncio.Queue] = defaultdict(asyncio.Queue)
        self._dead: Dict[str, List[Delivery]] = defaultdict(list)
        self._in_flight: Dict[str, Delivery] = {}

    async def publish(self, queue: str, body: str, correlation_id: Optional[str] = None) -> str:
        message_id = str(uuid.uuid4())
        pending = Delivery(queue=queue, message_id=message_id, body=body, correlation_id=correlation_id, delivery_count=0)
        await self._queues[queue].put(pending)
        return message_id

    async def receive(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]:
        try:
            pending = await asyncio.wait_for(self._queues[queue].get(), timeout)
        except asyncio.TimeoutError:
            return None
        pending.delivery_count += 1
        self._in_flight[pending.message_id] = pending
        return pending

    async def complete(self, delivery: Delivery) -> None:
        self._in_flight.pop(delivery.message_id, None)

    async def abandon(self, delivery: Delivery) -> None:
        if self._in_flight.pop(delivery.message_id, None) is None:
            return
        if delivery.delivery_count >= self.max_delivery_count:
            self._move_to_dead_letter(delivery, "MaxDeliveryCountExceeded")
            return
        await self._queues[delivery.queue].put(delivery)

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        self._in_flight.pop(delivery.message_id, None)
        self._move_to_dead_letter(delivery, reason)

    async def dead_letters(self, queue: str) -> List[Delivery]:
        return list(self._dead[queue])

    def pending_count(self, queue: str) -> int:
        return self._queues[queue].qsize()

    def _move_to_dead_letter(self, delivery: Delivery, reason: str) -> None:
        delivery.properties["reason"] = reason
        self._dead[delivery.queue].append(delivery)
        logger.warning(
            "Message %s dead-lettered to %s after %s deliveries: %s",
            delivery.message_id,
            dead_letter_queue(delivery.queue),
            delivery.delivery_count,
            reason,
        )


class RedisStreamBroker(Broker):
    """
    Redis Streams broker: one stream per queue, one consumer group for all workers.

    Abandoned messages are re-enqueued with their delivery count; entries left
    pending by a crashed worker are reclaimed once idle for the visibility timeout.
    """

    def __init__(
        self,
        url: str,
        max_delivery_count: int = 10,
        visibility_timeout_seconds: int = 60,
        group: str = "notifications",
        consumer_name: Optional[str] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.max_delivery_count = max_delivery_count
        self.visibility_timeout_ms = visibility_timeout_seconds * 1000
        self.group = group
        self.consumer_name = consumer_name or f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self._client = client or redis.from_url(url, decode_responses=True)
        self._groups_ready = set()

    @staticmethod
    def dead_letter_stream(queue: str) -> str:
        return f"{queue}:deadletter"

    async def _ensure_group(self, queue: str) -> None:
        if queue in self._groups_ready:
            return
        try:
            await self._client.xgroup_create(queue, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
        self._groups_ready.add(queue)

    async def publish(self, queue: str, body: str, correlation_id: Optional[str] = None) -> str:
        message_id = str(uuid.uuid4())
        fields = {
            "message_id": message_id,
            "body": body,
            "correlation_id": correlation_id or "",
            "delivery_count": "0",
        }
        try:
            await self._client.xadd(queue, fields)
        except RedisError as e:
            raise TransportError(f"Publishing to {queue} failed: {e}") from e
        return message_id

    async def receive(self, queue: str, timeout: float = 1.0) -> Optional[Delivery]:
        try:
            await self._ensure_group(queue)
            claimed = await self._reclaim(queue)
            if claimed is not None:
                entry_id, fields, times_delivered = claimed
            else:
                response = await self._client.xreadgroup(
                    self.group,
                    self.consumer_name,
                    {queue: ">"},
                    count=1,
                    block=max(int(timeout * 1000), 1),
                )
                if not response or not response[0][1]:
                    return None
                entry_id, fields = response[0][1][0]
                times_delivered = 1
        except RedisError as e:
            raise TransportError(f"Receiving from {queue} failed: {e}") from e

        delivery = Delivery(
            queue=queue,
            message_id=fields.get("message_id", entry_id),
            body=fields.get("body", ""),
            correlation_id=fields.get("correlation_id") or None,
            delivery_count=int(fields.get("delivery_count", 0)) + times_delivered,
            receipt=entry_id,
        )
        if delivery.delivery_count > self.max_delivery_count:
            await self.dead_letter(delivery, "MaxDeliveryCountExceeded")
            return None
        return delivery

    async def _reclaim(self, queue: str):
        result = await self._client.xautoclaim(
            queue,
            self.group,
            self.consumer_name,
            min_idle_time=self.visibility_timeout_ms,
            start_id="0-0",
            count=1,
        )
        entries = result[1] if result and len(result) > 1 else []
        if not entries:
            return None
        entry_id, fields = entries[0]
        if not fields:
            await self._client.xack(queue, self.group, entry_id)
            return None
        pending = await self._client.xpending_range(queue, self.group, min=entry_id, max=entry_id, count=1)
        times_delivered = pending[0]["times_delivered"] if pending else 1
        logger.info("Reclaimed stalled message %s on %s", entry_id, queue)
        return entry_id, fields, times_delivered

    async def complete(self, delivery: Delivery) -> None:
        try:
            await self._client.pipeline(transaction=True).xack(
                delivery.queue, self.group, delivery.receipt
            ).xdel(delivery.queue, delivery.receipt).execute()
        except RedisError as e:
            raise TransportError(f"Completing {delivery.message_id} failed: {e}") from e

    async def abandon(self, delivery: Delivery) -> None:
        if delivery.delivery_count >= self.max_delivery_count:
            await self.dead_letter(delivery, "MaxDeliveryCountExceeded")
            return
        fields = {
            "message_id": delivery.message_id,
            "body": delivery.body,
            "correlation_id": delivery.correlation_id or "",
            "delivery_count": str(delivery.delivery_count),
        }
        try:
            await self._client.pipeline(transaction=True).xadd(delivery.queue, fields).xack(
                delivery.queue, self.group, delivery.receipt
            ).xdel(delivery.queue, delivery.receipt).execute()
        except RedisError as e:
            raise TransportError(f"Abandoning {delivery.message_id} failed: {e}") from e

    async def dead_letter(self, delivery: Delivery, reason: str) -> None:
        fields = {
            "message_id": delivery.message_id,
            "body": delivery.body,
            "correlation_id": delivery.correlation_id or "",
            "delivery_count": str(delivery.delivery_count),
            "reason": reason,
        }
        try:
            await self._client.pipeline(transaction=True).xadd(self.dead_letter_stream(delivery.queue), fields).xack(
                delivery.queue, self.group, delivery.receipt
            ).xdel(delivery.queue, delivery.receipt).execute()
        except RedisError as e:
            raise TransportError(f"Dead-lettering {delivery.message_id} failed: {e}") from e
        logger.warning("Message %s dead-lettered on %s: %s", delivery.message_id, delivery.queue, reason)

    async def dead_letters(self, queue: str) -> List[Delivery]:
        try:
            entries = await self._client.xrange(self.dead_letter_stream(queue))
        except RedisError as e:
            raise TransportError(f"Reading dead letters of {queue} failed: {e}") from e
        return [
            Delivery(
                queue=queue,
                message_id=fields.get("message_id", entry_id),
                body=fields.get("body", ""),
                correlation_id=fields.get("correlation_id") or None,
                delivery_count=int(fields.get("delivery_count", 0)),
                properties={"reason": fields.get("reason", "")},
                receipt=entry_id,
            )
            for entry_id, fields in entries
        ]

    async def close(self) -> None:
        await self._client.aclose()


def create_broker(settings: Settings) -> Broker:
    url = settings.BROKER_URL
    if url.startswith("memory://"):
        return InMemoryBroker(max_delivery_count=settings.MAX_DELIVERY_COUNT)
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisStreamBroker(
            url,
            max_delivery_count=settings.MAX_DELIVERY_COUNT,
            visibility_timeout_seconds=settings.VISIBILITY_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unsupported BROKER_URL: {url}")
