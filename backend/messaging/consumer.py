# backend/messaging/consumer.py
import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Dict, Iterable, Optional

from messaging.broker import Broker, Delivery
from messaging.events import decode_event
from services.notifications import NotificationProcessor
from utils.correlation import reset_correlation_id, set_correlation_id
from utils.errors import TransportError, UnknownMessageType

logger = logging.getLogger(__name__)


class MessageOutcome(str, Enum):
    COMPLETED = "completed"
    # Not acknowledged; the broker redelivers or dead-letters it
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class NotificationConsumer:
    """
    Runs one worker task per queue. Queues are processed independently, so a
    stalled or failing queue never holds up the others.
    """

    def __init__(
        self,
        broker: Broker,
        processor: NotificationProcessor,
        queues: Iterable[str],
        receive_timeout: float = 1.0,
        error_backoff: float = 1.0,
    ):
        self.broker = broker
        self.processor = processor
        self.queues = list(queues)
        self.receive_timeout = receive_timeout
        self.error_backoff = error_backoff
        self.stats: Dict[str, Counter] = {queue: Counter() for queue in self.queues}
        self._stopping = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self) -> None:
        self._stopping.clear()
        for queue in self.queues:
            if queue in self._tasks and not self._tasks[queue].done():
                continue
            self._tasks[queue] = asyncio.create_task(self._run(queue), name=f"consumer:{queue}")
        logger.info("Notification consumer started on %s", ", ".join(self.queues))

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Let in-flight messages finish; workers still busy after timeout are cancelled."""
        self._stopping.set()
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Notification consumer stopped")

    async def _run(self, queue: str) -> None:
        while not self._stopping.is_set():
            try:
                delivery = await self.broker.receive(queue, timeout=self.receive_timeout)
            except TransportError as e:
                logger.error("Receiving from %s failed: %s", queue, e)
                await self._backoff()
                continue

            if delivery is None:
                continue
            await self.handle(delivery)

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), self.error_backoff)
        except asyncio.TimeoutError:
            pass

    async def handle(self, delivery: Delivery) -> MessageOutcome:
        """Received -> Processing -> Completed | Failed (retry) | DeadLettered."""
        token = set_correlation_id(delivery.correlation_id)
        try:
            outcome = await self._process(delivery)
        finally:
            reset_correlation_id(token)
        self.stats[delivery.queue][outcome.value] += 1
        return outcome

    async def _process(self, delivery: Delivery) -> MessageOutcome:
        try:
            event = decode_event(delivery.body)
        except UnknownMessageType as e:
            # Retrying cannot fix a message we do not understand
            logger.warning("Dead-lettering message %s from %s: %s", delivery.message_id, delivery.queue, e)
            await self._settle(self.broker.dead_letter(delivery, str(e)), delivery)
            return MessageOutcome.DEAD_LETTERED

        try:
            await self.processor.process(event, message_id=delivery.message_id)
        except asyncio.CancelledError:
            # Shutdown mid-message: hand it back instead of acknowledging
            await asyncio.shield(self._settle(self.broker.abandon(delivery), delivery))
            raise
        except Exception:
            logger.exception(
                "Processing message %s from %s failed (delivery %s/%s)",
                delivery.message_id,
                delivery.queue,
                delivery.delivery_count,
                self.broker.max_delivery_count,
            )
            await self._settle(self.broker.abandon(delivery), delivery)
            return MessageOutcome.FAILED

        # Acknowledge only after the log entry is committed
        await self._settle(self.broker.complete(delivery), delivery)
        return MessageOutcome.COMPLETED

    async def _settle(self, operation, delivery: Delivery) -> None:
        try:
            await operation
        except TransportError as e:
            # Unsettled messages come back after the broker's lock expires
            logger.error("Settling message %s on %s failed: %s", delivery.message_id, delivery.queue, e)
