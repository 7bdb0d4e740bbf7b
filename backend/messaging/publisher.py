# backend/messaging/publisher.py
import logging

from messaging.broker import Broker
from messaging.events import encode_event
from utils.correlation import current_or_new_correlation_id
from utils.errors import TransportError

logger = logging.getLogger(__name__)


class MessageBus:
    """Hands domain events to the broker, tagged with the current correlation id."""

    def __init__(self, broker: Broker):
        self.broker = broker
        self.failed_publishes = 0

    async def publish(self, event, queue: str) -> str:
        if not event.correlation_id:
            event = event.model_copy(update={"correlation_id": current_or_new_correlation_id()})

        body = encode_event(event)
        try:
            message_id = await self.broker.publish(queue, body, correlation_id=event.correlation_id)
        except TransportError:
            raise
        except Exception as e:
            # Any client-level failure is a transport failure to our callers
            raise TransportError(f"Publishing {event.type} to {queue} failed: {e}") from e

        logger.info("Published %s to %s (message_id=%s)", event.type, queue, message_id)
        return message_id

    async def try_publish(self, event, queue: str) -> bool:
        """Fire-and-forget publish: failures are logged and counted, never raised."""
        try:
            await self.publish(event, queue)
            return True
        except TransportError as e:
            self.failed_publishes += 1
            logger.exception("Could not publish %s to %s: %s", event.type, queue, e)
            return False
