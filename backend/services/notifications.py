# backend/services/notifications.py
import html
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from messaging.events import CartEmailRequested, UserRegistered
from models.notification_log import NotificationLog
from utils.errors import PersistenceError, UnknownMessageType

logger = logging.getLogger(__name__)


def render_cart_email(event: CartEmailRequested) -> str:
    parts = [
        "<br/>Cart Email Requested ",
        f"<br/>Total {event.cart_header.cart_total:.2f}",
        "<br/>",
        "<ul>",
    ]
    for line in event.cart_details:
        name = line.product.name if line.product else f"Product #{line.product_id} (unavailable)"
        parts.append(f"<li>{html.escape(name)} x {line.quantity}</li>")
    parts.append("</ul>")
    return "\n".join(parts)


def render_user_registered(event: UserRegistered) -> str:
    return f"User Registration Successful. <br/> Email : {html.escape(event.email)}"


class NotificationProcessor:
    """
    Renders notification bodies and appends them to the audit log.

    Opens a fresh session per message; it is shared by concurrent queue workers
    and must not hold one across calls.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def process(self, event, message_id: Optional[str] = None) -> NotificationLog:
        if isinstance(event, CartEmailRequested):
            body = render_cart_email(event)
        elif isinstance(event, UserRegistered):
            body = render_user_registered(event)
        else:
            raise UnknownMessageType(f"No notification for {type(event).__name__}")

        entry = NotificationLog(
            recipient=event.email,
            message=body,
            event_type=event.type,
            message_id=message_id,
            correlation_id=event.correlation_id,
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(entry)
        except SQLAlchemyError as e:
            logger.error("Writing notification log for %s failed: %s", event.email, e)
            raise PersistenceError(f"Could not log {event.type} notification for {event.email}") from e

        logger.info("Logged %s notification for %s (message_id=%s)", event.type, event.email, message_id)
        return entry
