# backend/worker.py
# Standalone notification worker: consumes both queues until SIGINT/SIGTERM.
import asyncio
import logging
import signal
from typing import Optional

from dotenv import load_dotenv

from config import Settings, get_settings
from database import Database
from messaging.broker import create_broker
from messaging.consumer import NotificationConsumer
from services.notifications import NotificationProcessor
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


async def run(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    broker = create_broker(settings)
    if broker.process_local:
        # Its queues would only ever hold what this process publishes, which is nothing
        await broker.close()
        logger.error("BROKER_URL=%s is process-local; the API consumes it in-process", settings.BROKER_URL)
        raise SystemExit("worker.py needs a shared broker, e.g. BROKER_URL=redis://localhost:6379/0")

    database = Database(settings.DATABASE_URL)
    await database.create_all()
    consumer = NotificationConsumer(
        broker,
        NotificationProcessor(database.session_factory),
        queues=[settings.EMAIL_CART_QUEUE, settings.REGISTER_USER_QUEUE],
        receive_timeout=settings.RECEIVE_TIMEOUT_SECONDS,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    consumer.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down notification worker")
        await consumer.stop(timeout=settings.VISIBILITY_TIMEOUT_SECONDS)
        await broker.close()
        await database.dispose()


if __name__ == "__main__":
    load_dotenv()
    asyncio.run(run())
