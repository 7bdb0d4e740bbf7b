# backend/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import Settings, get_settings
from database import Database
from messaging.broker import Broker, create_broker
from messaging.consumer import NotificationConsumer
from messaging.publisher import MessageBus
from routes.auth import router as auth_router
from routes.cart import router as cart_router
from routes.notifications import router as notifications_router
from services.cart_store import CartStore
from services.identity import SqlIdentityProvider
from services.notifications import NotificationProcessor
from services.pricing import CartPricingEngine
from utils.cache import Cache, create_cache
from utils.catalog_client import CouponCatalog, ProductCatalog
from utils.correlation import CorrelationIdMiddleware
from utils.errors import ServiceError
from utils.logging_config import setup_logging

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    await state.database.create_all()

    if state.settings.CONSUMER_ENABLED or state.broker.process_local:
        if not state.settings.CONSUMER_ENABLED:
            logger.info("In-memory broker in use; starting the notification consumer in-process")
        state.consumer.start()

    yield

    if state.consumer.running:
        await state.consumer.stop(timeout=state.settings.RECEIVE_TIMEOUT_SECONDS * 5)
    await state.broker.close()
    await state.cache.close()
    await state.database.dispose()


def create_app(
    settings: Optional[Settings] = None,
    *,
    broker: Optional[Broker] = None,
    cache: Optional[Cache] = None,
    products: Optional[ProductCatalog] = None,
    coupons: Optional[CouponCatalog] = None,
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(title="Shop Cart API", version="1.0.0", lifespan=lifespan)

    # Wire collaborators explicitly; nothing below reads global configuration
    database = Database(settings.DATABASE_URL)
    cache = cache or create_cache(settings.CACHE_URL)
    broker = broker or create_broker(settings)
    processor = NotificationProcessor(database.session_factory)

    app.state.settings = settings
    app.state.database = database
    app.state.cache = cache
    app.state.broker = broker
    app.state.cart_store = CartStore(database, cache, settings.CART_CACHE_TTL_SECONDS)
    app.state.pricing = CartPricingEngine(
        products or ProductCatalog.from_settings(settings),
        coupons or CouponCatalog.from_settings(settings),
    )
    app.state.message_bus = MessageBus(broker)
    app.state.identity = SqlIdentityProvider(database.session_factory)
    app.state.consumer = NotificationConsumer(
        broker,
        processor,
        queues=[settings.EMAIL_CART_QUEUE, settings.REGISTER_USER_QUEUE],
        receive_timeout=settings.RECEIVE_TIMEOUT_SECONDS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # Route registration
    app.include_router(auth_router)
    app.include_router(cart_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "consumer_running": app.state.consumer.running,
            "failed_publishes": app.state.message_bus.failed_publishes,
        }

    return app


app = create_app()
