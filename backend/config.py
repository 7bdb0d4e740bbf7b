# backend/config.py
from functools import lru_cache
from pathlib import Path
from typing import ClassVar

from pydantic_settings import BaseSettings

# Resolve absolute path to the .env file for reliable loading
env_path = Path(__file__).parent.parent / ".env"


class Settings(BaseSettings):
    # Persistence
    DATABASE_URL: str = "sqlite+aiosqlite:///./shopcart.db"

    # JWT
    SECRET_KEY: str = "dev-secret-change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Collaborator services
    PRODUCT_API_URL: str = "http://localhost:7000"
    COUPON_API_URL: str = "http://localhost:7001"
    HTTP_TIMEOUT_SECONDS: float = 5.0

    # Message broker: "memory://" or "redis://host:port/db"
    BROKER_URL: str = "memory://"
    EMAIL_CART_QUEUE: str = "emailshoppingcart"
    REGISTER_USER_QUEUE: str = "loguser"
    MAX_DELIVERY_COUNT: int = 10
    VISIBILITY_TIMEOUT_SECONDS: int = 60
    RECEIVE_TIMEOUT_SECONDS: float = 1.0

    # Cart cache: "memory://", "redis://..." or "" to disable
    CACHE_URL: str = "memory://"
    CART_CACHE_TTL_SECONDS: int = 3600

    # The API always consumes in-process when BROKER_URL is memory://
    CONSUMER_ENABLED: bool = False
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file: ClassVar[str] = str(env_path)


@lru_cache
def get_settings() -> Settings:
    return Settings()
