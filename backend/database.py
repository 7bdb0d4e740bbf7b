# backend/database.py
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _normalize_url(url: str) -> str:
    # Azure/Heroku hand out postgres:// which SQLAlchemy no longer accepts
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("sqlite://") and not url.startswith("sqlite+aiosqlite://"):
        url = url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


class Database:
    """Owns the async engine and hands out one session per unit of work."""

    def __init__(self, url: str, echo: bool = False):
        self.url = _normalize_url(url)

        # SQLite only: wait for the write lock instead of failing right away
        connect_args = {"timeout": 30} if self.url.startswith("sqlite") else {}

        self.engine = create_async_engine(self.url, echo=echo, connect_args=connect_args)
        self.session_factory = async_sessionmaker(self.engine, expire_on_commit=False, autoflush=False)

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    async def create_all(self) -> None:
        # Importing registers every table on Base.metadata
        from models import cart, notification_log, users  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_db(request: Request):
    session: AsyncSession = request.app.state.database.session_factory()
    try:
        yield session
    finally:
        await session.close()
