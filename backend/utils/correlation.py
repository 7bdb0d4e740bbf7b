# backend/utils/correlation.py
import logging
import uuid
from contextvars import ContextVar
from typing import Optional

CORRELATION_ID_HEADER = "X-Correlation-ID"

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _correlation_id.get()


def set_correlation_id(value: Optional[str]):
    return _correlation_id.set(value)


def reset_correlation_id(token) -> None:
    _correlation_id.reset(token)


def current_or_new_correlation_id() -> str:
    # Reuse the id of the request being served, otherwise start a new chain
    return get_correlation_id() or str(uuid.uuid4())


class CorrelationIdFilter(logging.Filter):
    """Adds ``correlation_id`` to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class CorrelationIdMiddleware:
    """
    ASGI middleware: takes X-Correlation-ID from the request (or generates one),
    exposes it through the context variable and echoes it on the response.
    """

    def __init__(self, app):
        self.app = app
        self._header = CORRELATION_ID_HEADER.lower().encode("latin-1")

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = None
        for name, value in scope.get("headers", []):
            if name == self._header:
                incoming = value.decode("latin-1").strip()
                break
        correlation_id = incoming or str(uuid.uuid4())

        async def send_with_header(message):
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((self._header, correlation_id.encode("latin-1")))
                message["headers"] = headers
            await send(message)

        token = set_correlation_id(correlation_id)
        try:
            await self.app(scope, receive, send_with_header)
        finally:
            reset_correlation_id(token)
