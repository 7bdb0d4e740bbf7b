# backend/utils/errors.py


class ServiceError(Exception):
    """Base class for errors surfaced by the cart and notification services."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


# Bad input, rejected synchronously and never retried
class ValidationError(ServiceError):
    status_code = 400


# Missing header, line or user
class NotFoundError(ServiceError):
    status_code = 404


# Broker, cache or collaborator unreachable
class TransportError(ServiceError):
    status_code = 503


# Database failure, fatal to the current operation
class PersistenceError(ServiceError):
    status_code = 500


class UnknownMessageType(ServiceError):
    """Raised by the consumer for payloads it cannot decode or does not handle."""

    status_code = 422
