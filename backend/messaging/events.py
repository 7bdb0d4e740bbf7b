# backend/messaging/events.py
import json
from typing import Annotated, List, Literal, Optional, Union

from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from schemas.cart import CamelModel, CartHeaderDto, CartLineDto
from utils.errors import UnknownMessageType

CART_EMAIL = "cart-email"
USER_REGISTERED = "user-registered"


# A full, priced cart snapshot to be sent to the customer
class CartEmailRequested(CamelModel):
    type: Literal["cart-email"] = CART_EMAIL
    cart_header: CartHeaderDto
    cart_details: List[CartLineDto]
    email: str
    correlation_id: Optional[str] = None


class UserRegistered(CamelModel):
    type: Literal["user-registered"] = USER_REGISTERED
    email: str
    correlation_id: Optional[str] = None


DomainEvent = Annotated[Union[CartEmailRequested, UserRegistered], Field(discriminator="type")]

_event_adapter = TypeAdapter(DomainEvent)


def encode_event(event) -> str:
    return event.model_dump_json(by_alias=True)


def decode_event(body: str):
    """Parse a message body; anything we cannot handle raises UnknownMessageType."""
    try:
        data = json.loads(body)
    except (TypeError, ValueError) as e:
        raise UnknownMessageType("Message body is not valid JSON") from e

    if not isinstance(data, dict):
        raise UnknownMessageType("Message body is not a JSON object")
    if data.get("type") not in (CART_EMAIL, USER_REGISTERED):
        raise UnknownMessageType(f"Unsupported message type {data.get('type')!r}")

    try:
        return _event_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise UnknownMessageType(f"Malformed {data['type']} message: {e.error_count()} error(s)") from e
