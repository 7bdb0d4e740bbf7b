# backend/routes/cart.py
import logging

from fastapi import APIRouter, Request, status

from messaging.events import CartEmailRequested
from schemas.cart import (
    ApplyCouponRequest,
    CartDto,
    CartUpsertRequest,
    EmailCartRequest,
    PricedCartDto,
    QueuedOut,
    RemoveCouponRequest,
    RemoveLineRequest,
    ResultOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["Cart"])


@router.get("/{user_id}", response_model=PricedCartDto)
async def get_cart(user_id: str, request: Request):
    state = request.app.state
    cart = await state.cart_store.get_cart(user_id)
    return await state.pricing.price(cart)


@router.post("/upsert", response_model=CartDto)
async def upsert_cart(payload: CartUpsertRequest, request: Request):
    return await request.app.state.cart_store.upsert_item(payload.user_id, payload.product_id, payload.quantity)


@router.post("/remove", response_model=ResultOut)
async def remove_cart_line(payload: RemoveLineRequest, request: Request):
    removed = await request.app.state.cart_store.remove_line(payload.line_id, strict=payload.strict)
    return {"result": removed}


@router.post("/apply-coupon", response_model=ResultOut)
async def apply_coupon(payload: ApplyCouponRequest, request: Request):
    await request.app.state.cart_store.set_coupon(payload.user_id, payload.coupon_code)
    return {"result": True}


@router.post("/remove-coupon", response_model=ResultOut)
async def remove_coupon(payload: RemoveCouponRequest, request: Request):
    await request.app.state.cart_store.set_coupon(payload.user_id, "")
    return {"result": True}


@router.post("/email-cart", response_model=QueuedOut, status_code=status.HTTP_202_ACCEPTED)
async def email_cart(payload: EmailCartRequest, request: Request):
    state = request.app.state

    # Snapshot the priced cart now; the email reflects prices at request time
    cart = await state.pricing.price(await state.cart_store.get_cart(payload.user_id))
    event = CartEmailRequested(
        cart_header=cart.cart_header,
        cart_details=cart.cart_details,
        email=payload.email,
    )
    queued = await state.message_bus.try_publish(event, state.settings.EMAIL_CART_QUEUE)
    if not queued:
        logger.warning("Cart email for user %s was not queued", payload.user_id)
    return {"queued": queued}
