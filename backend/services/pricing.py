# backend/services/pricing.py
import logging
from typing import Dict, Optional

from schemas.cart import CartDto, CouponDto, PricedCartDto, ProductDto
from utils.catalog_client import CouponCatalog, ProductCatalog
from utils.errors import TransportError

logger = logging.getLogger(__name__)


class CartPricingEngine:
    """
    Prices a cart at read time from current product prices and the cart's coupon.
    Nothing computed here is persisted.
    """

    def __init__(self, products: ProductCatalog, coupons: CouponCatalog):
        self.products = products
        self.coupons = coupons

    async def price(self, cart: CartDto) -> PricedCartDto:
        degraded = False

        # One round trip for the whole cart
        catalog: Dict[int, ProductDto] = {}
        if cart.cart_details:
            try:
                catalog = {p.product_id: p for p in await self.products.get_all()}
            except TransportError as e:
                logger.warning("Pricing cart %s without products: %s", cart.cart_header.cart_header_id, e)
                degraded = True

        lines = []
        subtotal = 0.0
        missing = False
        for line in cart.cart_details:
            product = catalog.get(line.product_id)
            if product is None:
                # Deleted upstream (or catalog unreachable): contributes nothing
                missing = True
                lines.append(line.model_copy(update={"product": None, "product_missing": True}))
                continue
            subtotal += line.quantity * product.price
            lines.append(line.model_copy(update={"product": product, "product_missing": False}))

        if missing and not degraded:
            logger.warning(
                "Cart %s references products unknown to the catalog",
                cart.cart_header.cart_header_id,
            )

        discount = 0.0
        coupon_code = cart.cart_header.coupon_code
        if coupon_code:
            try:
                coupon = await self.coupons.get_by_code(coupon_code)
            except TransportError as e:
                logger.warning("Coupon %s not applied, coupon service unavailable: %s", coupon_code, e)
                coupon = None
                degraded = True
            discount = coupon_discount(coupon, subtotal)

        header = cart.cart_header.model_copy(
            update={
                "discount": round(discount, 2),
                "cart_total": round(subtotal - discount, 2),
            }
        )
        return PricedCartDto(
            cart_header=header,
            cart_details=lines,
            subtotal=round(subtotal, 2),
            has_missing_products=missing,
            pricing_degraded=degraded,
        )


def coupon_discount(coupon: Optional[CouponDto], subtotal: float) -> float:
    # Only a single coupon per cart, checked against the pre-discount subtotal
    if coupon is None or subtotal <= coupon.minimum_amount:
        return 0.0
    return coupon.discount_amount
