from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr
from pydantic.alias_generators import to_camel


# Wire format is camelCase; Python code uses snake_case
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Product as reported by the product service at read time
class ProductDto(CamelModel):
    product_id: int
    name: str
    price: float
    description: Optional[str] = None
    category_name: Optional[str] = None
    image_url: Optional[str] = None


class CouponDto(CamelModel):
    coupon_code: str
    discount_amount: float
    minimum_amount: float = 0


# Cart header; cart_total and discount are computed on read, never stored
class CartHeaderDto(CamelModel):
    cart_header_id: int
    user_id: str
    coupon_code: Optional[str] = None
    discount: float = 0
    cart_total: float = 0


class CartLineDto(CamelModel):
    cart_details_id: int
    cart_header_id: int
    product_id: int
    quantity: int
    product: Optional[ProductDto] = None
    # Set when the product service no longer knows the product
    product_missing: bool = False


class CartDto(CamelModel):
    cart_header: CartHeaderDto
    cart_details: List[CartLineDto]


class PricedCartDto(CartDto):
    subtotal: float = 0
    has_missing_products: bool = False
    # A collaborator was unreachable; totals are best effort
    pricing_degraded: bool = False


# --- Requests ---

class CartUpsertRequest(CamelModel):
    user_id: str
    product_id: int
    quantity: int


class RemoveLineRequest(CamelModel):
    line_id: int
    strict: bool = False


class ApplyCouponRequest(CamelModel):
    user_id: str
    coupon_code: str = ""


class RemoveCouponRequest(CamelModel):
    user_id: str


class EmailCartRequest(CamelModel):
    user_id: str
    email: EmailStr


# --- Responses ---

class ResultOut(BaseModel):
    result: bool


class QueuedOut(BaseModel):
    queued: bool
