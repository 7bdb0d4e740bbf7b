# backend/models/cart.py
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from database import Base

# Identity ids are opaque strings; 450 matches the identity store column width
USER_ID_MAX_LENGTH = 450


# One cart per user; exists only while it owns at least one line
class CartHeader(Base):
    __tablename__ = "cart_headers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(USER_ID_MAX_LENGTH), nullable=False, unique=True, index=True)
    coupon_code = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )


# A single product line (product + quantity) within a cart
class CartItem(Base):
    __tablename__ = "cart_items"

    id = Column(Integer, primary_key=True, index=True)
    cart_header_id = Column(Integer, ForeignKey("cart_headers.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(Integer, nullable=False, index=True)  # Lives in the product service, no FK
    quantity = Column(Integer, CheckConstraint("quantity > 0", name="ck_cartitem_quantity_positive"), nullable=False)

    cart = relationship("CartHeader", back_populates="items")

    __table_args__ = (
        # Repeat adds of a product merge into the same line
        UniqueConstraint("cart_header_id", "product_id", name="uq_cartitem_header_product"),
    )
