# backend/services/cart_store.py
import logging
import re
from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database import Database
from models.cart import USER_ID_MAX_LENGTH, CartHeader, CartItem
from schemas.cart import CartDto, CartHeaderDto, CartLineDto
from utils.cache import Cache, NullCache
from utils.errors import NotFoundError, PersistenceError, TransportError, ValidationError

logger = logging.getLogger(__name__)

CART_CACHE_KEY = "cart:{user_id}"

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

# A concurrent RemoveLine can delete the header between our insert and re-read
_HEADER_ATTEMPTS = 3


def header_to_dto(header: CartHeader) -> CartHeaderDto:
    return CartHeaderDto(
        cart_header_id=header.id,
        user_id=header.user_id,
        coupon_code=header.coupon_code or None,
    )


def line_to_dto(line: CartItem) -> CartLineDto:
    return CartLineDto(
        cart_details_id=line.id,
        cart_header_id=line.cart_header_id,
        product_id=line.product_id,
        quantity=line.quantity,
    )


def cart_to_dto(header: CartHeader) -> CartDto:
    return CartDto(
        cart_header=header_to_dto(header),
        cart_details=[line_to_dto(line) for line in header.items],
    )


def check_user_id(user_id) -> str:
    if (
        not isinstance(user_id, str)
        or not user_id.strip()
        or len(user_id) > USER_ID_MAX_LENGTH
        or _CONTROL_CHARS.search(user_id)
    ):
        raise NotFoundError(f"User {user_id!r} not found")
    return user_id


class CartStore:
    """
    Persists the cart aggregate (header + lines) per user.

    Every mutation runs in a single transaction and invalidates the user's
    cached cart before returning.
    """

    def __init__(self, database: Database, cache: Optional[Cache] = None, cache_ttl_seconds: int = 3600):
        self.database = database
        self.session_factory = database.session_factory
        self.cache = cache or NullCache()
        self.cache_ttl_seconds = cache_ttl_seconds

    # --- Operations ---

    async def upsert_item(self, user_id: str, product_id: int, quantity: int) -> CartDto:
        user_id = check_user_id(user_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")

        try:
            async with self.session_factory() as session:
                # Header creation and the first line commit together or not at all
                async with session.begin():
                    header_id = await self._ensure_header(session, user_id)
                    await self._merge_line(session, header_id, product_id, quantity)
                cart = await self._load(session, user_id)
        except SQLAlchemyError as e:
            logger.exception("Cart upsert failed for user %s, product %s", user_id, product_id)
            raise PersistenceError(f"Could not save cart for user {user_id}") from e

        await self._invalidate(user_id)
        logger.info("Cart upsert: user=%s product=%s qty=+%s", user_id, product_id, quantity)
        return cart

    async def remove_line(self, line_id: int, strict: bool = False) -> bool:
        """Remove a cart line. Returns False when the line did not exist (unless strict)."""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    header_id = await session.scalar(
                        delete(CartItem)
                        .where(CartItem.id == line_id)
                        .returning(CartItem.cart_header_id)
                        .execution_options(synchronize_session=False)
                    )
                    if header_id is None:
                        if strict:
                            raise NotFoundError(f"Cart line {line_id} not found")
                        return False

                    header = await session.scalar(
                        select(CartHeader).where(CartHeader.id == header_id).with_for_update()
                    )
                    remaining = await session.scalar(
                        select(func.count(CartItem.id)).where(CartItem.cart_header_id == header_id)
                    )
                    # A header without lines is not a valid cart
                    if remaining == 0:
                        await session.execute(
                            delete(CartHeader)
                            .where(CartHeader.id == header_id)
                            .execution_options(synchronize_session=False)
                        )
                    user_id = header.user_id if header is not None else None
        except SQLAlchemyError as e:
            logger.exception("Removing cart line %s failed", line_id)
            raise PersistenceError(f"Could not remove cart line {line_id}") from e

        if user_id is not None:
            await self._invalidate(user_id)
        logger.info("Cart line %s removed (header %s, remaining=%s)", line_id, header_id, remaining)
        return True

    async def set_coupon(self, user_id: str, coupon_code: Optional[str]) -> None:
        user_id = check_user_id(user_id)
        # Empty string clears the coupon
        value = coupon_code.strip() if coupon_code else None
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CartHeader)
                        .where(CartHeader.user_id == user_id)
                        .values(coupon_code=value or None)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError(f"Cart for user {user_id} not found")
        except SQLAlchemyError as e:
            logger.exception("Setting coupon failed for user %s", user_id)
            raise PersistenceError(f"Could not update coupon for user {user_id}") from e

        await self._invalidate(user_id)

    async def get_cart(self, user_id: str) -> CartDto:
        user_id = check_user_id(user_id)

        cached = await self._cache_get(user_id)
        if cached is not None:
            return cached

        # Taken before loading; a mutation committed after this point makes the write-back a no-op
        generation = await self._cache_generation(user_id)
        try:
            async with self.session_factory() as session:
                cart = await self._load(session, user_id)
        except SQLAlchemyError as e:
            logger.exception("Loading cart failed for user %s", user_id)
            raise PersistenceError(f"Could not load cart for user {user_id}") from e

        # An empty cart is represented by absence
        if cart is None:
            raise NotFoundError(f"Cart for user {user_id} not found")

        if generation is not None:
            await self._cache_set(cart, generation)
        return cart

    # --- Persistence helpers ---

    def _insert(self, model):
        dialect = self.database.dialect_name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise PersistenceError(f"Atomic upsert is not supported on {dialect}")

    async def _ensure_header(self, session: AsyncSession, user_id: str) -> int:
        for _ in range(_HEADER_ATTEMPTS):
            await session.execute(
                self._insert(CartHeader).values(user_id=user_id).on_conflict_do_nothing(index_elements=["user_id"])
            )
            header_id = await session.scalar(
                select(CartHeader.id).where(CartHeader.user_id == user_id).with_for_update()
            )
            if header_id is not None:
                return header_id
        raise PersistenceError(f"Could not create cart for user {user_id}")

    async def _merge_line(self, session: AsyncSession, header_id: int, product_id: int, quantity: int) -> None:
        stmt = self._insert(CartItem).values(cart_header_id=header_id, product_id=product_id, quantity=quantity)
        # Repeat add accumulates: existing + incoming
        stmt = stmt.on_conflict_do_update(
            index_elements=["cart_header_id", "product_id"],
            set_={"quantity": CartItem.quantity + stmt.excluded.quantity},
        )
        await session.execute(stmt)

    async def _load(self, session: AsyncSession, user_id: str) -> Optional[CartDto]:
        header = await session.scalar(
            select(CartHeader)
            .options(selectinload(CartHeader.items))
            .where(CartHeader.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if header is None:
            return None
        return cart_to_dto(header)

    # --- Cache helpers; cache trouble never fails a cart operation ---

    async def _cache_get(self, user_id: str) -> Optional[CartDto]:
        key = CART_CACHE_KEY.format(user_id=user_id)
        try:
            raw = await self.cache.get(key)
        except TransportError as e:
            logger.warning("Cart cache read failed: %s", e)
            return None
        if raw is None:
            return None
        try:
            return CartDto.model_validate_json(raw)
        except PydanticValidationError as e:
            # Corrupt or written by an older schema: drop it and reload
            logger.warning("Discarding unreadable cached cart for user %s: %s", user_id, e.error_count())
            await self._invalidate(user_id)
            return None

    async def _cache_generation(self, user_id: str) -> Optional[int]:
        try:
            return await self.cache.generation(CART_CACHE_KEY.format(user_id=user_id))
        except TransportError as e:
            logger.warning("Cart cache generation read failed: %s", e)
            return None

    async def _cache_set(self, cart: CartDto, generation: int) -> None:
        key = CART_CACHE_KEY.format(user_id=cart.cart_header.user_id)
        try:
            stored = await self.cache.set_if_generation(
                key, cart.model_dump_json(by_alias=True), self.cache_ttl_seconds, generation
            )
        except TransportError as e:
            logger.warning("Cart cache write failed: %s", e)
            return
        if not stored:
            logger.debug("Cart for user %s changed while loading; not cached", cart.cart_header.user_id)

    async def _invalidate(self, user_id: str) -> None:
        key = CART_CACHE_KEY.format(user_id=user_id)
        # Bump first so a read already past its generation check cannot re-cache the old cart
        try:
            await self.cache.bump_generation(key)
        except TransportError as e:
            logger.error("Cart cache generation bump failed for user %s: %s", user_id, e)
        try:
            await self.cache.invalidate(key)
        except TransportError as e:
            logger.error("Cart cache invalidation failed for user %s: %s", user_id, e)
