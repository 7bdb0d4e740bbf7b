# backend/services/identity.py
import logging
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.users import User, UserRole
from utils.errors import NotFoundError, PersistenceError, ValidationError
from utils.hashing import get_password_hash, verify_password

logger = logging.getLogger(__name__)


class SqlIdentityProvider:
    """Minimal credential store: users, password hashes and role grants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def register(
        self,
        email: str,
        password: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        if not password:
            raise ValidationError("Password is required")

        user = User(
            email=normalized_email,
            password_hash=get_password_hash(password),
            first_name=first_name,
            last_name=last_name,
            phone_number=phone_number,
            roles=[],
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    existing = await session.scalar(select(User.id).where(func.lower(User.email) == normalized_email))
                    if existing is not None:
                        raise ValidationError("Email already registered")
                    session.add(user)
        except IntegrityError as e:
            # Lost a race with a concurrent registration of the same email
            raise ValidationError("Email already registered") from e
        except SQLAlchemyError as e:
            logger.exception("Registering %s failed", normalized_email)
            raise PersistenceError("Error registering the user") from e

        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        try:
            async with self.session_factory() as session:
                return await session.scalar(select(User).where(func.lower(User.email) == email.strip().lower()))
        except SQLAlchemyError as e:
            raise PersistenceError("Could not load user") from e

    async def validate_credentials(self, username: str, password: str) -> Optional[str]:
        """Returns the user id, or None when the credentials are invalid."""
        user = await self.get_by_email(username)
        if user is None or not verify_password(password, user.password_hash):
            return None
        return user.id

    async def roles(self, user_id: str) -> List[str]:
        try:
            async with self.session_factory() as session:
                result = await session.scalars(
                    select(UserRole.role).where(UserRole.user_id == user_id).order_by(UserRole.role)
                )
                return list(result)
        except SQLAlchemyError as e:
            raise PersistenceError("Could not load roles") from e

    async def assign_role(self, email: str, role: str) -> None:
        role = role.strip().upper()
        if not role:
            raise ValidationError("Role is required")

        user = await self.get_by_email(email)
        if user is None:
            raise NotFoundError(f"User {email} not found")

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    granted = await session.scalar(
                        select(UserRole).where(UserRole.user_id == user.id, UserRole.role == role)
                    )
                    if granted is None:
                        session.add(UserRole(user_id=user.id, role=role))
        except SQLAlchemyError as e:
            logger.exception("Assigning role %s to %s failed", role, email)
            raise PersistenceError("Error configuring user role") from e
