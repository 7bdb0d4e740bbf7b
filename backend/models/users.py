# backend/models/users.py
import uuid

from sqlalchemy import Column, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


def _new_user_id() -> str:
    return str(uuid.uuid4())


# Represents a user account with authentication details
class User(Base):
    __tablename__ = "users"

    id = Column(String(450), primary_key=True, default=_new_user_id)
    email = Column(String(256), unique=True, nullable=False, index=True)
    password_hash = Column(String, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan", lazy="selectin")


# A role granted to a user; one row per (user, role)
class UserRole(Base):
    __tablename__ = "user_roles"

    user_id = Column(String(450), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role = Column(String(50), primary_key=True)

    user = relationship("User", back_populates="roles")

    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_userrole_user_role"),)
