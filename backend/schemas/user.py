from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr


# Email is the login name
class UserBase(BaseModel):
    email: EmailStr


# Login form; username is the email address
class UserLogin(BaseModel):
    username: str
    password: str


# Registration form
class UserCreate(UserBase):
    password: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


# Profile returned by register, login and /auth/me
class UserResponse(UserBase):
    id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None
    roles: List[str] = []

    model_config = ConfigDict(from_attributes=True)


# Bearer token plus the profile it was issued for
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse


# Role grant; roles are stored upper-case
class RoleAssignment(BaseModel):
    email: EmailStr
    role: str
