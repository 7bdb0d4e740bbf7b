# backend/routes/auth.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from messaging.events import UserRegistered
from models.users import User
from schemas import user as schemas
from utils.tokenJWT import get_current_user, issue_token, role_required

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


def _user_out(user: User, roles=None) -> schemas.UserResponse:
    return schemas.UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        phone_number=user.phone_number,
        roles=list(roles) if roles is not None else [r.role for r in user.roles],
    )


# Register a new user
@router.post("/register", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED)
async def register(payload: schemas.UserCreate, request: Request):
    state = request.app.state
    logger.info("Registration attempt for user %s", payload.email)

    user = await state.identity.register(
        email=payload.email,
        password=payload.password,
        first_name=payload.first_name,
        last_name=payload.last_name,
        phone_number=payload.phone_number,
    )
    logger.info("User %s registered successfully", user.email)

    # Notification is best effort; registration already succeeded
    await state.message_bus.try_publish(UserRegistered(email=user.email), state.settings.REGISTER_USER_QUEUE)
    return _user_out(user, roles=[])


# Authenticate user and issue JWT token
@router.post("/login", response_model=schemas.Token)
async def login(payload: schemas.UserLogin, request: Request):
    state = request.app.state
    logger.info("Login attempt for user %s", payload.username)

    user_id = await state.identity.validate_credentials(payload.username, payload.password)
    if user_id is None:
        logger.warning("Login failed for %s: invalid credentials", payload.username)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Username or password is incorrect")

    user = await state.identity.get_by_email(payload.username)
    roles = await state.identity.roles(user_id)
    token = issue_token(user_id, user.email, roles, state.settings)
    return {"access_token": token, "token_type": "bearer", "user": _user_out(user, roles)}


@router.post("/assign-role", response_model=schemas.UserResponse)
async def assign_role(
    payload: schemas.RoleAssignment,
    request: Request,
    current_user=Depends(role_required("ADMIN")),
):
    identity = request.app.state.identity
    logger.info("Assigning role %s to user %s", payload.role, payload.email)

    await identity.assign_role(payload.email, payload.role)
    user = await identity.get_by_email(payload.email)
    return _user_out(user, await identity.roles(user.id))


# Retrieve current authenticated user details
@router.get("/me", response_model=schemas.UserResponse)
async def me(request: Request, current_user: User = Depends(get_current_user)):
    return _user_out(current_user, await request.app.state.identity.roles(current_user.id))
