# backend/utils/tokenJWT.py
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import Settings

# Authorization scheme
bearer_scheme = HTTPBearer()


# Signs claims with an expiry taken from settings unless given
def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def issue_token(user_id: str, email: str, roles: List[str], settings: Settings) -> str:
    return create_access_token({"sub": user_id, "email": email, "role": roles}, settings)


# Resolves the bearer token to a stored user; roles are read per request
async def get_current_user(request: Request, credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)):
    settings: Settings = request.app.state.settings
    identity = request.app.state.identity

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(credentials.credentials, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        email: str = payload.get("email")
        # Ensure email is present in the token payload
        if email is None:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    user = await identity.get_by_email(email)
    if user is None:
        raise credentials_exception
    return user


# Roles come from the identity store, not from the token claims
def role_required(*allowed_roles):
    wanted = {r.upper() for r in allowed_roles}

    async def _checker(request: Request, current_user=Depends(get_current_user)):
        roles = await request.app.state.identity.roles(current_user.id)
        if wanted and not wanted.intersection(roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return current_user

    return _checker
