import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.collection import Collection

from config import settings
from errors import AuthenticationFailure, Forbidden
from schemas import Identity, Role
from stores import object_id

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
# auto_error off: the submit route falls back to a beacon credential in the body
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


def verify_password(plain_password, password_hash):
    return pwd_context.verify(plain_password, password_hash)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


async def resolve_identity(token: Optional[str], users: Collection) -> Identity:
    """
    The one credential check in the service. Bearer headers, websocket handshakes
    and page-unload beacons all land here.
    """
    credentials_exception = AuthenticationFailure("Could not validate credentials")
    if not token:
        raise AuthenticationFailure("Not authorized, no token provided")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise credentials_exception
    user_id = payload.get("sub")
    oid = object_id(user_id) if user_id else None
    if oid is None:
        raise credentials_exception
    doc = await asyncio.to_thread(users.find_one, {"_id": oid})
    if not doc:
        raise AuthenticationFailure("The user belonging to this token no longer exists")
    if not doc.get("is_active", True):
        raise AuthenticationFailure("Your account is not active")
    return Identity(id=str(doc["_id"]), role=doc.get("role", "student"))


async def get_current_user(request: Request, token: Optional[str] = Depends(oauth2_scheme)) -> Identity:
    return await resolve_identity(token, request.app.state.portal.users)


def require_role(required: List[Role]):
    async def role_dep(user: Identity = Depends(get_current_user)):
        if user.role not in required:
            raise Forbidden("Insufficient permissions")
        return user
    return role_dep
