from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import JWTError, jwt

from . import schemas
from .config import settings
from .exceptions import ForbiddenError

# auto_error is off so a missing header gets the same 401 as a bad one
api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def decode_caller(token: str) -> schemas.Caller:
    """
    Decodes 'Bearer <jwt>' into the caller. The token's 'sub' is the user ID
    and 'role' is 'renter' or 'admin' (renter when absent).
    Raises ValueError, JWTError or pydantic's ValidationError (a ValueError) on bad input.
    """
    scheme, jwt_token = token.split()
    if scheme.lower() != "bearer":
        raise ValueError("Unsupported authorization scheme")
    payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    user_id = payload.get("sub")
    if user_id is None:
        raise ValueError("Token has no subject")
    return schemas.Caller(id=int(user_id), role=payload.get("role") or schemas.UserRole.RENTER)


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Rate-limit key: the user ID from the JWT token, or the client's IP
    when there is no usable token.
    """
    try:
        return str(decode_caller(request.headers.get("Authorization")).id)
    except (JWTError, ValueError, AttributeError, TypeError):
        return request.client.host


def get_current_caller(token: Annotated[Optional[str], Depends(api_key_header)]) -> schemas.Caller:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        raise credentials_exception
    try:
        return decode_caller(token)
    except (JWTError, ValueError, AttributeError):
        raise credentials_exception


def get_current_admin(caller: Annotated[schemas.Caller, Depends(get_current_caller)]) -> schemas.Caller:
    if not caller.is_admin:
        raise ForbiddenError("Admin privileges required.")
    return caller


def ensure_self_or_admin(caller: schemas.Caller, user_id: int) -> None:
    if caller.id != user_id and not caller.is_admin:
        raise ForbiddenError("You can only view your own bookings.")
