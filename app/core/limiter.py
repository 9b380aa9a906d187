# app/core/limiter.py
"""
Rate limiter configuration module.
Separated to avoid circular imports.
"""

from jose import JWTError, jwt
from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.config import settings


def get_user_or_remote_address(request: Request) -> str:
    """Key by authenticated user id, falling back to the client IP."""
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=["HS256"])
        except JWTError:
            payload = {}
        if payload.get("sub"):
            return f"user:{payload['sub']}"
    return get_remote_address(request)


# In-memory storage: limits are per process
limiter = Limiter(key_func=get_remote_address)
