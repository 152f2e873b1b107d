"""
Auth utilities for the LogToPost API.

Issues and validates HS256 JWTs ({"userId": ...}) and hashes passwords with
bcrypt. Tokens are read from the Authorization header (Bearer) or the
``token`` cookie.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import bcrypt
import jwt
from fastapi import Request

from logtopost.core.config import settings
from logtopost.core.errors import UnauthorizedError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def issue_token(user_id: str, secret: Optional[str] = None, expires_days: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    days = expires_days if expires_days is not None else settings.JWT_EXPIRES_DAYS
    payload = {"userId": user_id, "iat": now, "exp": now + timedelta(days=days)}
    return jwt.encode(payload, secret or settings.JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str, secret: Optional[str] = None) -> Optional[str]:
    """Return the user id carried by ``token``, or None when invalid or expired."""
    try:
        payload = jwt.decode(token, secret or settings.JWT_SECRET, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        return None
    user_id = payload.get("userId")
    return user_id if isinstance(user_id, str) and user_id else None


def authenticate(request: Request) -> Optional[str]:
    """Extract the user id from the request's bearer token or token cookie."""
    auth_header = request.headers.get("Authorization", "")
    token = auth_header[7:] if auth_header.startswith("Bearer ") else request.cookies.get("token")
    if not token:
        return None
    return decode_token(token)


def require_user_id(request: Request) -> str:
    """FastAPI dependency: the authenticated user id, or 401."""
    user_id = authenticate(request)
    if not user_id:
        raise UnauthorizedError("Missing or invalid authentication token")
    return user_id
