"""
Authentication Service

Issues and verifies JWT bearer tokens. Login itself happens elsewhere; this
service only needs to turn the token on a request into a user id.
"""

import os
import jwt
import logging
from datetime import datetime, timedelta
from typing import Optional

from services.exceptions import Unauthenticated

logger = logging.getLogger(__name__)

# JWT settings
SECRET_KEY = os.getenv("JWT_SECRET_KEY") or os.getenv("SECRET_KEY")
if not SECRET_KEY:
    logger.critical("❌ JWT_SECRET_KEY (or SECRET_KEY) environment variable is required!")
    raise RuntimeError("JWT_SECRET_KEY environment variable is required. Set JWT_SECRET_KEY or SECRET_KEY.")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 30  # 30 minutes default


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Dict containing user info (user_id, email, role)
        expires_delta: Optional custom expiration time

    Returns:
        JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)

    return encoded_jwt


def decode_access_token(token: str) -> Optional[dict]:
    """
    Decode and verify a JWT token.

    Args:
        token: JWT token string

    Returns:
        Decoded token data or None if invalid
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def authenticate(token: Optional[str]) -> int:
    """
    Resolve a bearer token to a user id.

    Raises:
        Unauthenticated: missing, expired or tampered token, or no user_id claim
    """
    if not token:
        raise Unauthenticated("Missing authentication token")

    payload = decode_access_token(token)
    if payload is None:
        raise Unauthenticated("Invalid or expired token")

    user_id = payload.get("user_id")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        logger.warning("Token without a usable user_id claim")
        raise Unauthenticated("Invalid token payload")
