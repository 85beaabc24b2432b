"""
Password hashing and JWT helpers.
"""

import logging
import os
import secrets
from datetime import timedelta
from typing import Any, Dict, Iterable, Optional

import bcrypt
import jwt

from clubhouse.utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRES_DAYS", "7"))
BCRYPT_ROUNDS = 12


def require_jwt_secret() -> str:
    """
    Return JWT_SECRET, failing loudly when it is not configured.

    Raises:
        RuntimeError: If JWT_SECRET is unset or empty
    """
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET environment variable is not set")
    return secret


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def generate_token(num_bytes: int = 32) -> str:
    """Random hex token for email verification and password reset links."""
    return secrets.token_hex(num_bytes)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed HS256 access token.

    Args:
        data: Claims to embed
        expires_delta: Lifetime, defaults to JWT_EXPIRES_DAYS (7 days)

    Returns:
        Encoded JWT
    """
    to_encode = dict(data)
    expire = utcnow() + (expires_delta or timedelta(days=ACCESS_TOKEN_EXPIRE_DAYS))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, require_jwt_secret(), algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode a token; None if it is invalid, expired or unsigned by us."""
    try:
        return jwt.decode(token, require_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Access token expired")
        return None
    except jwt.InvalidTokenError:
        return None


def build_token_payload(parent, player_ids: Iterable[int]) -> Dict[str, Any]:
    """Claims carried by a parent's access token."""
    return {
        "id": parent.id,
        "role": parent.role,
        "email": parent.email,
        "players": list(player_ids),
        "isCoach": bool(parent.is_coach),
    }
