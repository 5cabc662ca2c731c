"""Caller identity - session JWTs and programmatic API keys."""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from perfpulse.config import get_settings
from perfpulse.db.session import store_operation
from perfpulse.models.api_key import ApiKey

logger = logging.getLogger(__name__)

# JWT configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed JWT access token."""
    settings = get_settings()
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """Decode and validate a JWT token. Returns payload or None."""
    settings = get_settings()
    if not settings.secret_key:
        return None
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None


def user_id_from_token(token: str) -> Optional[str]:
    """Caller id (``sub`` claim) of a valid session token, else None."""
    payload = decode_access_token(token)
    if payload is None:
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hex digest stored in api_keys.key_hash."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def create_api_key(db: Session, user_id: str, label: str, raw_key: str) -> ApiKey:
    """Store a new API key for ``user_id``. Only the hash is persisted."""
    key = ApiKey(user_id=user_id, label=label, key_hash=hash_api_key(raw_key))
    with store_operation(db, "create api key"):
        db.add(key)
        db.commit()
        db.refresh(key)
    return key


def user_id_from_api_key(db: Session, raw_key: str) -> Optional[str]:
    """Resolve an unrevoked API key to its owner and stamp last_used_at."""
    stmt = select(ApiKey).where(
        ApiKey.key_hash == hash_api_key(raw_key),
        ApiKey.revoked_at.is_(None),
    )
    with store_operation(db, "validate api key"):
        key = db.scalars(stmt).first()
        if key is None:
            logger.warning("Rejected invalid or revoked API key")
            return None
        key.last_used_at = datetime.now(timezone.utc)
        user_id = key.user_id
        db.commit()
    return user_id
