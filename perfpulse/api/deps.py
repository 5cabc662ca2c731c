"""Shared FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Cookie, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from perfpulse.db.session import get_db  # re-export
from perfpulse.errors import StoreUnavailable
from perfpulse.services.auth import user_id_from_api_key, user_id_from_token
from perfpulse.services.orchestrator import TestOrchestrator

__all__ = [
    "get_db",
    "get_caller_id",
    "get_orchestrator",
    "require_caller",
]

# Cookie name for browser sessions
AUTH_COOKIE = "access_token"

_orchestrator: TestOrchestrator | None = None


def get_orchestrator() -> TestOrchestrator:
    """Process-wide orchestrator built from settings on first use."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = TestOrchestrator.from_settings()
    return _orchestrator


def get_caller_id(
    db: Session = Depends(get_db),
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    access_token: str | None = Cookie(None),
) -> str | None:
    """Return the caller's user id or None.

    Checks (in order):
    1. X-API-Key header (programmatic access)
    2. Authorization: Bearer <token> header
    3. access_token cookie
    """
    if x_api_key:
        try:
            return user_id_from_api_key(db, x_api_key)
        except StoreUnavailable:
            raise HTTPException(status_code=503, detail="Service temporarily unavailable") from None

    token: str | None = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :]
    if token is None and access_token:
        token = access_token
    if token is None:
        return None
    return user_id_from_token(token)


def require_caller(caller_id: str | None = Depends(get_caller_id)) -> str:
    """Dependency that requires an authenticated caller; 401 otherwise."""
    if caller_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return caller_id
