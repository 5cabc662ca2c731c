"""API routes."""

from perfpulse.api.internal import router as internal_router
from perfpulse.api.runs import router as runs_router

__all__ = ["internal_router", "runs_router"]
