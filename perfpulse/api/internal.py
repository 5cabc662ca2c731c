"""Internal job endpoints for cron/scripts.

These endpoints are secured with a static token (X-Internal-Token header),
NOT cookie-based auth.  They are meant for automated triggers only.
"""

from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from perfpulse.api.deps import get_orchestrator
from perfpulse.config import get_settings
from perfpulse.errors import StoreUnavailable
from perfpulse.services.orchestrator import TestOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal", include_in_schema=False)


# ── Token dependency ────────────────────────────────────────────────


def _require_internal_token(x_internal_token: str = Header(...)) -> None:
    """Validate the internal job token from the request header.

    Uses constant-time comparison to prevent timing attacks.
    Raises 403 if the token is empty or does not match the configured value.
    """
    expected = get_settings().internal_job_token
    if not expected or not secrets.compare_digest(x_internal_token, expected):
        logger.warning("Internal endpoint auth failed: invalid or missing token")
        raise HTTPException(status_code=403, detail="Invalid internal token")


# ── Endpoints ───────────────────────────────────────────────────────


@router.post("/run_jobs")
async def run_jobs(
    limit: int | None = Query(None, ge=1, le=100, description="Batch size; settings default if omitted"),
    _token: None = Depends(_require_internal_token),
    orchestrator: TestOrchestrator = Depends(get_orchestrator),
):
    """Execute one batch of pending performance-test jobs.

    Returns per-outcome counts for the batch.
    """
    from perfpulse.db.session import SessionLocal
    from perfpulse.services.worker import process_pending_jobs

    settings = get_settings()
    try:
        summary = await process_pending_jobs(
            SessionLocal,
            orchestrator,
            limit=limit or settings.worker_batch_size,
            concurrency=settings.worker_concurrency,
        )
    except StoreUnavailable as exc:
        logger.error("Internal run_jobs aborted: %s", exc)
        return {"status": "failed", "error": "store unavailable"}
    return {"status": "completed", **summary}
