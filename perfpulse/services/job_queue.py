"""Durable job queue over the ``jobs`` table.

Every status change is a single conditional UPDATE so that concurrent
workers cannot both move the same row. A successful transition commits the
session, which also commits any pending changes the caller made in it; a
refused one rolls them back.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from perfpulse.db.session import store_operation
from perfpulse.errors import (
    MAX_ATTEMPTS_EXCEEDED,
    AlreadyClaimed,
    InvalidTransition,
    JobNotFound,
)
from perfpulse.models.job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_TERMINAL_STATUSES,
    Job,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_LEASE_SECONDS = 120.0
CLAIM_EXPIRED = "claim expired"


def enqueue(
    db: Session,
    job_type: str,
    payload: dict[str, Any],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> UUID:
    """Insert a queued job and return its id."""
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    now = datetime.now(UTC)
    job = Job(
        type=job_type,
        payload=dict(payload),
        status=JOB_QUEUED,
        attempts=0,
        max_attempts=max_attempts,
        available_at=now,
        created_at=now,
        updated_at=now,
    )
    with store_operation(db, "enqueue"):
        db.add(job)
        db.commit()
    logger.info("Enqueued job %s type=%s max_attempts=%d", job.id, job_type, max_attempts)
    return job.id


def get_job(db: Session, job_id: UUID) -> Job:
    """Fetch a job by id. Raises JobNotFound."""
    with store_operation(db, "get_job"):
        job = db.get(Job, job_id, populate_existing=True)
    if job is None:
        raise JobNotFound(f"Job {job_id} not found")
    return job


def get_pending_jobs(
    db: Session, limit: int = 10, job_type: str | None = None
) -> list[Job]:
    """Return claimable jobs, oldest first.

    That is queued jobs whose ``available_at`` has passed, plus running jobs
    whose lease lapsed with attempts left (their worker stopped before
    finishing). Each call runs a fresh query.
    """
    now = datetime.now(UTC)
    stmt = (
        select(Job)
        .where(_claimable(now))
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(limit)
    )
    if job_type is not None:
        stmt = stmt.where(Job.type == job_type)
    with store_operation(db, "get_pending_jobs"):
        return list(db.scalars(stmt.execution_options(populate_existing=True)).all())


def get_expired_jobs(
    db: Session, limit: int = 10, job_type: str | None = None
) -> list[Job]:
    """Running jobs whose lease lapsed on their last permitted attempt."""
    stmt = (
        select(Job)
        .where(
            Job.status == JOB_RUNNING,
            Job.lease_expires_at <= datetime.now(UTC),
            Job.attempts >= Job.max_attempts,
        )
        .order_by(Job.created_at.asc(), Job.id.asc())
        .limit(limit)
    )
    if job_type is not None:
        stmt = stmt.where(Job.type == job_type)
    with store_operation(db, "get_expired_jobs"):
        return list(db.scalars(stmt.execution_options(populate_existing=True)).all())


def mark_running(
    db: Session, job_id: UUID, lease_seconds: float = DEFAULT_LEASE_SECONDS
) -> Job:
    """Claim a job and count the attempt.

    The claim and the increment happen in one conditional UPDATE, so of two
    workers racing for the same row exactly one succeeds; the other gets
    AlreadyClaimed. The claim holds for ``lease_seconds``; after that a
    running job with attempts left may be claimed again.
    """
    now = datetime.now(UTC)
    stmt = (
        update(Job)
        .where(Job.id == job_id, _claimable(now, check_available=False))
        .values(
            status=JOB_RUNNING,
            attempts=Job.attempts + 1,
            lease_expires_at=now + timedelta(seconds=max(lease_seconds, 0.0)),
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    with store_operation(db, "mark_running"):
        claimed = db.execute(stmt).rowcount
        db.commit()
    if claimed != 1:
        current = get_job(db, job_id)
        raise AlreadyClaimed(
            f"Job {job_id} not claimable (status={current.status}, "
            f"attempts={current.attempts}/{current.max_attempts})"
        )
    job = get_job(db, job_id)
    logger.info("Claimed job %s attempt %d/%d", job_id, job.attempts, job.max_attempts)
    return job


def mark_completed(db: Session, job_id: UUID, attempt: int | None = None) -> Job:
    """Move a running job to completed.

    With ``attempt`` set, only the claim that made that attempt may finish
    the job.
    """
    return _transition(
        db,
        job_id,
        allowed_from=(JOB_RUNNING,),
        values={"status": JOB_COMPLETED, "error": None},
        attempt=attempt,
    )


def mark_failed(db: Session, job_id: UUID, reason: str, attempt: int | None = None) -> Job:
    """Move a non-terminal job to failed, recording the reason."""
    job = _transition(
        db,
        job_id,
        allowed_from=(JOB_QUEUED, JOB_RUNNING),
        values={"status": JOB_FAILED, "error": reason},
        attempt=attempt,
    )
    logger.warning("Job %s failed after %d attempt(s): %s", job_id, job.attempts, reason)
    return job


def retry(
    db: Session,
    job_id: UUID,
    delay_seconds: float = 0.0,
    reason: str | None = None,
    attempt: int | None = None,
) -> bool:
    """Put a job back on the queue, or fail it when its attempts are used up.

    Returns True when the job was re-queued (eligible again after
    ``delay_seconds``) and False when it was failed with
    ``max attempts exceeded``.
    """
    now = datetime.now(UTC)
    guard = [Job.id == job_id, Job.status.in_((JOB_QUEUED, JOB_RUNNING))]
    if attempt is not None:
        guard.append(Job.attempts == attempt)
    exhausted_error = f"{MAX_ATTEMPTS_EXCEEDED}: {reason}" if reason else MAX_ATTEMPTS_EXCEEDED

    exhaust = (
        update(Job)
        .where(*guard, Job.attempts >= Job.max_attempts)
        .values(status=JOB_FAILED, error=exhausted_error, lease_expires_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    requeue = (
        update(Job)
        .where(*guard, Job.attempts < Job.max_attempts)
        .values(
            status=JOB_QUEUED,
            error=reason,
            available_at=now + timedelta(seconds=max(delay_seconds, 0.0)),
            lease_expires_at=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    with store_operation(db, "retry"):
        if db.execute(exhaust).rowcount == 1:
            db.commit()
            logger.warning("Job %s exhausted its attempts: %s", job_id, exhausted_error)
            return False
        if db.execute(requeue).rowcount == 1:
            db.commit()
            logger.info("Re-queued job %s, eligible in %.1fs", job_id, delay_seconds)
            return True
        db.rollback()
    current = get_job(db, job_id)
    raise InvalidTransition(
        f"Job {job_id} cannot be retried from {current.status} "
        f"(attempts={current.attempts}/{current.max_attempts})"
    )


def expire(db: Session, job_id: UUID, attempt: int | None = None) -> bool:
    """Fail a running job whose lease lapsed on its last permitted attempt.

    Returns False, discarding the session's pending changes, when the job
    is no longer in that state.
    """
    stmt = (
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JOB_RUNNING,
            Job.lease_expires_at <= datetime.now(UTC),
            Job.attempts >= Job.max_attempts,
        )
        .values(
            status=JOB_FAILED,
            error=f"{MAX_ATTEMPTS_EXCEEDED}: {CLAIM_EXPIRED}",
            lease_expires_at=None,
            updated_at=datetime.now(UTC),
        )
        .execution_options(synchronize_session=False)
    )
    if attempt is not None:
        stmt = stmt.where(Job.attempts == attempt)
    with store_operation(db, "expire"):
        if db.execute(stmt).rowcount != 1:
            db.rollback()
            return False
        db.commit()
    logger.warning("Job %s lost its worker on its last attempt; failed", job_id)
    return True


def _claimable(now: datetime, check_available: bool = True):
    queued = Job.status == JOB_QUEUED
    if check_available:
        queued = and_(queued, Job.available_at <= now)
    lapsed = and_(Job.status == JOB_RUNNING, Job.lease_expires_at <= now)
    return and_(Job.attempts < Job.max_attempts, or_(queued, lapsed))


def _transition(
    db: Session,
    job_id: UUID,
    *,
    allowed_from: tuple[str, ...],
    values: dict[str, Any],
    attempt: int | None = None,
) -> Job:
    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status.in_(allowed_from))
        .values(**values, lease_expires_at=None, updated_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    if attempt is not None:
        stmt = stmt.where(Job.attempts == attempt)
    with store_operation(db, f"transition to {values['status']}"):
        changed = db.execute(stmt).rowcount
        if changed == 1:
            db.commit()
        else:
            # Pending record changes must not outlive a refused transition.
            db.rollback()
    if changed != 1:
        current = get_job(db, job_id)
        terminal = " (terminal)" if current.status in JOB_TERMINAL_STATUSES else ""
        raise InvalidTransition(
            f"Job {job_id} cannot move from {current.status}{terminal} to {values['status']} "
            f"(attempts={current.attempts}/{current.max_attempts})"
        )
    return get_job(db, job_id)
