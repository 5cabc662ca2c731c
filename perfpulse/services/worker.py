"""Queue worker - polls pending performance-test jobs and executes them.

Several workers (processes or hosts) may poll the same table; the
conditional claim in job_queue.mark_running keeps each attempt single. A
claim lapses after the orchestrator's lease, so a job whose worker died is
claimed again on a later poll, or failed once its attempts are used up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from perfpulse.errors import (
    AlreadyClaimed,
    InvalidTransition,
    JobNotFound,
    StoreUnavailable,
    TestNotFound,
)
from perfpulse.models.job import PERFORMANCE_TEST_JOB
from perfpulse.models.test_record import TEST_COMPLETED, TEST_FAILED, TEST_QUEUED
from perfpulse.services import job_queue
from perfpulse.services.orchestrator import TestOrchestrator

logger = logging.getLogger(__name__)

MAX_POLL_BACKOFF = 300.0  # seconds


def _empty_summary() -> dict[str, int]:
    return {"claimed": 0, "completed": 0, "failed": 0, "requeued": 0, "skipped": 0}


async def process_pending_jobs(
    session_factory: Callable[[], Session],
    orchestrator: TestOrchestrator,
    *,
    limit: int = 10,
    concurrency: int = 4,
) -> dict[str, int]:
    """Execute one batch of pending jobs.

    Each job runs in its own session; at most ``concurrency`` provider calls
    are in flight. Raises StoreUnavailable if the batch cannot be read.

    Returns
    -------
    dict
        Counts of claimed, completed, failed, requeued and skipped jobs.
    """
    db = session_factory()
    try:
        expired = orchestrator.fail_expired_claims(db, limit=limit)
        job_ids = [
            job.id for job in job_queue.get_pending_jobs(db, limit=limit, job_type=PERFORMANCE_TEST_JOB)
        ]
    finally:
        db.close()

    summary = _empty_summary()
    summary["failed"] += expired
    if not job_ids:
        return summary

    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def _run(job_id) -> str:
        async with semaphore:
            job_db = session_factory()
            try:
                record = await orchestrator.execute(job_db, job_id)
                return record.status
            except AlreadyClaimed as exc:
                logger.info("Skipping job %s: %s", job_id, exc)
                return "skipped"
            except InvalidTransition as exc:
                logger.warning("Job %s lost its claim before finishing: %s", job_id, exc)
                return "skipped"
            except (JobNotFound, TestNotFound) as exc:
                logger.error("Job %s could not run: %s", job_id, exc)
                return "skipped"
            finally:
                job_db.close()

    outcomes = await asyncio.gather(*(_run(job_id) for job_id in job_ids), return_exceptions=True)

    store_error: StoreUnavailable | None = None
    for job_id, outcome in zip(job_ids, outcomes):
        if isinstance(outcome, StoreUnavailable):
            logger.error("Store unavailable while running job %s: %s", job_id, outcome)
            store_error = store_error or outcome
            continue
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "skipped":
            summary["skipped"] += 1
            continue
        summary["claimed"] += 1
        if outcome == TEST_COMPLETED:
            summary["completed"] += 1
        elif outcome == TEST_FAILED:
            summary["failed"] += 1
        elif outcome == TEST_QUEUED:
            summary["requeued"] += 1

    logger.info("Processed job batch: %s", summary)
    if store_error is not None:
        raise store_error
    return summary


async def run_worker(
    session_factory: Callable[[], Session],
    orchestrator: TestOrchestrator,
    *,
    poll_interval: float = 5.0,
    batch_size: int = 10,
    concurrency: int = 4,
    max_iterations: int | None = None,
) -> dict[str, int]:
    """Poll and execute jobs until ``max_iterations`` polls (forever if None).

    Store outages back off the poll (doubling up to MAX_POLL_BACKOFF); job
    attempt counts are left untouched.
    """
    totals = _empty_summary()
    delay = poll_interval
    iteration = 0
    while max_iterations is None or iteration < max_iterations:
        iteration += 1
        try:
            summary = await process_pending_jobs(
                session_factory, orchestrator, limit=batch_size, concurrency=concurrency
            )
        except StoreUnavailable as exc:
            delay = min(max(delay, poll_interval, 1.0) * 2, MAX_POLL_BACKOFF)
            logger.warning("Store unavailable, next poll in %.0fs: %s", delay, exc)
        else:
            for key, value in summary.items():
                totals[key] += value
            delay = poll_interval
            if summary["claimed"]:
                # More work may be waiting; poll again right away.
                continue
        if max_iterations is not None and iteration >= max_iterations:
            break
        await asyncio.sleep(delay)
    return totals
