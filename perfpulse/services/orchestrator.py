"""Test orchestrator - drives a performance test from submission to a terminal state.

Lifecycle of a TestRecord:

    queued -> running -> completed
                      -> queued   (retryable failure, attempts left, after backoff)
                      -> failed   (non-retryable failure or attempts exhausted)

The Job row carries the retry bookkeeping; the TestRecord is what users poll.
Only the worker holding a job's ``running`` claim touches its TestRecord;
a claim that lapses on the last attempt is failed by fail_expired_claims.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from urllib.parse import urlparse
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from perfpulse.config import Settings, get_settings
from perfpulse.db.session import store_operation
from perfpulse.errors import InvalidRequest, TestNotFound
from perfpulse.models.job import PERFORMANCE_TEST_JOB, Job
from perfpulse.models.test_record import (
    DEVICES,
    TEST_COMPLETED,
    TEST_FAILED,
    TEST_QUEUED,
    TEST_RUNNING,
    TestRecord,
)
from perfpulse.services import job_queue
from perfpulse.services.audit_client import AuditError, AuditProviderClient, AuditResult

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048
MAX_REGION_LENGTH = 64
INTERNAL_ERROR_MESSAGE = "Internal error while running the performance test"
WORKER_LOST_MESSAGE = "Worker stopped responding while running the performance test"


# ── Validation ───────────────────────────────────────────────────────


def validate_test_request(url: str, device: str, region: str) -> tuple[str, str, str]:
    """Check a submission and return it normalised. Raises InvalidRequest."""
    url = (url or "").strip()
    if not url:
        raise InvalidRequest("URL is required")
    if len(url) > MAX_URL_LENGTH:
        raise InvalidRequest(f"URL must be at most {MAX_URL_LENGTH} characters")
    if any(ch.isspace() for ch in url):
        raise InvalidRequest("URL must not contain whitespace")
    try:
        parsed = urlparse(url)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError as exc:
        raise InvalidRequest(f"Invalid URL: {exc}") from None
    if parsed.scheme.lower() not in ("http", "https"):
        raise InvalidRequest("URL must use HTTP or HTTPS protocol")
    if not hostname:
        raise InvalidRequest("URL must be absolute and include a host")

    device = (device or "").strip().lower()
    if device not in DEVICES:
        raise InvalidRequest(f"Device must be one of: {', '.join(DEVICES)}")

    region = (region or "").strip()
    if not region:
        raise InvalidRequest("Region is required")
    if len(region) > MAX_REGION_LENGTH:
        raise InvalidRequest(f"Region must be at most {MAX_REGION_LENGTH} characters")
    return url, device, region


# ── Result mapping ───────────────────────────────────────────────────


def apply_audit_result(record: TestRecord, result: AuditResult) -> None:
    """Copy provider scores and metrics onto the record and complete it."""
    record.performance_score = result.score_percent("performance")
    record.accessibility_score = result.score_percent("accessibility")
    record.best_practices_score = result.score_percent("best-practices")
    record.seo_score = result.score_percent("seo")
    for name, value in result.metrics.items():
        setattr(record, name, value)
    record.total_requests = result.total_requests
    record.total_bytes = result.total_bytes
    record.raw_data = result.raw
    record.status = TEST_COMPLETED
    record.error_message = None
    record.completed_at = datetime.now(UTC)


def _mark_record_failed(record: TestRecord, message: str) -> None:
    record.clear_results()
    record.status = TEST_FAILED
    record.error_message = message
    record.completed_at = datetime.now(UTC)


# ── Orchestrator ─────────────────────────────────────────────────────


class TestOrchestrator:
    """Submission, execution and retry policy for performance tests."""

    __test__ = False

    def __init__(
        self,
        client: AuditProviderClient,
        *,
        max_attempts: int = job_queue.DEFAULT_MAX_ATTEMPTS,
        retry_base_delay: float = 30.0,
        retry_max_delay: float = 600.0,
        lease_seconds: float = job_queue.DEFAULT_LEASE_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.client = client
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.lease_seconds = lease_seconds

    @classmethod
    def from_settings(
        cls, client: AuditProviderClient | None = None, settings: Settings | None = None
    ) -> TestOrchestrator:
        settings = settings or get_settings()
        return cls(
            client or AuditProviderClient.from_settings(settings),
            max_attempts=settings.job_max_attempts,
            retry_base_delay=settings.retry_base_delay,
            retry_max_delay=settings.retry_max_delay,
            lease_seconds=settings.job_lease_seconds,
        )

    def retry_delay(self, attempts: int) -> float:
        """Seconds before a job that has used ``attempts`` may run again."""
        return min(self.retry_base_delay * max(attempts, 1), self.retry_max_delay)

    # ── Submission & reads ───────────────────────────────────────────

    def submit(
        self,
        db: Session,
        url: str,
        device: str,
        region: str,
        user_id: str | None = None,
    ) -> UUID:
        """Create a queued TestRecord plus its job and return the test id.

        The record and the job are committed together. Nothing is written
        when validation fails.
        """
        url, device, region = validate_test_request(url, device, region)
        now = datetime.now(UTC)
        record = TestRecord(
            id=uuid.uuid4(),
            user_id=user_id,
            url=url,
            device=device,
            region=region,
            status=TEST_QUEUED,
            queued_at=now,
        )
        with store_operation(db, "create test record"):
            db.add(record)
        job_id = job_queue.enqueue(
            db,
            PERFORMANCE_TEST_JOB,
            {
                "test_id": str(record.id),
                "url": url,
                "device": device,
                "region": region,
                "user_id": user_id,
            },
            max_attempts=self.max_attempts,
        )
        logger.info("Submitted test %s (%s, %s, %s) as job %s", record.id, url, device, region, job_id)
        return record.id

    def get_status(self, db: Session, test_id: UUID) -> TestRecord:
        """Current state of a test. Raises TestNotFound."""
        with store_operation(db, "get test record"):
            record = db.get(TestRecord, test_id, populate_existing=True)
        if record is None:
            raise TestNotFound(f"Test {test_id} not found")
        return record

    def list_tests(self, db: Session, user_id: str, limit: int = 20) -> list[TestRecord]:
        """Most recent tests submitted by ``user_id``."""
        stmt = (
            select(TestRecord)
            .where(TestRecord.user_id == user_id)
            .order_by(TestRecord.created_at.desc())
            .limit(limit)
        )
        with store_operation(db, "list test records"):
            return list(db.scalars(stmt).all())

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, db: Session, job_id: UUID) -> TestRecord:
        """Run one attempt of a queued performance-test job.

        Raises AlreadyClaimed when another worker got the job first,
        InvalidTransition when this claim was lost (lease lapsed and the job
        was claimed again) before the attempt finished, and StoreUnavailable
        on store failures. Provider failures never escape: they end up on
        the TestRecord.
        """
        job = job_queue.mark_running(db, job_id, lease_seconds=self.lease_seconds)
        attempt, max_attempts = job.attempts, job.max_attempts
        record = self._record_for(db, job)

        record.status = TEST_RUNNING
        record.started_at = datetime.now(UTC)
        record.error_message = None
        with store_operation(db, "start test"):
            db.commit()

        try:
            result = await self.client.audit(record.url, record.device)
        except AuditError as exc:
            return self._handle_audit_error(db, job_id, attempt, max_attempts, record, exc)
        except Exception:
            logger.exception("Unexpected error auditing test %s (job %s)", record.id, job_id)
            _mark_record_failed(record, INTERNAL_ERROR_MESSAGE)
            job_queue.mark_failed(db, job_id, INTERNAL_ERROR_MESSAGE, attempt=attempt)
            return record

        apply_audit_result(record, result)
        job_queue.mark_completed(db, job_id, attempt=attempt)
        logger.info(
            "Test %s completed on attempt %d: performance=%s",
            record.id,
            attempt,
            record.performance_score,
        )
        return record

    def fail_expired_claims(self, db: Session, limit: int = 10) -> int:
        """Fail tests whose worker vanished during their last permitted attempt.

        A running job whose lease lapsed with attempts left is picked up
        again by the normal poll; one with no attempts left is failed here
        together with its TestRecord. Returns the number of jobs failed.
        """
        failed = 0
        for job in job_queue.get_expired_jobs(db, limit=limit, job_type=PERFORMANCE_TEST_JOB):
            job_id, attempt = job.id, job.attempts
            test_id = (job.payload or {}).get("test_id")
            record = None
            if test_id:
                with store_operation(db, "load test record"):
                    record = db.get(TestRecord, UUID(str(test_id)), populate_existing=True)
            if record is not None:
                _mark_record_failed(
                    record, f"{WORKER_LOST_MESSAGE} (gave up after {attempt} attempt(s))"
                )
            if job_queue.expire(db, job_id, attempt=attempt):
                failed += 1
                logger.warning("Test %s failed: worker lost on attempt %d", test_id, attempt)
        return failed

    def _record_for(self, db: Session, job: Job) -> TestRecord:
        test_id = (job.payload or {}).get("test_id")
        record = None
        if test_id:
            with store_operation(db, "load test record"):
                record = db.get(TestRecord, UUID(str(test_id)), populate_existing=True)
        if record is None:
            job_queue.mark_failed(
                db, job.id, f"test record {test_id} missing", attempt=job.attempts
            )
            raise TestNotFound(f"Test {test_id} for job {job.id} not found")
        return record

    def _handle_audit_error(
        self,
        db: Session,
        job_id: UUID,
        attempt: int,
        max_attempts: int,
        record: TestRecord,
        exc: AuditError,
    ) -> TestRecord:
        message = str(exc) or exc.__class__.__name__
        if not exc.retryable:
            logger.warning("Test %s failed permanently: %s", record.id, message)
            _mark_record_failed(record, message)
            job_queue.mark_failed(db, job_id, message, attempt=attempt)
            return record

        exhausted_message = f"{message} (gave up after {attempt} attempt(s))"
        if attempt < max_attempts:
            delay = self.retry_delay(attempt)
            record.status = TEST_QUEUED
            if job_queue.retry(db, job_id, delay_seconds=delay, reason=message, attempt=attempt):
                logger.info(
                    "Test %s attempt %d/%d failed (%s); retrying in %.0fs",
                    record.id,
                    attempt,
                    max_attempts,
                    message,
                    delay,
                )
                return record
            # retry() already failed the job; bring the record in line.
            _mark_record_failed(record, exhausted_message)
            with store_operation(db, "fail test"):
                db.commit()
            return record

        # Last attempt: retry() records "max attempts exceeded" on the job and
        # commits the failed record with it.
        _mark_record_failed(record, exhausted_message)
        job_queue.retry(db, job_id, reason=message, attempt=attempt)
        logger.warning("Test %s failed after %d attempt(s): %s", record.id, attempt, message)
        return record
