"""Tests for the test orchestrator: submission, execution and retry policy."""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy.orm import Session

from perfpulse.errors import MAX_ATTEMPTS_EXCEEDED, AlreadyClaimed, InvalidRequest, TestNotFound
from perfpulse.models.job import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    PERFORMANCE_TEST_JOB,
    Job,
)
from perfpulse.models.test_record import (
    METRIC_FIELDS,
    RESULT_FIELDS,
    SCORE_FIELDS,
    TEST_COMPLETED,
    TEST_FAILED,
    TEST_QUEUED,
    TestRecord,
)
from perfpulse.services import job_queue
from perfpulse.services.audit_client import (
    MalformedResponse,
    ProviderRejected,
    ProviderUnavailable,
    Transport,
    parse_audit_result,
)
from perfpulse.services.orchestrator import (
    INTERNAL_ERROR_MESSAGE,
    WORKER_LOST_MESSAGE,
    TestOrchestrator,
    validate_test_request,
)
from tests.fakes import FakeAuditClient, psi_payload


def _only_job(db: Session) -> Job:
    jobs = db.query(Job).all()
    assert len(jobs) == 1
    return job_queue.get_job(db, jobs[0].id)


def _assert_consistent(record: TestRecord) -> None:
    """Results only on completed tests; error message only on failed ones."""
    if record.status == TEST_COMPLETED:
        assert all(getattr(record, name) is not None for name in RESULT_FIELDS)
        assert record.error_message is None
        assert record.completed_at is not None
    else:
        assert all(getattr(record, name) is None for name in RESULT_FIELDS)
    if record.status == TEST_FAILED:
        assert record.error_message
        assert record.completed_at is not None


# ── validation ──────────────────────────────────────────────────────


class TestValidateTestRequest:
    def test_accepts_and_normalises(self) -> None:
        assert validate_test_request("  https://example.com/a  ", "Desktop", " eu ") == (
            "https://example.com/a",
            "desktop",
            "eu",
        )

    @pytest.mark.parametrize(
        "url,message",
        [
            ("", "required"),
            ("ftp://example.com", "HTTP or HTTPS"),
            ("example.com", "HTTP or HTTPS"),
            ("javascript:alert(1)", "HTTP or HTTPS"),
            ("https://", "host"),
            ("https://exa mple.com", "whitespace"),
            ("https://example.com:99999", "Invalid URL"),
            ("https://example.com/" + "a" * 2048, "2048"),
        ],
    )
    def test_rejects_bad_urls(self, url: str, message: str) -> None:
        with pytest.raises(InvalidRequest, match=message):
            validate_test_request(url, "mobile", "us")

    def test_rejects_unknown_device(self) -> None:
        with pytest.raises(InvalidRequest, match="mobile, desktop"):
            validate_test_request("https://example.com", "tablet", "us")

    @pytest.mark.parametrize("region", ["", "   ", "r" * 65])
    def test_rejects_bad_region(self, region: str) -> None:
        with pytest.raises(InvalidRequest, match="Region"):
            validate_test_request("https://example.com", "mobile", region)


# ── submit / reads ──────────────────────────────────────────────────


class TestSubmit:
    def test_submit_creates_record_and_job(self, db: Session, orchestrator: TestOrchestrator) -> None:
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us", user_id="u1")

        record = orchestrator.get_status(db, test_id)
        assert record.status == TEST_QUEUED
        assert record.url == "https://example.com"
        assert record.device == "mobile"
        assert record.region == "us"
        assert record.user_id == "u1"
        assert record.queued_at is not None
        _assert_consistent(record)

        job = _only_job(db)
        assert job.type == PERFORMANCE_TEST_JOB
        assert job.status == JOB_QUEUED
        assert job.max_attempts == 3
        assert job.payload == {
            "test_id": str(test_id),
            "url": "https://example.com",
            "device": "mobile",
            "region": "us",
            "user_id": "u1",
        }

    def test_invalid_submission_writes_nothing(self, db: Session, orchestrator: TestOrchestrator) -> None:
        with pytest.raises(InvalidRequest, match="HTTP or HTTPS"):
            orchestrator.submit(db, "ftp://example.com", "mobile", "us")

        assert db.query(TestRecord).count() == 0
        assert db.query(Job).count() == 0

    def test_get_status_unknown_id(self, db: Session, orchestrator: TestOrchestrator) -> None:
        with pytest.raises(TestNotFound):
            orchestrator.get_status(db, uuid.uuid4())

    def test_list_tests_only_returns_callers_tests(
        self, db: Session, orchestrator: TestOrchestrator
    ) -> None:
        mine = [
            orchestrator.submit(db, f"https://example.com/{i}", "mobile", "us", user_id="u1")
            for i in range(3)
        ]
        orchestrator.submit(db, "https://other.example", "mobile", "us", user_id="u2")

        records = orchestrator.list_tests(db, "u1")

        assert {r.id for r in records} == set(mine)
        assert len(orchestrator.list_tests(db, "u1", limit=2)) == 2


# ── execute ─────────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_successful_audit_completes_test(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job = _only_job(db)

        await orchestrator.execute(db, job.id)

        record = orchestrator.get_status(db, test_id)
        assert record.status == TEST_COMPLETED
        assert record.performance_score == 92
        assert record.accessibility_score == 88
        assert record.best_practices_score == 100
        assert record.seo_score == 90
        assert record.largest_contentful_paint == 2400.0
        assert record.time_to_interactive == 3100.0
        assert record.total_requests == 42
        assert record.total_bytes == 1048576
        assert record.raw_data["requestedUrl"] == "https://example.com"
        assert record.started_at is not None
        _assert_consistent(record)

        job = job_queue.get_job(db, job.id)
        assert job.status == JOB_COMPLETED
        assert job.attempts == 1
        assert fake_audit.calls == [("https://example.com", "mobile")]

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_until_success(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        fake_audit.queue(Transport("Audit provider timed out after 60s"), Transport("Audit provider timed out after 60s"))
        test_id = orchestrator.submit(db, "https://slow.example", "desktop", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)
        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_QUEUED
        _assert_consistent(record)
        assert job.status == JOB_QUEUED
        assert job.attempts == 1
        assert job.error == "Audit provider timed out after 60s"

        await orchestrator.execute(db, job_id)
        assert job_queue.get_job(db, job_id).attempts == 2

        await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_COMPLETED
        assert record.performance_score == 92
        _assert_consistent(record)
        assert job.status == JOB_COMPLETED
        assert job.attempts == 3
        assert len(fake_audit.calls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_the_test(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        fake_audit.queue(*(ProviderUnavailable("Audit provider unavailable (HTTP 503): busy", 503) for _ in range(3)))
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id

        for _ in range(3):
            await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_FAILED
        assert "HTTP 503" in record.error_message
        assert "gave up after 3 attempt(s)" in record.error_message
        _assert_consistent(record)
        assert job.status == JOB_FAILED
        assert job.attempts == 3
        assert job.error.startswith(MAX_ATTEMPTS_EXCEEDED)

        with pytest.raises(AlreadyClaimed):
            await orchestrator.execute(db, job_id)
        assert len(fake_audit.calls) == 3

    @pytest.mark.asyncio
    async def test_reported_scores_and_metrics_map_onto_record(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        payload = psi_payload(performance=0.93, accessibility=0.87, best_practices=0.91, seo=0.95)
        audits = payload["lighthouseResult"]["audits"]
        for audit_id, value in {
            "first-contentful-paint": 1200,
            "largest-contentful-paint": 2100,
            "cumulative-layout-shift": 0.02,
            "total-blocking-time": 50,
            "interactive": 2500,
            "speed-index": 1800,
            "total-byte-weight": 512000,
        }.items():
            audits[audit_id] = {"numericValue": value}
        audits["network-requests"] = {"details": {"items": [{"url": f"/r/{i}"} for i in range(34)]}}
        fake_audit.queue(parse_audit_result(payload))
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")

        await orchestrator.execute(db, _only_job(db).id)

        record = orchestrator.get_status(db, test_id)
        assert record.status == TEST_COMPLETED
        assert (
            record.performance_score,
            record.accessibility_score,
            record.best_practices_score,
            record.seo_score,
        ) == (93, 87, 91, 95)
        assert record.first_contentful_paint == 1200.0
        assert record.largest_contentful_paint == 2100.0
        assert record.cumulative_layout_shift == 0.02
        assert record.total_blocking_time == 50.0
        assert record.time_to_interactive == 2500.0
        assert record.speed_index == 1800.0
        assert record.total_requests == 34
        assert record.total_bytes == 512000
        _assert_consistent(record)

    @pytest.mark.asyncio
    async def test_rejected_url_fails_on_first_attempt(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        fake_audit.queue(ProviderRejected("Audit provider rejected the request (HTTP 404): unreachable", 404))
        test_id = orchestrator.submit(db, "https://unreachable.example", "mobile", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_FAILED
        assert "HTTP 404" in record.error_message
        _assert_consistent(record)
        assert job.status == JOB_FAILED
        assert job.attempts == 1
        assert job_queue.get_pending_jobs(db) == []

    @pytest.mark.asyncio
    async def test_malformed_response_is_not_retried(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        fake_audit.queue(MalformedResponse("Audit response missing category scores: seo"))
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        assert record.status == TEST_FAILED
        assert "seo" in record.error_message
        assert job_queue.get_job(db, job_id).attempts == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_with_generic_message(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        fake_audit.queue(RuntimeError("secret stack detail"))
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        assert record.status == TEST_FAILED
        assert record.error_message == INTERNAL_ERROR_MESSAGE
        job = job_queue.get_job(db, job_id)
        assert job.status == JOB_FAILED
        assert job.error == INTERNAL_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_single_attempt_policy_fails_immediately(
        self, db: Session, fake_audit: FakeAuditClient
    ) -> None:
        orchestrator = TestOrchestrator(fake_audit, max_attempts=1, retry_base_delay=0.0)
        fake_audit.queue(Transport("Could not reach audit provider: ConnectError"))
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)

        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_FAILED
        assert "gave up after 1 attempt(s)" in record.error_message
        assert job.status == JOB_FAILED
        assert job.error == f"{MAX_ATTEMPTS_EXCEEDED}: Could not reach audit provider: ConnectError"

    @pytest.mark.asyncio
    async def test_retry_waits_out_backoff(self, db: Session, fake_audit: FakeAuditClient) -> None:
        orchestrator = TestOrchestrator(fake_audit, max_attempts=3, retry_base_delay=120.0)
        fake_audit.queue(Transport("Audit provider timed out after 60s"))
        orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id

        await orchestrator.execute(db, job_id)

        assert job_queue.get_job(db, job_id).status == JOB_QUEUED
        assert job_queue.get_pending_jobs(db) == []

    @pytest.mark.asyncio
    async def test_completed_job_cannot_run_again(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id
        await orchestrator.execute(db, job_id)

        with pytest.raises(AlreadyClaimed):
            await orchestrator.execute(db, job_id)
        assert len(fake_audit.calls) == 1

    @pytest.mark.asyncio
    async def test_job_without_record_is_failed(
        self, db: Session, orchestrator: TestOrchestrator, fake_audit: FakeAuditClient
    ) -> None:
        job_id = job_queue.enqueue(db, PERFORMANCE_TEST_JOB, {"test_id": str(uuid.uuid4())})

        with pytest.raises(TestNotFound):
            await orchestrator.execute(db, job_id)

        job = job_queue.get_job(db, job_id)
        assert job.status == JOB_FAILED
        assert "missing" in job.error
        assert fake_audit.calls == []

    @pytest.mark.asyncio
    async def test_lapsed_claim_is_taken_over(
        self, session_factory, fake_audit: FakeAuditClient
    ) -> None:
        orchestrator = TestOrchestrator(fake_audit, lease_seconds=0.0, retry_base_delay=0.0)
        stale = session_factory()
        db = session_factory()
        try:
            test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
            job_id = _only_job(db).id
            job_queue.mark_running(stale, job_id, lease_seconds=0.0)

            await orchestrator.execute(db, job_id)

            record = orchestrator.get_status(db, test_id)
            job = job_queue.get_job(db, job_id)
            assert record.status == TEST_COMPLETED
            assert job.status == JOB_COMPLETED
            assert job.attempts == 2
        finally:
            stale.close()
            db.close()


# ── expired claims ──────────────────────────────────────────────────


class TestFailExpiredClaims:
    def _claim_with_lapsed_lease(self, db: Session, orchestrator: TestOrchestrator):
        test_id = orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id
        job_queue.mark_running(db, job_id, lease_seconds=0.0)
        return test_id, job_id

    def test_fails_record_and_job_on_last_attempt(self, db: Session, fake_audit: FakeAuditClient) -> None:
        orchestrator = TestOrchestrator(fake_audit, max_attempts=1)
        test_id, job_id = self._claim_with_lapsed_lease(db, orchestrator)

        assert orchestrator.fail_expired_claims(db) == 1

        record = orchestrator.get_status(db, test_id)
        job = job_queue.get_job(db, job_id)
        assert record.status == TEST_FAILED
        assert record.error_message.startswith(WORKER_LOST_MESSAGE)
        assert "gave up after 1 attempt(s)" in record.error_message
        _assert_consistent(record)
        assert job.status == JOB_FAILED
        assert job.error == f"{MAX_ATTEMPTS_EXCEEDED}: {job_queue.CLAIM_EXPIRED}"
        assert orchestrator.fail_expired_claims(db) == 0

    def test_leaves_jobs_with_attempts_left(self, db: Session, orchestrator: TestOrchestrator) -> None:
        _, job_id = self._claim_with_lapsed_lease(db, orchestrator)

        assert orchestrator.fail_expired_claims(db) == 0

        assert job_queue.get_job(db, job_id).status == JOB_RUNNING
        assert [job.id for job in job_queue.get_pending_jobs(db)] == [job_id]

    def test_leaves_live_claims_alone(self, db: Session, fake_audit: FakeAuditClient) -> None:
        orchestrator = TestOrchestrator(fake_audit, max_attempts=1)
        orchestrator.submit(db, "https://example.com", "mobile", "us")
        job_id = _only_job(db).id
        job_queue.mark_running(db, job_id, lease_seconds=300.0)

        assert orchestrator.fail_expired_claims(db) == 0
        assert job_queue.get_job(db, job_id).status == JOB_RUNNING


# ── retry policy ────────────────────────────────────────────────────


class TestRetryDelay:
    def test_backoff_grows_and_is_capped(self) -> None:
        orchestrator = TestOrchestrator(FakeAuditClient(), retry_base_delay=30.0, retry_max_delay=75.0)

        delays = [orchestrator.retry_delay(n) for n in range(1, 6)]

        assert delays == [30.0, 60.0, 75.0, 75.0, 75.0]
        assert delays == sorted(delays)

    def test_rejects_non_positive_max_attempts(self) -> None:
        with pytest.raises(ValueError):
            TestOrchestrator(FakeAuditClient(), max_attempts=0)

    def test_from_settings_reads_retry_policy(self, monkeypatch: pytest.MonkeyPatch) -> None:
        from perfpulse.config import Settings

        monkeypatch.setenv("JOB_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("RETRY_BASE_DELAY", "10")
        monkeypatch.setenv("RETRY_MAX_DELAY", "40")
        monkeypatch.setenv("JOB_LEASE_SECONDS", "90")

        orchestrator = TestOrchestrator.from_settings(FakeAuditClient(), Settings())

        assert orchestrator.max_attempts == 5
        assert orchestrator.retry_delay(2) == 20.0
        assert orchestrator.retry_delay(9) == 40.0
        assert orchestrator.lease_seconds == 90.0


def test_score_and_metric_fields_are_result_fields() -> None:
    assert set(SCORE_FIELDS) | set(METRIC_FIELDS) <= set(RESULT_FIELDS)
