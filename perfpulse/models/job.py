"""Job model."""

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, CheckConstraint, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from perfpulse.db.session import Base

JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_TERMINAL_STATUSES = (JOB_COMPLETED, JOB_FAILED)

PERFORMANCE_TEST_JOB = "performance-test"


class Job(Base):
    """Generic queued unit of work with retry bookkeeping.

    Only perfpulse.services.job_queue mutates these rows. ``available_at``
    holds back a re-queued job until its retry backoff has elapsed.
    ``lease_expires_at`` bounds how long a claim is honoured; a running job
    whose lease has lapsed can be claimed again.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_available_created", "status", "available_at", "created_at"),
        CheckConstraint(
            "attempts >= 0 AND attempts <= max_attempts", name="ck_jobs_attempts_bounded"
        ),
        CheckConstraint("max_attempts >= 1", name="ck_jobs_max_attempts_positive"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=JOB_QUEUED)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    lease_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Job {self.id} [{self.type}] {self.status} {self.attempts}/{self.max_attempts}>"
