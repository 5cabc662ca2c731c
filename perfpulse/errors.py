"""Exceptions raised by the job queue and test orchestrator."""

from __future__ import annotations

MAX_ATTEMPTS_EXCEEDED = "max attempts exceeded"


class InvalidRequest(ValueError):
    """Submission rejected before any record was written."""


class StoreUnavailable(Exception):
    """The durable store could not be read or written."""


class JobNotFound(LookupError):
    """No job row with the given id."""


class TestNotFound(LookupError):
    """No test record with the given id."""

    __test__ = False


class AlreadyClaimed(Exception):
    """The job is not claimable: another worker holds it or it is no longer queued."""


class InvalidTransition(Exception):
    """A job status change that the lifecycle does not allow."""
