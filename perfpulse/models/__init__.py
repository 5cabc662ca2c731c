"""SQLAlchemy models."""

from perfpulse.models.api_key import ApiKey
from perfpulse.models.job import Job
from perfpulse.models.test_record import TestRecord

__all__ = [
    "ApiKey",
    "Job",
    "TestRecord",
]
