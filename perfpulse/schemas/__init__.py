"""Pydantic schemas."""

from perfpulse.schemas.test_run import (
    TestRunList,
    TestRunRead,
    TestRunSubmit,
    TestRunSubmitted,
)

__all__ = ["TestRunList", "TestRunRead", "TestRunSubmit", "TestRunSubmitted"]
