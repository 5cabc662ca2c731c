"""Performance test API routes: submit and poll."""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from perfpulse.api.deps import get_db, get_orchestrator, require_caller
from perfpulse.errors import InvalidRequest, StoreUnavailable, TestNotFound
from perfpulse.schemas.test_run import TestRunList, TestRunRead, TestRunSubmit, TestRunSubmitted
from perfpulse.services.orchestrator import TestOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def _unavailable(exc: StoreUnavailable) -> HTTPException:
    logger.error("Store unavailable: %s", exc)
    return HTTPException(status_code=503, detail="Service temporarily unavailable")


@router.post(
    "",
    response_model=TestRunSubmitted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Submit a performance test",
)
def submit_test(
    body: TestRunSubmit,
    db: Session = Depends(get_db),
    caller_id: str = Depends(require_caller),
    orchestrator: TestOrchestrator = Depends(get_orchestrator),
) -> TestRunSubmitted:
    """Queue a test for ``url``. Execution is asynchronous; poll GET /api/tests/{id}."""
    try:
        test_id = orchestrator.submit(
            db, body.url, body.device.value, body.region, user_id=caller_id
        )
    except InvalidRequest as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    except StoreUnavailable as exc:
        raise _unavailable(exc) from None
    return TestRunSubmitted(test_run_id=test_id)


@router.get("", response_model=TestRunList, summary="List recent performance tests")
def list_tests(
    limit: int = Query(20, ge=1, le=100, description="Maximum number of tests to return."),
    db: Session = Depends(get_db),
    caller_id: str = Depends(require_caller),
    orchestrator: TestOrchestrator = Depends(get_orchestrator),
) -> TestRunList:
    try:
        records = orchestrator.list_tests(db, caller_id, limit=limit)
    except StoreUnavailable as exc:
        raise _unavailable(exc) from None
    items = [TestRunRead.model_validate(r) for r in records]
    return TestRunList(items=items, total=len(items))


@router.get("/{test_id}", response_model=TestRunRead, summary="Get a performance test")
def get_test(
    test_id: UUID,
    db: Session = Depends(get_db),
    caller_id: str = Depends(require_caller),
    orchestrator: TestOrchestrator = Depends(get_orchestrator),
) -> TestRunRead:
    """Current status of a test. Other callers' tests are reported as not found."""
    try:
        record = orchestrator.get_status(db, test_id)
    except TestNotFound:
        raise HTTPException(status_code=404, detail="Test not found") from None
    except StoreUnavailable as exc:
        raise _unavailable(exc) from None
    if record.user_id != caller_id:
        raise HTTPException(status_code=404, detail="Test not found")
    return TestRunRead.model_validate(record)
