"""Tests for structured error reports."""

import pytest
from structlog.testing import capture_logs

from overseer_credits.error_reporting import ErrorCode, ErrorReport, report_error


@pytest.mark.unit
def test_report_is_one_error_event() -> None:
    report = ErrorReport(
        error_code=ErrorCode.ADD_CREDITS_UNAUTHORIZED,
        message="Unauthorized attempt to add credits",
        user_id="user-1",
        payload={"amount": 10},
    )
    with capture_logs() as logs:
        report_error(report)

    assert len(logs) == 1
    entry = logs[0]
    assert entry["log_level"] == "error"
    assert entry["event"] == "Unauthorized attempt to add credits"
    assert entry["error_code"] == "add_credits_unauthorized"
    assert entry["user_id"] == "user-1"
    assert entry["agent_id"] is None
    assert entry["payload"] == {"amount": 10}


@pytest.mark.unit
def test_report_attaches_exception() -> None:
    error = RuntimeError("connection lost")
    with capture_logs() as logs:
        report_error(
            ErrorReport(error_code=ErrorCode.BATCH_JOB_FAILED, message="Batch job failed", job_id="j"),
            error,
        )

    assert logs[0]["exc_info"] is error
    assert logs[0]["job_id"] == "j"


@pytest.mark.unit
def test_to_dict_contains_all_context() -> None:
    report = ErrorReport(error_code="x", message="m", agent_id="a")
    assert report.to_dict() == {
        "error_code": "x",
        "message": "m",
        "user_id": None,
        "agent_id": "a",
        "job_id": None,
        "payload": {},
    }
