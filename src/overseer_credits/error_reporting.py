"""Structured error diagnostics.

Every failure in the ledger, audit log and batch orchestrator is reported as a
single structured event carrying an error code, a readable message, the acting
user, the related agent/job and a payload describing what was attempted.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog

logger = structlog.get_logger()


class ErrorCode:
    """Error codes emitted by the credits core."""

    # Pre-authorization
    PRE_AUTHORIZE_INVALID_AMOUNT = "pre_authorize_invalid_amount"
    PRE_AUTHORIZE_USER_NOT_FOUND = "pre_authorize_user_not_found"
    PRE_AUTHORIZE_INSUFFICIENT_CREDITS = "pre_authorize_insufficient_credits"
    PRE_AUTHORIZE_ERROR = "pre_authorize_error"
    RELEASE_PRE_AUTHORIZE_INVALID_AMOUNT = "release_pre_authorize_invalid_amount"
    RELEASE_PRE_AUTHORIZE_USER_NOT_FOUND = "release_pre_authorize_user_not_found"
    RELEASE_PRE_AUTHORIZE_ERROR = "release_pre_authorize_error"

    # Ledger
    HAS_ENOUGH_CREDITS_INVALID_ESTIMATE = "has_enough_credits_invalid_estimate"
    HAS_ENOUGH_CREDITS_ERROR = "has_enough_credits_error"
    OPEN_ACCOUNT_ERROR = "open_account_error"
    CREDIT_SUMMARY_ERROR = "credit_summary_error"
    ADD_CREDITS_UNAUTHORIZED = "add_credits_unauthorized"
    ADD_CREDITS_INVALID_AMOUNT = "add_credits_invalid_amount"
    ADD_CREDITS_USER_NOT_FOUND = "add_credits_user_not_found"
    ADD_CREDITS_ERROR = "add_credits_error"
    TRACK_USAGE_MISSING_USER = "track_usage_missing_user"
    TRACK_USAGE_INVALID_USAGE = "track_usage_invalid_usage"
    TRACK_USAGE_USER_NOT_FOUND = "track_usage_user_not_found"
    TRACK_USAGE_INSUFFICIENT_CREDITS = "track_usage_insufficient_credits"
    TRACK_USAGE_ERROR = "track_usage_error"
    REFUND_CREDITS_MISSING_REASON = "refund_credits_missing_reason"
    REFUND_CREDITS_UNAUTHORIZED = "refund_credits_unauthorized"
    REFUND_CREDITS_INVALID_AMOUNT = "refund_credits_invalid_amount"
    REFUND_CREDITS_USER_NOT_FOUND = "refund_credits_user_not_found"
    REFUND_CREDITS_ERROR = "refund_credits_error"
    RESET_CREDITS_UNAUTHORIZED = "reset_credits_unauthorized"
    RESET_CREDITS_INVALID_AMOUNT = "reset_credits_invalid_amount"
    RESET_CREDITS_USER_NOT_FOUND = "reset_credits_user_not_found"
    RESET_CREDITS_ERROR = "reset_credits_error"

    # Audit log
    GET_CREDIT_AUDIT_LOGS_ERROR = "get_credit_audit_logs_error"

    # Batch jobs
    CREATE_BATCH_JOB_INVALID_REQUEST = "create_batch_job_invalid_request"
    CREATE_BATCH_JOB_INSUFFICIENT_CREDITS = "create_batch_job_insufficient_credits"
    CREATE_BATCH_JOB_ERROR = "create_batch_job_error"
    BATCH_ITEM_PROCESS_ERROR = "batch_item_process_error"
    BATCH_JOB_FAILED = "batch_job_failed"
    BATCH_JOB_RELEASE_ERROR = "batch_job_release_error"
    CANCEL_JOB_ERROR = "cancel_job_error"
    LIST_JOBS_ERROR = "list_jobs_error"
    GET_JOB_STATUS_ERROR = "get_job_status_error"
    GET_JOB_RESULTS_ERROR = "get_job_results_error"


@dataclass(frozen=True)
class ErrorReport:
    """Context attached to a reported failure."""

    error_code: str
    message: str
    user_id: str | None = None
    agent_id: str | None = None
    job_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "job_id": self.job_id,
            "payload": self.payload,
        }


def report_error(report: ErrorReport, exc: BaseException | None = None) -> None:
    """Log a failure as one structured error event.

    Args:
        report: What failed and for whom
        exc: The exception that caused the failure, if any
    """
    if exc is not None:
        logger.error(report.message, exc_info=exc, **report.to_dict())
    else:
        logger.error(report.message, **report.to_dict())
