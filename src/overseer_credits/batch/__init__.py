"""Batch job orchestration."""

from overseer_credits.batch.models import (
    BatchItem,
    BatchJobRequest,
    BatchJobState,
    ItemResult,
    JobsPage,
    JobStatus,
    ResultsPage,
)
from overseer_credits.batch.processor import (
    CANCELED_BY_USER,
    INTERRUPTED_BY_SHUTDOWN,
    BatchProcessor,
    estimate_job_tokens,
)
from overseer_credits.batch.repository import BatchJobRepository

__all__ = [
    "CANCELED_BY_USER",
    "INTERRUPTED_BY_SHUTDOWN",
    "BatchItem",
    "BatchJobRepository",
    "BatchJobRequest",
    "BatchJobState",
    "BatchProcessor",
    "ItemResult",
    "JobStatus",
    "JobsPage",
    "ResultsPage",
    "estimate_job_tokens",
]
