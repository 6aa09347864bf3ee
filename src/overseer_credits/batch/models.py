"""Batch job data structures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import uuid4

from overseer_credits.database.models import BatchItemResult, BatchJob, utcnow


class JobStatus(str, Enum):
    """Batch job lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


@dataclass
class BatchItem:
    """One unit of work in a batch submission."""

    content: str
    id: str = field(default_factory=lambda: str(uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchJobRequest:
    """A batch submission."""

    items: list[BatchItem]
    agent_id: str | None = None
    model: str | None = None
    token_estimate_multiplier: float | None = None


@dataclass
class BatchJobState:
    """Point-in-time view of a batch job."""

    id: str
    user_id: str
    agent_id: str | None
    status: JobStatus
    progress: int
    total_items: int
    processed_items: int
    estimated_tokens: int
    actual_tokens: int
    credits_pre_authorized: Decimal
    credits_used: Decimal
    model: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error: str | None = None

    @classmethod
    def from_row(cls, row: BatchJob) -> BatchJobState:
        return cls(
            id=row.id,
            user_id=row.user_id,
            agent_id=row.agent_id,
            status=JobStatus(row.status),
            progress=row.progress,
            total_items=row.total_items,
            processed_items=row.processed_items,
            estimated_tokens=row.estimated_tokens,
            actual_tokens=row.actual_tokens,
            credits_pre_authorized=row.credits_pre_authorized,
            credits_used=row.credits_used,
            model=row.model,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
            error=row.error,
        )


@dataclass
class ItemResult:
    """Stored output of one successfully processed item."""

    item_id: str
    item_index: int
    input_content: str
    output_content: str
    tokens_used: int
    created_at: datetime

    @classmethod
    def from_row(cls, row: BatchItemResult) -> ItemResult:
        return cls(
            item_id=row.item_id,
            item_index=row.item_index,
            input_content=row.input_content,
            output_content=row.output_content,
            tokens_used=row.tokens_used,
            created_at=row.created_at,
        )


@dataclass
class JobsPage:
    jobs: list[BatchJobState] = field(default_factory=list)
    total: int = 0


@dataclass
class ResultsPage:
    results: list[ItemResult] = field(default_factory=list)
    total: int = 0


@dataclass
class ActiveJob:
    """A job this process is driving.

    ``outstanding`` is the part of the job's reservation not yet captured by
    usage or released. ``lock`` serializes ledger calls between the
    processing loop and cancellation.
    """

    id: str
    user_id: str
    agent_id: str | None
    model: str
    items: list[BatchItem]
    estimated_tokens: int
    credits_pre_authorized: Decimal
    outstanding: Decimal
    status: JobStatus = JobStatus.PENDING
    processed_items: int = 0
    actual_tokens: int = 0
    credits_used: Decimal = Decimal(0)
    cancel_requested: bool = False
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def progress(self) -> int:
        if self.status == JobStatus.COMPLETED:
            return 100
        if not self.items:
            return 0
        return self.processed_items * 100 // len(self.items)

    def snapshot(self) -> BatchJobState:
        return BatchJobState(
            id=self.id,
            user_id=self.user_id,
            agent_id=self.agent_id,
            status=self.status,
            progress=self.progress,
            total_items=self.total_items,
            processed_items=self.processed_items,
            estimated_tokens=self.estimated_tokens,
            actual_tokens=self.actual_tokens,
            credits_pre_authorized=self.credits_pre_authorized,
            credits_used=self.credits_used,
            model=self.model,
            created_at=self.created_at,
            updated_at=self.updated_at,
            completed_at=self.completed_at,
            error=self.error,
        )
