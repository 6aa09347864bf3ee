"""Request and response models for the HTTP adapter."""

from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from overseer_credits.audit_log import AuditOperation
from overseer_credits.batch import BatchItem, BatchJobRequest, JobStatus


class CamelModel(BaseModel):
    """Serializes with camelCase keys, accepts either case on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Billing
# ============================================================================


class CreditSummaryResponse(CamelModel):
    """Current balances for the authenticated user."""

    credits_added: float
    credits_used: float
    pre_authorized_credits: float
    credits_available: float
    plan_tier: str


class AuditEntryResponse(CamelModel):
    """One credit audit log entry."""

    id: int
    operation_type: AuditOperation
    amount: float
    balance_before: float
    balance_after: float
    description: str
    metadata: dict[str, Any] = Field(validation_alias="metadata_")
    created_at: datetime


class Pagination(CamelModel):
    limit: int
    offset: int
    pages: int


class AuditLogResponse(CamelModel):
    logs: list[AuditEntryResponse]
    total: int
    pagination: Pagination


class AddCreditsRequest(CamelModel):
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    source: str = Field(default="manual", min_length=1, max_length=100)


class RefundCreditsRequest(CamelModel):
    user_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    reason: str = Field(max_length=1000)


class ResetCreditsRequest(CamelModel):
    user_id: str = Field(min_length=1)
    # Defaults to the account's plan allowance
    credit_amount: Decimal | None = Field(default=None, ge=0)


class LedgerMutationResponse(CamelModel):
    success: bool


# ============================================================================
# Batch jobs
# ============================================================================


class BatchItemRequest(CamelModel):
    id: str | None = None
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class CreateBatchJobRequest(CamelModel):
    items: list[BatchItemRequest]
    agent_id: str | None = None
    model: str | None = None
    token_estimate_multiplier: float | None = None

    def to_job_request(self) -> BatchJobRequest:
        items = [
            BatchItem(content=item.content, metadata=item.metadata)
            if not item.id
            else BatchItem(content=item.content, id=item.id, metadata=item.metadata)
            for item in self.items
        ]
        return BatchJobRequest(
            items=items,
            agent_id=self.agent_id,
            model=self.model,
            token_estimate_multiplier=self.token_estimate_multiplier,
        )


class BatchJobResponse(CamelModel):
    id: str
    user_id: str
    agent_id: str | None
    status: JobStatus
    progress: int
    total_items: int
    processed_items: int
    estimated_tokens: int
    actual_tokens: int
    credits_pre_authorized: float
    credits_used: float
    model: str
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    error: str | None = None


class BatchJobListResponse(CamelModel):
    jobs: list[BatchJobResponse]
    total: int


class ItemResultResponse(CamelModel):
    item_id: str
    input: str = Field(validation_alias="input_content")
    output: str = Field(validation_alias="output_content")
    tokens_used: int
    created_at: datetime


class JobResultsResponse(CamelModel):
    results: list[ItemResultResponse]
    total: int
