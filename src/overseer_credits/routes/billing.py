"""Credit balance, audit log and privileged ledger routes."""

import math
from datetime import datetime

from fastapi import APIRouter, HTTPException, Query

from overseer_credits.audit_log import AuditOperation
from overseer_credits.dependencies import AdminKey, AuditLogDep, CurrentUserId, LedgerDep
from overseer_credits.schemas import (
    AddCreditsRequest,
    AuditEntryResponse,
    AuditLogResponse,
    CreditSummaryResponse,
    LedgerMutationResponse,
    Pagination,
    RefundCreditsRequest,
    ResetCreditsRequest,
)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/credits", response_model=CreditSummaryResponse)
async def get_credits(user_id: CurrentUserId, ledger: LedgerDep) -> CreditSummaryResponse:
    """Get the user's credit balances."""
    summary = await ledger.get_credit_summary(user_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Credit account not found")
    return CreditSummaryResponse.model_validate(summary)


@router.get("/audit", response_model=AuditLogResponse)
async def get_audit_logs(
    user_id: CurrentUserId,
    audit_log: AuditLogDep,
    operation_type: AuditOperation | None = Query(default=None, alias="type"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> AuditLogResponse:
    """Get the user's credit audit log, newest first."""
    page = await audit_log.query(
        user_id,
        operation_type=operation_type,
        start=start_date,
        end=end_date,
        limit=limit,
        offset=offset,
    )
    return AuditLogResponse(
        logs=[AuditEntryResponse.model_validate(entry) for entry in page.entries],
        total=page.total,
        pagination=Pagination(limit=limit, offset=offset, pages=math.ceil(page.total / limit)),
    )


# Privileged mutations. The admin key is checked before the ledger sees the
# request; the ledger checks it again.


@router.post("/credits/add", response_model=LedgerMutationResponse)
async def add_credits(
    data: AddCreditsRequest,
    ledger: LedgerDep,
    admin_key: AdminKey,
) -> LedgerMutationResponse:
    """Grant credits to a user (billing webhooks, support)."""
    if not await ledger.add_credits(data.user_id, data.amount, admin_key, data.source):
        raise HTTPException(status_code=400, detail="Failed to add credits")
    return LedgerMutationResponse(success=True)


@router.post("/credits/refund", response_model=LedgerMutationResponse)
async def refund_credits(
    data: RefundCreditsRequest,
    ledger: LedgerDep,
    admin_key: AdminKey,
) -> LedgerMutationResponse:
    """Refund consumed credits to a user."""
    if not data.reason.strip():
        raise HTTPException(status_code=400, detail="Refund reason is required")
    if not await ledger.refund_credits(data.user_id, data.amount, data.reason, admin_key):
        raise HTTPException(status_code=400, detail="Failed to refund credits")
    return LedgerMutationResponse(success=True)


@router.post("/credits/reset", response_model=LedgerMutationResponse)
async def reset_credits(
    data: ResetCreditsRequest,
    ledger: LedgerDep,
    admin_key: AdminKey,
) -> LedgerMutationResponse:
    """Start a new billing period for a user."""
    if not await ledger.reset_monthly_credits(data.user_id, data.credit_amount, admin_key):
        raise HTTPException(status_code=400, detail="Failed to reset monthly credits")
    return LedgerMutationResponse(success=True)
