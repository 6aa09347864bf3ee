"""Append-only credit audit log.

Every balance-affecting ledger operation writes exactly one entry here, inside
the same transaction as the balance change. There is no update or delete path:
corrections are made by appending a compensating entry (e.g. a refund).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from overseer_credits.database.models import CreditAuditEntry
from overseer_credits.error_reporting import ErrorCode, ErrorReport, report_error

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100


class AuditOperation(str, Enum):
    """Types of balance-affecting operations."""

    USAGE = "usage"
    ADD = "add"
    PRE_AUTHORIZE = "pre_authorize"
    RELEASE_PRE_AUTHORIZE = "release_pre_authorize"
    REFUND = "refund"


class BalanceField(str, Enum):
    """Ledger field an audit entry's before/after values measure."""

    CREDITS_ADDED = "credits_added"
    CREDITS_USED = "credits_used"
    PRE_AUTHORIZED_CREDITS = "pre_authorized_credits"


@dataclass
class AuditLogPage:
    """One page of audit entries plus the total matching count."""

    entries: list[CreditAuditEntry] = field(default_factory=list)
    total: int = 0


def _json_safe(value: Any) -> Any:
    """Make metadata values storable in a JSON column."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_json_safe(v) for v in value]
    return value


class AuditLog:
    """Writes and queries credit audit entries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def append(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        operation_type: AuditOperation,
        amount: Decimal,
        balance_before: Decimal,
        balance_after: Decimal,
        description: str,
        metadata: dict[str, Any] | None = None,
    ) -> CreditAuditEntry:
        """Add an audit entry to the caller's transaction.

        The entry commits or rolls back together with the balance change it
        describes. Errors propagate so the caller's transaction aborts.

        Args:
            session: Session whose transaction holds the balance change
            user_id: Account owner
            operation_type: What kind of operation changed the balance
            amount: Credits moved by the operation
            balance_before: Measured balance field before the operation
            balance_after: Measured balance field after the operation
            description: Human-readable summary
            metadata: Operation-specific structured context

        Returns:
            The pending audit entry
        """
        entry = CreditAuditEntry(
            user_id=user_id,
            operation_type=AuditOperation(operation_type).value,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            description=description,
            metadata_=_json_safe(metadata or {}),
        )
        session.add(entry)
        await session.flush()
        return entry

    async def query(
        self,
        user_id: str,
        *,
        operation_type: AuditOperation | str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> AuditLogPage:
        """Page through a user's audit entries, newest first.

        Args:
            user_id: Account owner
            operation_type: Only return entries of this type
            start: Only entries created at or after this time
            end: Only entries created at or before this time
            limit: Page size, clamped to 1..100
            offset: Entries to skip, floored at 0

        Returns:
            The requested page; an empty page if the query fails
        """
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)

        try:
            conditions = [CreditAuditEntry.user_id == user_id]
            if operation_type is not None:
                conditions.append(
                    CreditAuditEntry.operation_type == AuditOperation(operation_type).value
                )
            if start is not None:
                conditions.append(CreditAuditEntry.created_at >= start)
            if end is not None:
                conditions.append(CreditAuditEntry.created_at <= end)

            async with self._session_factory() as session:
                total = await session.scalar(
                    select(func.count()).select_from(CreditAuditEntry).where(*conditions)
                )
                result = await session.execute(
                    select(CreditAuditEntry)
                    .where(*conditions)
                    .order_by(CreditAuditEntry.created_at.desc(), CreditAuditEntry.id.desc())
                    .limit(limit)
                    .offset(offset)
                )
                entries = list(result.scalars().all())
        except Exception as exc:
            report_error(
                ErrorReport(
                    error_code=ErrorCode.GET_CREDIT_AUDIT_LOGS_ERROR,
                    message="Failed to get credit audit logs",
                    user_id=user_id,
                    payload={
                        "operation_type": str(operation_type) if operation_type else None,
                        "limit": limit,
                        "offset": offset,
                    },
                ),
                exc,
            )
            return AuditLogPage()

        return AuditLogPage(entries=entries, total=total or 0)
