"""SQLAlchemy models for the credits core.

 - base.py: Base class and shared column types
 - ledger.py: CreditAccount, CreditAuditEntry
 - batch.py: BatchJob, BatchItemResult
"""

# ruff: noqa: I001

from .base import Base, UTCDateTime, _generate_uuid, utcnow

from .ledger import CreditAccount, CreditAuditEntry

from .batch import BatchItemResult, BatchJob

__all__ = [
    "Base",
    "BatchItemResult",
    "BatchJob",
    "CreditAccount",
    "CreditAuditEntry",
    "UTCDateTime",
    "_generate_uuid",
    "utcnow",
]
