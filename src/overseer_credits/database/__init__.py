"""Database module for the credits core."""

from overseer_credits.database.connection import Database, create_engine_from_settings
from overseer_credits.database.models import (
    Base,
    BatchItemResult,
    BatchJob,
    CreditAccount,
    CreditAuditEntry,
)

__all__ = [
    "Base",
    "BatchItemResult",
    "BatchJob",
    "CreditAccount",
    "CreditAuditEntry",
    "Database",
    "create_engine_from_settings",
]
