"""Credit ledger and batch processing for agent workloads."""

from overseer_credits.audit_log import AuditLog, AuditOperation
from overseer_credits.batch import BatchProcessor, JobStatus
from overseer_credits.config import Settings, get_settings
from overseer_credits.ledger import CreditSummary, Ledger
from overseer_credits.services import ServiceContainer

__version__ = "0.1.0"

__all__ = [
    "AuditLog",
    "AuditOperation",
    "BatchProcessor",
    "CreditSummary",
    "JobStatus",
    "Ledger",
    "ServiceContainer",
    "Settings",
    "__version__",
    "get_settings",
]
