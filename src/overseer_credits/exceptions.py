"""Custom exception classes for the credit ledger and batch orchestrator."""

from decimal import Decimal


class OverseerCreditsError(Exception):
    """Base exception for this package."""


class ConfigurationError(OverseerCreditsError, ValueError):
    """Raised when configuration validation fails."""


class DefaultAdminKeyError(ConfigurationError):
    """Raised when no admin API key is configured in production."""

    def __init__(self) -> None:
        super().__init__(
            "ADMIN_API_KEY must be set in production. "
            "Privileged ledger mutations (grants, refunds, monthly resets) require it.",
        )


class ShortAdminKeyError(ConfigurationError):
    """Raised when the admin API key is too short in production."""

    def __init__(self, min_length: int) -> None:
        self.min_length = min_length
        super().__init__(f"ADMIN_API_KEY must be at least {min_length} characters in production.")


# Ledger exceptions
class LedgerError(OverseerCreditsError):
    """Base exception for ledger failures.

    These never escape the ledger's public methods; they are raised inside a
    ledger transaction to abort it and are then mapped to a boolean result.
    """


class AccountNotFoundError(LedgerError):
    """Raised when a user has no credit account."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"Credit account for user {user_id} not found")


class InvalidAmountError(LedgerError, ValueError):
    """Raised when a credit amount is not a finite positive number."""

    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"Invalid credit amount: {amount!r}")


class InsufficientCreditsError(LedgerError):
    """Raised when an operation needs more credits than are available."""

    def __init__(self, required: Decimal, available: Decimal) -> None:
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")


# Batch exceptions
class BatchJobError(OverseerCreditsError):
    """Base exception for batch job failures."""


class JobPersistenceError(BatchJobError):
    """Raised when a batch job row cannot be read or written."""

    def __init__(self, job_id: str, operation: str) -> None:
        self.job_id = job_id
        self.operation = operation
        super().__init__(f"Failed to {operation} batch job {job_id}")


class UsageNotRecordedError(BatchJobError):
    """Raised when the ledger refuses to record an item's usage."""

    def __init__(self, job_id: str, item_id: str) -> None:
        self.job_id = job_id
        self.item_id = item_id
        super().__init__("Insufficient credits to continue processing")


# Completion engine exceptions
class CompletionError(OverseerCreditsError):
    """Base exception for completion engine failures."""


class CompletionProviderError(CompletionError):
    """Raised when the upstream LLM provider call fails."""

    def __init__(self, provider: str, original_error: str) -> None:
        self.provider = provider
        self.original_error = original_error
        super().__init__(f"{provider} completion failed: {original_error}")


class EmptyCompletionError(CompletionError):
    """Raised when the provider returns no choices/content blocks."""

    def __init__(self, provider: str, model: str) -> None:
        self.provider = provider
        self.model = model
        super().__init__(f"{provider} returned an empty completion for model {model}")
