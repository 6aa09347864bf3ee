"""Process-wide component wiring.

One instance of each component is built at startup and handed to request
handlers through dependency injection. Nothing in the package reaches for
module-level singletons.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from overseer_credits.audit_log import AuditLog
from overseer_credits.auth import AdminKeyAuthorizer, Authorizer
from overseer_credits.batch import BatchJobRepository, BatchProcessor
from overseer_credits.completion import CompletionEngine, LLMCompletionEngine
from overseer_credits.config import Settings
from overseer_credits.database import Database
from overseer_credits.ledger import Ledger

logger = structlog.get_logger()


@dataclass
class ServiceContainer:
    """The credits core, assembled."""

    settings: Settings
    database: Database
    authorizer: Authorizer
    audit_log: AuditLog
    ledger: Ledger
    batch_processor: BatchProcessor

    @classmethod
    def build(
        cls,
        settings: Settings,
        database: Database,
        engine: CompletionEngine | None = None,
        authorizer: Authorizer | None = None,
    ) -> ServiceContainer:
        """Wire components around an existing database.

        Args:
            settings: Application settings
            database: Engine and session factory
            engine: Completion engine; defaults to the provider-backed engine
            authorizer: Privileged-operation check; defaults to the admin key check
        """
        authorizer = authorizer or AdminKeyAuthorizer(settings.ADMIN_API_KEY)
        engine = engine or LLMCompletionEngine(
            openai_api_key=settings.OPENAI_API_KEY,
            anthropic_api_key=settings.ANTHROPIC_API_KEY,
            timeout=settings.LLM_REQUEST_TIMEOUT,
        )
        audit_log = AuditLog(database.session_factory)
        ledger = Ledger(database.session_factory, audit_log, authorizer)
        batch_processor = BatchProcessor(
            ledger,
            BatchJobRepository(database.session_factory),
            engine,
            default_model=settings.DEFAULT_MODEL,
            token_estimate_multiplier=settings.TOKEN_ESTIMATE_MULTIPLIER,
            max_items=settings.BATCH_MAX_ITEMS,
        )
        return cls(
            settings=settings,
            database=database,
            authorizer=authorizer,
            audit_log=audit_log,
            ledger=ledger,
            batch_processor=batch_processor,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceContainer:
        return cls.build(settings, Database.from_settings(settings))

    async def start(self) -> None:
        if self.settings.creates_schema:
            await self.database.create_all()
        else:
            logger.info("Skipping create_all outside development/test, migrations manage schema")

    async def close(self) -> None:
        """Let running batch jobs settle, then close the connection pool."""
        await self.batch_processor.shutdown(self.settings.BATCH_SHUTDOWN_TIMEOUT)
        await self.database.dispose()
