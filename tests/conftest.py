"""
Pytest fixtures for credits service tests.

This module provides:
- A file-backed SQLite database per test
- Ledger, audit log and batch processor wired to it
- A scripted completion engine
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from overseer_credits.audit_log import AuditLog
from overseer_credits.auth import AdminKeyAuthorizer
from overseer_credits.batch import BatchJobRepository, BatchProcessor
from overseer_credits.completion import ChatMessage, CompletionResult
from overseer_credits.cost_model import TokenUsage
from overseer_credits.database import Database
from overseer_credits.database.connection import SQLITE_BUSY_TIMEOUT
from overseer_credits.ledger import Ledger

ADMIN_KEY = "test-admin-key-0123456789abcdef0123"


class ScriptedEngine:
    """Completion engine returning queued results or raising queued errors.

    When ``gate`` is set, every call waits for it before answering.
    """

    def __init__(self, default_usage: TokenUsage | None = None) -> None:
        self.default_usage = default_usage or TokenUsage(prompt_tokens=100, completion_tokens=100)
        self.script: list[CompletionResult | Exception] = []
        self.calls: list[tuple[list[ChatMessage], str]] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def complete(self, messages: list[ChatMessage], model: str) -> CompletionResult:
        self.calls.append((messages, model))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.script:
            outcome = self.script.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return CompletionResult(
            content=f"echo: {messages[-1]['content']}",
            usage=self.default_usage,
        )


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[Database, None]:
    """Fresh schema in a temporary SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/credits.db",
        poolclass=NullPool,
        connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
    )
    db = Database(engine)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def admin_key() -> str:
    return ADMIN_KEY


@pytest.fixture
def authorizer(admin_key: str) -> AdminKeyAuthorizer:
    return AdminKeyAuthorizer(admin_key)


@pytest.fixture
def audit_log(database: Database) -> AuditLog:
    return AuditLog(database.session_factory)


@pytest.fixture
def ledger(database: Database, audit_log: AuditLog, authorizer: AdminKeyAuthorizer) -> Ledger:
    return Ledger(database.session_factory, audit_log, authorizer)


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def repository(database: Database) -> BatchJobRepository:
    return BatchJobRepository(database.session_factory)


@pytest_asyncio.fixture
async def processor(
    ledger: Ledger,
    repository: BatchJobRepository,
    engine: ScriptedEngine,
) -> AsyncGenerator[BatchProcessor, None]:
    batch_processor = BatchProcessor(
        ledger,
        repository,
        engine,
        default_model="gpt-4o",
        token_estimate_multiplier=1.2,
        max_items=10,
    )
    yield batch_processor
    if engine.gate is not None:
        engine.gate.set()
    await batch_processor.shutdown(timeout=5)


@pytest.fixture
def funded_account(ledger: Ledger, admin_key: str) -> Callable[..., Awaitable[str]]:
    """Open an account and grant it credits."""

    async def _fund(user_id: str = "user-1", amount: Decimal | int = 100) -> str:
        assert await ledger.open_account(user_id)
        if amount:
            assert await ledger.add_credits(user_id, amount, admin_key, "test")
        return user_id

    return _fund
