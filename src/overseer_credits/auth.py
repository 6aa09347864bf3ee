"""Authorization check for privileged ledger mutations.

Granting credits, refunding and monthly resets are triggered by billing
webhooks and admin tooling, never by end users. Those callers present a token
that is checked here before the ledger touches any balance.
"""

from __future__ import annotations

import secrets
from typing import Protocol

import structlog

logger = structlog.get_logger()

ADMIN_KEY_HEADER = "X-Admin-Key"


class Authorizer(Protocol):
    """Decides whether a presented token may perform a privileged mutation."""

    def is_authorized(self, token: str | None) -> bool: ...


class AdminKeyAuthorizer:
    """Accepts exactly the configured admin API key.

    With no key configured every request is denied.
    """

    def __init__(self, admin_api_key: str | None) -> None:
        self._admin_api_key = admin_api_key or None
        if self._admin_api_key is None:
            logger.warning("No admin API key configured, privileged ledger operations disabled")

    @property
    def enabled(self) -> bool:
        return self._admin_api_key is not None

    def is_authorized(self, token: str | None) -> bool:
        if not self._admin_api_key or not token:
            return False
        return secrets.compare_digest(token.encode(), self._admin_api_key.encode())
