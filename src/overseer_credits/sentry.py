"""Logging setup and Sentry helpers for the credits service."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

    from overseer_credits.config import Settings

# Default sample rates
DEFAULT_TRACES_SAMPLE_RATE = 0.2  # 20% of transactions in production
DEV_TRACES_SAMPLE_RATE = 1.0  # 100% in development

SENSITIVE_HEADERS = ("authorization", "cookie", "x-admin-key", "x-api-key")
SENSITIVE_EXTRA_KEYS = ("password", "token", "secret", "api_key", "apikey", "authorization")

# Keys structlog adds itself; everything else is breadcrumb data
_STANDARD_KEYS = frozenset({"event", "level", "timestamp", "logger", "filename", "lineno"})


def configure_logging(
    service_name: str,
    log_level: str | int = logging.INFO,
    json_format: bool | None = None,
    environment: str = "development",
) -> structlog.stdlib.BoundLogger:
    """
    Configure stdlib logging and structlog for the service.

    Call this once at startup, after init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level, as a name ("INFO") or a number
        json_format: Use JSON output (True) or console format (False).
                     If None, JSON is used everywhere except development.
        environment: Deployment environment used for auto-detection

    Returns:
        Configured structlog logger
    """
    if json_format is None:
        json_format = environment != "development"
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())
        if not isinstance(log_level, int):
            log_level = logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates on hot reload
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        # Before format_exc_info so the exception object is still attached
        add_sentry_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.CallsiteParameterAdder(
            [
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
            ]
        ),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def add_sentry_context(
    _logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor: record every event as a breadcrumb, send errors to Sentry.

    Sentry calls are no-ops when the SDK was never initialised.
    """
    level = event_dict.get("level", "info")
    message = event_dict.get("event", "")
    extra_data = {k: v for k, v in event_dict.items() if k not in _STANDARD_KEYS}

    sentry_sdk.add_breadcrumb(
        message=str(message),
        category="log",
        level=level,
        data=extra_data or None,
    )

    if method_name in ("error", "exception", "critical"):
        exc_info = event_dict.get("exc_info")
        if isinstance(exc_info, tuple) and exc_info[1] is not None:
            sentry_sdk.capture_exception(exc_info[1])
        elif isinstance(exc_info, BaseException):
            sentry_sdk.capture_exception(exc_info)
        else:
            with sentry_sdk.new_scope() as scope:
                for key, value in extra_data.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(
                    str(message),
                    level="error" if method_name == "error" else "fatal",
                )

    return event_dict


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str = "development"
    release: str | None = None
    traces_sample_rate: float | None = None
    enable_db_tracing: bool = True

    @classmethod
    def from_settings(cls, service_name: str, settings: Settings) -> SentryConfig:
        return cls(
            service_name=service_name,
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            release=f"{service_name}@{settings.VERSION}",
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        )


def _build_integrations(cfg: SentryConfig) -> list[Any]:
    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        AsyncioIntegration(),
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
    ]
    if cfg.enable_db_tracing:
        integrations.append(SqlalchemyIntegration())
    return integrations


def _scrub_event(event: Event, _hint: dict[str, Any]) -> Event | None:
    """Filter admin keys and other secrets out of outgoing events."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if isinstance(headers, dict):
            for header in list(headers.keys()):
                if header.lower() in SENSITIVE_HEADERS:
                    headers[header] = "[Filtered]"

    extra = event.get("extra")
    if isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_EXTRA_KEYS):
                extra[key] = "[Filtered]"
    return event


def init_sentry(config: SentryConfig) -> bool:
    """
    Initialize the Sentry SDK.

    Args:
        config: Sentry configuration

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    if not config.dsn:
        return False

    traces_rate = config.traces_sample_rate
    if traces_rate is None:
        traces_rate = (
            DEFAULT_TRACES_SAMPLE_RATE
            if config.environment == "production"
            else DEV_TRACES_SAMPLE_RATE
        )

    sentry_sdk.init(
        dsn=config.dsn,
        environment=config.environment,
        release=config.release or f"{config.service_name}@0.1.0",
        traces_sample_rate=traces_rate,
        integrations=_build_integrations(config),
        before_send=_scrub_event,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=100,
        server_name=config.service_name,
        ignore_errors=[
            "ConnectionRefusedError",
            "ConnectionResetError",
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )
    sentry_sdk.set_tag("service", config.service_name)
    return True


def flush(timeout: float = 2.0) -> None:
    """Flush pending Sentry events, used on shutdown."""
    sentry_sdk.flush(timeout=timeout)
