"""Logging and error-tracking setup for the entitlement sync service."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

if TYPE_CHECKING:
    from sentry_sdk.types import Event

EventCallback = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any] | None]

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEFAULT_PROFILES_SAMPLE_RATE = 0.1
DEV_TRACES_SAMPLE_RATE = 1.0

SENSITIVE_HEADERS = ("authorization", "cookie", "stripe-signature", "x-api-key")
SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "apikey", "credentials")

logger = structlog.get_logger()


def configure_logging(
    service_name: str,
    log_level: int | str = logging.INFO,
    json_format: bool | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of the standard logging module.

    Call this once at service startup, AFTER init_sentry().

    Args:
        service_name: Name of the service for log context
        log_level: Minimum log level (default: INFO)
        json_format: Use JSON output (True) or console format (False).
                     If None, JSON everywhere except ENVIRONMENT=development.

    Returns:
        Configured structlog logger
    """
    if json_format is None:
        environment = os.environ.get("ENVIRONMENT", "development")
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
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    processors.extend(_get_sentry_processors())

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


def _get_sentry_processors() -> list[Any]:
    """Get structlog processors that leave breadcrumbs in Sentry."""

    def add_sentry_breadcrumb(
        _logger: Any,
        _method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        standard_keys = {"event", "level", "timestamp", "logger"}
        extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

        sentry_sdk.add_breadcrumb(
            message=str(event_dict.get("event", "")),
            category="log",
            level=event_dict.get("level", "info"),
            data=extra_data if extra_data else None,
        )
        return event_dict

    return [add_sentry_breadcrumb]


@dataclass
class SentryConfig:
    """Configuration for Sentry SDK initialization."""

    service_name: str
    dsn: str | None = None
    environment: str | None = None
    release: str | None = None
    traces_sample_rate: float | None = None
    profiles_sample_rate: float | None = None
    additional_integrations: list[Any] = field(default_factory=list)
    before_send: EventCallback | None = None


def _scrub_event(event: Event) -> Event:
    """Filter credentials out of request headers and extra context."""
    request = event.get("request")
    if request is not None:
        headers = request.get("headers")
        if headers is not None and isinstance(headers, dict):
            for header in list(headers.keys()):
                if header.lower() in SENSITIVE_HEADERS:
                    headers[header] = "[Filtered]"

    extra = event.get("extra")
    if extra is not None and isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                extra[key] = "[Filtered]"
    return event


def init_sentry(service_name: str, config: SentryConfig | None = None) -> bool:
    """
    Initialize Sentry SDK for the service.

    Returns:
        True if Sentry was initialized, False if DSN was not provided
    """
    cfg = config or SentryConfig(service_name=service_name)
    effective_dsn = cfg.dsn or os.environ.get("SENTRY_DSN")
    if not effective_dsn:
        return False

    effective_env = cfg.environment or os.environ.get("ENVIRONMENT", "development")
    is_production = effective_env == "production"

    traces_rate = cfg.traces_sample_rate
    if traces_rate is None:
        traces_rate = DEFAULT_TRACES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE
    profiles_rate = cfg.profiles_sample_rate
    if profiles_rate is None:
        profiles_rate = DEFAULT_PROFILES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE

    integrations: list[Any] = [
        StarletteIntegration(transaction_style="endpoint"),
        FastApiIntegration(transaction_style="endpoint"),
        AsyncioIntegration(),
        # Errors are sent explicitly through capture_critical_error, logs are breadcrumbs only
        LoggingIntegration(level=logging.INFO, event_level=None),
        SqlalchemyIntegration(),
        RedisIntegration(),
        *cfg.additional_integrations,
    ]

    def before_send(event: Event, hint: dict[str, Any]) -> Event | None:
        event = _scrub_event(event)
        if cfg.before_send:
            result = cfg.before_send(cast("dict[str, Any]", event), hint)
            return cast("Event | None", result)
        return event

    def before_send_transaction(event: Event, _hint: dict[str, Any]) -> Event | None:
        if event.get("transaction", "") in ("/health", "/billing/health"):
            return None
        return event

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=cfg.release or f"{service_name}@{os.environ.get('VERSION', '0.1.0')}",
        traces_sample_rate=traces_rate,
        profiles_sample_rate=profiles_rate,
        integrations=integrations,
        before_send=before_send,
        before_send_transaction=before_send_transaction,
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=100,
        server_name=service_name,
        ignore_errors=["asyncio.CancelledError", "KeyboardInterrupt", "SystemExit"],
    )
    sentry_sdk.set_tag("service", service_name)
    return True


# =============================================================================
# Error-tracking sink
# =============================================================================


def _log_fields(extra: dict[str, Any]) -> dict[str, Any]:
    # "event" is structlog's message argument
    return {("webhook_event" if k == "event" else k): v for k, v in extra.items()}


def capture_critical_error(
    message: str,
    error: object | None = None,
    context: dict[str, Any] | None = None,
) -> str | None:
    """Log and report an error that needs investigation.

    `error` may be any value; exceptions are sent with their stack trace,
    anything else is attached as a string.

    Returns:
        The Sentry event ID, or None if not sent
    """
    extra = {k: v for k, v in (context or {}).items() if k != "error"}
    logger.error(
        message, error=str(error) if error is not None else None, **_log_fields(extra)
    )

    with sentry_sdk.isolation_scope() as scope:
        scope.level = "error"
        scope.set_tag("billing.severity", "critical")
        for key, value in extra.items():
            scope.set_extra(key, value)
        if isinstance(error, BaseException):
            scope.set_extra("message", message)
            return sentry_sdk.capture_exception(error)
        if error is not None:
            scope.set_extra("error", str(error))
        return sentry_sdk.capture_message(message)


def capture_warning(
    message: str,
    error: object | None = None,
    context: dict[str, Any] | None = None,
) -> str | None:
    """Log and report a degraded-but-handled condition."""
    extra = {k: v for k, v in (context or {}).items() if k != "error"}
    logger.warning(
        message, error=str(error) if error is not None else None, **_log_fields(extra)
    )

    with sentry_sdk.isolation_scope() as scope:
        scope.level = "warning"
        for key, value in extra.items():
            scope.set_extra(key, value)
        if error is not None:
            scope.set_extra("error", str(error))
        return sentry_sdk.capture_message(message, level="warning")


def flush(timeout: float = 2.0) -> None:
    """Flush pending Sentry events before shutdown."""
    sentry_sdk.flush(timeout=timeout)
