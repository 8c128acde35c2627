"""Logging and Sentry setup for services embedding the credit ledger.

Both are driven by :class:`~workspace_credits.config.Settings`: LOG_LEVEL and
ENVIRONMENT pick the log level and renderer, SENTRY_DSN and VERSION configure
error reporting. Call :func:`setup_observability` once at startup.
"""

import logging
import sys
from typing import Any, cast

import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from workspace_credits.config import Settings, get_settings

DEFAULT_TRACES_SAMPLE_RATE = 0.2
DEV_TRACES_SAMPLE_RATE = 1.0

# Keys never forwarded to Sentry as extra context
SENSITIVE_KEYS = ("password", "token", "secret", "api_key", "apikey", "credentials")


def setup_observability(
    service_name: str,
    settings: Settings | None = None,
) -> structlog.stdlib.BoundLogger:
    """Initialize Sentry, then logging, from settings.

    Returns:
        Logger bound to ``service_name``
    """
    settings = settings or get_settings()
    init_sentry(service_name, settings=settings)
    return configure_logging(service_name, settings=settings)


def _resolve_level(log_level: int | str) -> int:
    if isinstance(log_level, int):
        return log_level
    return logging.getLevelNamesMapping().get(log_level.upper(), logging.INFO)


def _build_processors(json_format: bool) -> list[Any]:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_format
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        *_get_sentry_processors(),
        renderer,
    ]


def configure_logging(
    service_name: str,
    log_level: int | str | None = None,
    json_format: bool | None = None,
    settings: Settings | None = None,
) -> structlog.stdlib.BoundLogger:
    """
    Route structlog through stdlib logging on stdout.

    Args:
        service_name: Logger name bound to the returned logger
        log_level: Minimum level, name or number (defaults to LOG_LEVEL)
        json_format: JSON output (True) or console output (False); defaults
            to JSON outside the development environment
        settings: Settings (defaults to the cached settings)

    Returns:
        Configured structlog logger
    """
    settings = settings or get_settings()
    level = _resolve_level(settings.LOG_LEVEL if log_level is None else log_level)
    if json_format is None:
        json_format = settings.ENVIRONMENT != "development"

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    # Replacing the handlers keeps reconfiguration from duplicating output
    root_logger = logging.getLogger()
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(level)

    structlog.configure(
        processors=_build_processors(json_format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return cast("structlog.stdlib.BoundLogger", structlog.get_logger(service_name))


def _get_sentry_processors() -> list[Any]:
    """Get structlog processors that mirror log events as Sentry breadcrumbs."""

    def add_sentry_breadcrumb(
        _logger: Any,
        _method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        level = event_dict.get("level", "info")
        message = event_dict.get("event", "")
        standard_keys = {"event", "level", "timestamp", "logger"}
        extra_data = {k: v for k, v in event_dict.items() if k not in standard_keys}

        sentry_sdk.add_breadcrumb(
            message=str(message),
            category="log",
            level=level,
            data=extra_data if extra_data else None,
        )
        return event_dict

    return [add_sentry_breadcrumb]


def _scrub_event(event: Any, _hint: dict[str, Any]) -> Any:
    extra = event.get("extra")
    if extra is not None and isinstance(extra, dict):
        for key in list(extra.keys()):
            if any(sensitive in key.lower() for sensitive in SENSITIVE_KEYS):
                extra[key] = "[Filtered]"
    return event


def init_sentry(
    service_name: str,
    dsn: str | None = None,
    environment: str | None = None,
    release: str | None = None,
    settings: Settings | None = None,
) -> bool:
    """
    Initialize the Sentry SDK.

    Args:
        service_name: Name of the service, used as server name and tag
        dsn: Sentry DSN (defaults to SENTRY_DSN)
        environment: Deployment environment (defaults to ENVIRONMENT)
        release: Release identifier (defaults to ``<service>@<VERSION>``)
        settings: Settings (defaults to the cached settings)

    Returns:
        True if Sentry was initialized, False if no DSN was provided
    """
    settings = settings or get_settings()
    effective_dsn = dsn or settings.SENTRY_DSN
    if not effective_dsn:
        return False

    effective_env = environment or settings.ENVIRONMENT
    is_production = effective_env == "production"

    sentry_sdk.init(
        dsn=effective_dsn,
        environment=effective_env,
        release=release or f"{service_name}@{settings.VERSION}",
        traces_sample_rate=DEFAULT_TRACES_SAMPLE_RATE if is_production else DEV_TRACES_SAMPLE_RATE,
        integrations=[
            AsyncioIntegration(),
            RedisIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        before_send=_scrub_event,
        send_default_pii=False,
        attach_stacktrace=True,
        server_name=service_name,
        ignore_errors=["asyncio.CancelledError", "KeyboardInterrupt", "SystemExit"],
    )
    sentry_sdk.set_tag("service", service_name)
    return True


def capture_exception(
    error: Exception,
    *,
    tags: dict[str, str] | None = None,
    extra: dict[str, Any] | None = None,
    level: str | None = None,
) -> str | None:
    """
    Capture an exception and send it to Sentry.

    Args:
        error: The exception to capture
        tags: Additional tags to attach to the event
        extra: Additional context data
        level: Override the severity level

    Returns:
        The Sentry event ID, or None if not sent
    """
    with sentry_sdk.isolation_scope() as scope:
        if tags:
            for key, value in tags.items():
                scope.set_tag(key, value)
        if extra:
            for key, value in extra.items():
                scope.set_extra(key, value)
        if level:
            scope.level = level

        return sentry_sdk.capture_exception(error)
