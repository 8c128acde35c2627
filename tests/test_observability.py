"""Tests for logging and Sentry setup."""

import logging
from collections.abc import Iterator
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import structlog

from workspace_credits.config import Settings
from workspace_credits.observability import (
    DEFAULT_TRACES_SAMPLE_RATE,
    DEV_TRACES_SAMPLE_RATE,
    _get_sentry_processors,
    _scrub_event,
    capture_exception,
    configure_logging,
    init_sentry,
    setup_observability,
)


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo global logging configuration after the test."""
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
    structlog.reset_defaults()


def make_settings(**overrides: Any) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_level_comes_from_settings(self, restore_logging: None) -> None:
        """Test LOG_LEVEL sets the root level when no level is passed."""
        configure_logging("credits-test", settings=make_settings(LOG_LEVEL="warning"))

        root_logger = logging.getLogger()
        assert root_logger.level == logging.WARNING
        assert len(root_logger.handlers) == 1

    def test_explicit_level_wins(self, restore_logging: None) -> None:
        """Test an explicit level overrides LOG_LEVEL."""
        configure_logging(
            "credits-test", logging.DEBUG, settings=make_settings(LOG_LEVEL="ERROR")
        )
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self, restore_logging: None) -> None:
        """Test an unknown level name means INFO."""
        configure_logging("credits-test", "chatty", json_format=False, settings=make_settings())
        assert logging.getLogger().level == logging.INFO

    @pytest.mark.parametrize(
        ("environment", "renderer"),
        [
            ("development", structlog.dev.ConsoleRenderer),
            ("production", structlog.processors.JSONRenderer),
        ],
    )
    def test_renderer_follows_environment(
        self, restore_logging: None, environment: str, renderer: type
    ) -> None:
        """Test JSON output is used outside development."""
        configure_logging("credits-test", settings=make_settings(ENVIRONMENT=environment))

        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], renderer)

    def test_reconfiguring_replaces_handlers(self, restore_logging: None) -> None:
        """Test repeated calls do not duplicate output."""
        configure_logging("credits-test", json_format=True, settings=make_settings())
        configure_logging("credits-test", json_format=True, settings=make_settings())
        assert len(logging.getLogger().handlers) == 1


class TestSentryProcessors:
    """Tests for the breadcrumb processor and event scrubbing."""

    @patch("workspace_credits.observability.sentry_sdk.add_breadcrumb")
    def test_breadcrumb_carries_extra_fields(self, mock_add_breadcrumb: MagicMock) -> None:
        """Test log events become breadcrumbs with their context."""
        [processor] = _get_sentry_processors()
        event = {"event": "Reserved credits", "level": "info", "workspace_id": "ws-1"}

        assert processor(None, "info", event) is event
        mock_add_breadcrumb.assert_called_once_with(
            message="Reserved credits",
            category="log",
            level="info",
            data={"workspace_id": "ws-1"},
        )

    def test_scrub_event_filters_sensitive_extra(self) -> None:
        """Test secrets never leave in extra context."""
        event: dict[str, Any] = {"extra": {"api_key": "sk-123", "workspace_id": "ws-1"}}

        scrubbed = _scrub_event(event, {})

        assert scrubbed["extra"] == {"api_key": "[Filtered]", "workspace_id": "ws-1"}


class TestInitSentry:
    """Tests for init_sentry."""

    def test_init_without_dsn_returns_false(self) -> None:
        """Test that init without DSN returns False."""
        assert init_sentry("credits-test", settings=make_settings(SENTRY_DSN=None)) is False

    @patch("workspace_credits.observability.sentry_sdk.init")
    @patch("workspace_credits.observability.sentry_sdk.set_tag")
    def test_init_with_dsn(self, mock_set_tag: MagicMock, mock_init: MagicMock) -> None:
        """Test that init with DSN configures the SDK."""
        result = init_sentry(
            "credits-test",
            dsn="https://key@sentry.io/123",
            environment="production",
            settings=make_settings(),
        )

        assert result is True
        call_kwargs = mock_init.call_args[1]
        assert call_kwargs["traces_sample_rate"] == DEFAULT_TRACES_SAMPLE_RATE
        assert call_kwargs["environment"] == "production"
        assert call_kwargs["send_default_pii"] is False
        mock_set_tag.assert_called_with("service", "credits-test")

    @patch("workspace_credits.observability.sentry_sdk.init")
    @patch("workspace_credits.observability.sentry_sdk.set_tag")
    def test_init_from_settings(self, mock_set_tag: MagicMock, mock_init: MagicMock) -> None:
        """Test that DSN, environment and release default to settings."""
        settings = make_settings(SENTRY_DSN="https://env@sentry.io/456", VERSION="1.2.3")

        assert init_sentry("credits-test", settings=settings) is True

        call_kwargs = mock_init.call_args[1]
        assert call_kwargs["dsn"] == "https://env@sentry.io/456"
        assert call_kwargs["environment"] == "development"
        assert call_kwargs["release"] == "credits-test@1.2.3"
        assert call_kwargs["traces_sample_rate"] == DEV_TRACES_SAMPLE_RATE


class TestSetupObservability:
    """Tests for setup_observability."""

    @patch("workspace_credits.observability.sentry_sdk.init")
    @patch("workspace_credits.observability.sentry_sdk.set_tag")
    def test_initializes_sentry_then_logging(
        self, mock_set_tag: MagicMock, mock_init: MagicMock, restore_logging: None
    ) -> None:
        """Test both are configured from the same settings."""
        settings = make_settings(
            SENTRY_DSN="https://key@sentry.io/1", LOG_LEVEL="ERROR", ENVIRONMENT="production"
        )

        logger = setup_observability("credits-test", settings)

        assert logger is not None
        mock_init.assert_called_once()
        assert logging.getLogger().level == logging.ERROR


class TestCaptureException:
    """Tests for capture_exception."""

    @patch("workspace_credits.observability.sentry_sdk.capture_exception")
    @patch("workspace_credits.observability.sentry_sdk.isolation_scope")
    def test_attaches_tags_and_extra(
        self, mock_scope_factory: MagicMock, mock_capture: MagicMock
    ) -> None:
        """Test context is set on an isolated scope."""
        scope = MagicMock()
        mock_scope_factory.return_value.__enter__.return_value = scope
        mock_capture.return_value = "event-123"
        error = RuntimeError("commit failed")

        event_id = capture_exception(
            error,
            tags={"component": "ledger"},
            extra={"request_id": "req-1"},
            level="fatal",
        )

        assert event_id == "event-123"
        scope.set_tag.assert_called_once_with("component", "ledger")
        scope.set_extra.assert_called_once_with("request_id", "req-1")
        assert scope.level == "fatal"
        mock_capture.assert_called_once_with(error)
