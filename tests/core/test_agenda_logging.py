"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags
from structlog.contextvars import bound_contextvars

from estate_agenda.core.logging import (
    _NOISE_LOGGERS,
    REDACTED,
    _service_context,
    add_otel_context,
    add_service_context,
    configure_logging,
    get_service_context,
    redact_credentials,
    set_service_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and service context between tests."""
    token = _service_context.set(None)
    yield
    _service_context.reset(token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    for name in _NOISE_LOGGERS:
        logging.getLogger(name).handlers.clear()


def _file_handlers(logger: logging.Logger) -> list[logging.FileHandler]:
    return [h for h in logger.handlers if isinstance(h, logging.FileHandler)]


class TestServiceContext:
    def test_set_and_get(self):
        set_service_context("agenda")
        assert get_service_context() == "agenda"

    def test_default_is_none(self):
        assert get_service_context() is None

    def test_processor_injects_service(self):
        set_service_context("agenda")
        assert add_service_context(None, "info", {"event": "x"})["service"] == "agenda"


class TestAddOtelContext:
    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_ids_from_active_span(self):
        span = NonRecordingSpan(
            SpanContext(
                trace_id=0x1234,
                span_id=0xABCD,
                is_remote=False,
                trace_flags=TraceFlags(TraceFlags.SAMPLED),
            )
        )
        with trace.use_span(span):
            result = add_otel_context(None, "info", {"event": "test"})

        assert result["trace_id"] == f"{0x1234:032x}"
        assert result["span_id"] == f"{0xABCD:016x}"


class TestRedactCredentials:
    def test_masks_sensitive_keys(self):
        result = redact_credentials(
            None, "info", {"event": "x", "refresh_token": "1//abc", "client_secret": "s"}
        )
        assert result["refresh_token"] == REDACTED
        assert result["client_secret"] == REDACTED
        assert result["event"] == "x"

    def test_leaves_empty_values(self):
        assert redact_credentials(None, "info", {"token": None})["token"] is None


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_sets_service_context(self):
        configure_logging(service_name="estate-agenda")
        assert get_service_context() == "estate-agenda"

    def test_noise_loggers_suppressed(self):
        configure_logging()
        assert logging.getLogger("httpx").level >= logging.WARNING
        assert logging.getLogger("uvicorn.access").level >= logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG


class TestLogDirectoryStructure:
    def test_creates_subdirectories(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="agenda")
        assert (tmp_path / "agenda").is_dir()
        assert (tmp_path / "uvicorn").is_dir()

    def test_application_log_file(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="agenda")
        handlers = _file_handlers(logging.getLogger())
        assert len(handlers) == 1
        assert handlers[0].baseFilename.endswith("agenda/agenda.log")

    def test_uvicorn_log_file(self, tmp_path: Path):
        configure_logging(log_root=tmp_path, service_name="agenda")
        handlers = _file_handlers(logging.getLogger("uvicorn.access"))
        assert handlers[0].baseFilename.endswith("uvicorn/agenda.log")

    def test_file_output_is_json_with_context(self, tmp_path: Path):
        configure_logging(fmt="text", log_root=tmp_path, service_name="agenda")
        logger = logging.getLogger("estate_agenda.test")

        with bound_contextvars(sender="393331234567", confirmation_ref=7):
            logger.info("confirmation %s", "received", extra={"refresh_token": "1//abc"})

        line = (tmp_path / "agenda" / "agenda.log").read_text().strip().splitlines()[-1]
        data = json.loads(line)
        assert data["event"] == "confirmation received"
        assert data["service"] == "agenda"
        assert data["sender"] == "393331234567"
        assert data["confirmation_ref"] == 7
        assert data["refresh_token"] == REDACTED
        assert "1//abc" not in line
