"""Structured logging for the agenda service.

structlog's ProcessorFormatter sits on the root stdlib handler, so every
``logging.getLogger(__name__)`` call site gets structured output for free.

Two output formats:
- ``text``: human-readable console output (dev default)
- ``json``: JSON lines (production / log aggregation)

Every record carries the service name, any context bound with
:func:`structlog.contextvars.bound_contextvars` (``sender``,
``confirmation_ref``, ``event_id`` ...) and the current OTel trace ids.
Values under credential-looking keys are masked before rendering.

Log directory layout (when ``log_root`` is set)::

    logs/
      agenda/           # application logs (JSON)
        estate-agenda.log
      uvicorn/          # HTTP server logs (JSON)
        estate-agenda.log
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_service_context: ContextVar[str | None] = ContextVar("service_name", default=None)

REDACTED = "[REDACTED]"

# Keys whose values must never reach a log sink.
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "refresh_token",
        "client_secret",
        "authorization",
        "code",
        "token",
    }
)


def set_service_context(name: str) -> None:
    """Set the service name for the current async context."""
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


# ---------------------------------------------------------------------------
# Structlog processors
# ---------------------------------------------------------------------------


def add_service_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``service`` from the ContextVar into the event dict."""
    event_dict["service"] = _service_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


def redact_credentials(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Mask values stored under :data:`SENSITIVE_KEYS`."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


# ---------------------------------------------------------------------------
# Noise suppression
# ---------------------------------------------------------------------------

_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "alembic.runtime.migration",
)

_DIR_AGENDA = "agenda"
_DIR_UVICORN = "uvicorn"


def _build_processors(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_credentials,
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | str | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for console rendering, ``"json"`` for JSON lines.
    log_root:
        When set, application logs go to ``{log_root}/agenda/{service}.log``
        and HTTP server logs to ``{log_root}/uvicorn/{service}.log``.
    service_name:
        Service identity, stamped on every record and used for file naming.
    """
    if service_name:
        set_service_context(service_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Reconfiguration must not duplicate output
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        log_name = service_name or "estate-agenda"

        for subdir in (_DIR_AGENDA, _DIR_UVICORN):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(_make_file_handler(log_root / _DIR_AGENDA / f"{log_name}.log", file_processors))

        uvicorn_handler = _make_file_handler(
            log_root / _DIR_UVICORN / f"{log_name}.log", file_processors
        )
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(uvicorn_handler)

    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
