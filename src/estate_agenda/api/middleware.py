"""API error handling: domain exceptions become ``{"error": {...}}`` payloads.

Status code mapping:
- ``EventNotFoundError`` → 404 Not Found
- ``CalendarCredentialError`` → 503 Service Unavailable
- ``ValueError`` → 400 Bad Request
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from estate_agenda.api.models import ErrorDetail, ErrorResponse
from estate_agenda.calendar.google import CalendarCredentialError
from estate_agenda.calendar.store import EventNotFoundError

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_event_not_found(request: Request, exc: EventNotFoundError) -> JSONResponse:
    logger.info("Calendar event not found: %s", exc.event_id)
    return _error(404, "EVENT_NOT_FOUND", str(exc))


async def _handle_credential_error(
    request: Request, exc: CalendarCredentialError
) -> JSONResponse:
    logger.warning("Calendar credentials unavailable: %s", exc)
    return _error(503, "CALENDAR_NOT_CONFIGURED", str(exc))


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Turn any unhandled exception into the standard 500 envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EventNotFoundError, _handle_event_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(CalendarCredentialError, _handle_credential_error)  # type: ignore[arg-type]
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
