"""Request/response models for the agenda API."""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from estate_agenda.calendar.models import CalendarEvent


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to list responses."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """``{"data": T, "meta": {...}}``"""

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class ConfirmationMessageRequest(BaseModel):
    """An inbound free-text confirmation (e.g. a WhatsApp message)."""

    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1)
    sender: str = Field(min_length=1)
    confirmation_ref: int | None = None

    @field_validator("sender")
    @classmethod
    def _strip_sender(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("sender must be a non-empty string")
        return normalized


class ConfirmationResult(BaseModel):
    """``created`` is true when an event row exists for the confirmation.

    Duplicates return the existing row, so ``created`` means "the appointment
    is in the local store", not "a new row was inserted".
    """

    created: bool
    event: CalendarEvent | None = None


class CalendarStatus(BaseModel):
    configured: bool
    calendar_id: str
    timezone: str
    counts: dict[str, int]


class OAuthStartResponse(BaseModel):
    """Returned by the start endpoint when ``redirect=false``."""

    authorization_url: str
    state: str


class OAuthCallbackSuccess(BaseModel):
    success: bool = True
    message: str = "Google Calendar authorized. Calendar sync is enabled."
    provider: str = "google"
    scope: str | None = None


class OAuthCallbackError(BaseModel):
    """Callback failure payload; messages never carry secrets or raw provider text."""

    success: bool = False
    error_code: str
    message: str
    provider: str = "google"
