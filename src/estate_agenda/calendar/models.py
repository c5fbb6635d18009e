"""Calendar event records, their sync lifecycle and upstream confirmations."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from estate_agenda.config import DEFAULT_TIMEZONE


class SyncStatus(StrEnum):
    """Lifecycle of a local event relative to the external calendar."""

    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    NEEDS_AUTH = "needs_auth"


_ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.NEEDS_AUTH}),
    SyncStatus.FAILED: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.NEEDS_AUTH}),
    SyncStatus.NEEDS_AUTH: frozenset({SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.NEEDS_AUTH}),
    SyncStatus.SYNCED: frozenset(),
}


class InvalidSyncTransitionError(ValueError):
    """Raised when a row would move between sync states the lifecycle forbids."""

    def __init__(self, source: SyncStatus, target: SyncStatus) -> None:
        self.source = source
        self.target = target
        super().__init__(f"Invalid sync transition: {source} -> {target}")


def can_transition(source: SyncStatus, target: SyncStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[SyncStatus(source)]


def allowed_sources(target: SyncStatus) -> list[SyncStatus]:
    """Statuses a row may currently hold for a move to *target* to be legal."""
    return [source for source, targets in _ALLOWED_TRANSITIONS.items() if target in targets]


def ensure_transition(source: SyncStatus, target: SyncStatus) -> None:
    if not can_transition(source, target):
        raise InvalidSyncTransitionError(SyncStatus(source), SyncStatus(target))


def _require_aware(value: datetime, field_name: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{field_name} must be timezone-aware")
    return value


class CalendarEventCreate(BaseModel):
    """Validated insert payload for a new ``pending`` event row."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    start_date: datetime
    end_date: datetime
    timezone: str = DEFAULT_TIMEZONE
    client_ref: int | None = None
    property_ref: int | None = None
    confirmation_ref: int | None = None
    dedupe_key: str = Field(min_length=1)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("start_date", "end_date")
    @classmethod
    def _aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info.field_name)

    @model_validator(mode="after")
    def _end_after_start(self) -> CalendarEventCreate:
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class CalendarEvent(BaseModel):
    """One ``calendar_events`` row.

    ``start_date`` and ``end_date`` are expressed in the row's own
    ``timezone`` so the wall-clock fields sent to the external calendar match
    what was parsed from the message.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: UUID
    title: str
    description: str | None = None
    location: str | None = None
    start_date: datetime
    end_date: datetime
    timezone: str = DEFAULT_TIMEZONE
    client_ref: int | None = None
    property_ref: int | None = None
    confirmation_ref: int | None = None
    dedupe_key: str
    sync_status: SyncStatus = SyncStatus.PENDING
    external_event_id: str | None = None
    sync_error: str | None = None
    last_sync_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> CalendarEvent:
        data = dict(row)
        tz = ZoneInfo(data.get("timezone") or DEFAULT_TIMEZONE)
        for key in ("start_date", "end_date"):
            value = data.get(key)
            if isinstance(value, datetime) and value.tzinfo is not None:
                data[key] = value.astimezone(tz)
        return cls.model_validate(data)

    @property
    def needs_sync(self) -> bool:
        return self.sync_status is not SyncStatus.SYNCED


class AppointmentConfirmation(BaseModel):
    """Structured confirmation produced by the agency's own confirmation form.

    ``appointment_date`` is the free-text phrase the agent typed, e.g.
    ``"7 giugno 2025 ore 15:00"`` or ``"Lunedì 23/6, ore 18:00"``.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: int
    salutation: str = "Gentile"
    first_name: str | None = None
    last_name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    appointment_date: str = Field(min_length=1)
    address: str | None = None
    client_ref: int | None = None
    property_ref: int | None = None

    @property
    def full_name(self) -> str:
        if self.first_name and self.first_name.strip():
            return f"{self.first_name.strip()} {self.last_name.strip()}"
        return self.last_name.strip()
