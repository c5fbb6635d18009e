"""Shared fixtures for the estate-agenda test suite.

- ``make_pool()``: asyncpg pool double whose ``acquire()`` yields ``pool._conn``.
- ``FakeEventStore`` / ``FakeTokenStore``: in-memory stand-ins with the same
  uniqueness and lifecycle rules as the PostgreSQL-backed stores.
- ``postgres_container`` / ``provisioned_postgres_pool``: Docker-gated
  testcontainer fixtures; each usage gets a freshly migrated database.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID
from zoneinfo import ZoneInfo

import pytest

from estate_agenda.calendar.credentials import StoredRefreshToken
from estate_agenda.calendar.models import (
    CalendarEvent,
    CalendarEventCreate,
    InvalidSyncTransitionError,
    SyncStatus,
    allowed_sources,
    ensure_transition,
)
from estate_agenda.calendar.store import DuplicateEventError

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

ROME = ZoneInfo("Europe/Rome")
# Thursday 5 June 2025, 09:00 local
FIXED_NOW = datetime(2025, 6, 5, 9, 0, tzinfo=ROME)


def make_pool(conn: AsyncMock | None = None) -> MagicMock:
    """asyncpg pool double; the connection is exposed as ``pool._conn``."""
    conn = conn or AsyncMock()

    @asynccontextmanager
    async def _acquire():
        yield conn

    pool = MagicMock()
    pool.acquire = _acquire
    pool._conn = conn
    return pool


def make_event_row(**overrides: Any) -> dict[str, Any]:
    """A ``calendar_events`` row as asyncpg would return it (UTC timestamps)."""
    start = datetime(2025, 6, 10, 14, 0, tzinfo=UTC)
    row: dict[str, Any] = {
        "id": uuid.uuid4(),
        "title": "Rossi - 393331234567",
        "description": "Appuntamento",
        "location": "Via Roma 5",
        "start_date": start,
        "end_date": start + timedelta(hours=1),
        "timezone": "Europe/Rome",
        "client_ref": None,
        "property_ref": None,
        "confirmation_ref": None,
        "dedupe_key": "a" * 64,
        "sync_status": "pending",
        "external_event_id": None,
        "sync_error": None,
        "last_sync_at": None,
        "created_at": start - timedelta(days=5),
        "updated_at": start - timedelta(days=5),
    }
    row.update(overrides)
    return row


def make_event(**overrides: Any) -> CalendarEvent:
    return CalendarEvent.from_record(make_event_row(**overrides))


class FakeEventStore:
    """In-memory ``EventStore`` honouring the unique keys and the lifecycle."""

    def __init__(self) -> None:
        self.rows: dict[UUID, CalendarEvent] = {}
        self.insert_calls = 0

    async def insert(self, payload: CalendarEventCreate) -> CalendarEvent:
        self.insert_calls += 1
        for row in self.rows.values():
            if row.dedupe_key == payload.dedupe_key:
                raise DuplicateEventError(
                    dedupe_key=payload.dedupe_key,
                    confirmation_ref=payload.confirmation_ref,
                    constraint="calendar_events_dedupe_key_key",
                )
            if (
                payload.confirmation_ref is not None
                and row.confirmation_ref == payload.confirmation_ref
            ):
                raise DuplicateEventError(
                    dedupe_key=payload.dedupe_key,
                    confirmation_ref=payload.confirmation_ref,
                    constraint="uq_calendar_events_confirmation_ref",
                )
        now = datetime.now(UTC)
        event = CalendarEvent(
            id=uuid.uuid4(),
            **payload.model_dump(),
            sync_status=SyncStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.rows[event.id] = event
        return event

    async def transition(
        self,
        event: CalendarEvent,
        target: SyncStatus,
        *,
        external_event_id: str | None = None,
        sync_error: str | None = None,
    ) -> CalendarEvent:
        ensure_transition(event.sync_status, target)
        current = self.rows[event.id]
        if current.sync_status not in allowed_sources(target):
            if current.sync_status is SyncStatus.SYNCED:
                return current
            raise InvalidSyncTransitionError(current.sync_status, target)
        now = datetime.now(UTC)
        if target is SyncStatus.SYNCED:
            update = {
                "sync_status": target,
                "external_event_id": external_event_id,
                "sync_error": None,
                "last_sync_at": now,
                "updated_at": now,
            }
        else:
            update = {"sync_status": target, "sync_error": sync_error, "updated_at": now}
        updated = current.model_copy(update=update)
        self.rows[event.id] = updated
        return updated

    async def get(self, event_id: UUID) -> CalendarEvent | None:
        return self.rows.get(event_id)

    async def get_by_confirmation_ref(self, confirmation_ref: int) -> CalendarEvent | None:
        return next(
            (row for row in self.rows.values() if row.confirmation_ref == confirmation_ref), None
        )

    async def get_by_dedupe_key(self, dedupe_key: str) -> CalendarEvent | None:
        return next((row for row in self.rows.values() if row.dedupe_key == dedupe_key), None)

    async def list_events(self, *, status=None, start=None, end=None, limit=100):
        rows = sorted(self.rows.values(), key=lambda row: row.start_date)
        if status is not None:
            rows = [row for row in rows if row.sync_status == status]
        return rows[:limit]

    async def count_by_status(self) -> dict[str, int]:
        counts = {status.value: 0 for status in SyncStatus}
        for row in self.rows.values():
            counts[row.sync_status.value] += 1
        return counts


class FakeTokenStore:
    """In-memory ``OAuthTokenStore``."""

    def __init__(self, refresh_token: str | None = None, *, service: str = "google_calendar"):
        self.service = service
        self.stored: StoredRefreshToken | None = (
            StoredRefreshToken(service=service, refresh_token=refresh_token)
            if refresh_token
            else None
        )
        self.delete_calls = 0

    async def load(self) -> StoredRefreshToken | None:
        return self.stored

    async def save(self, refresh_token: str, *, scope: str | None = None) -> StoredRefreshToken:
        self.stored = StoredRefreshToken(
            service=self.service, refresh_token=refresh_token, scope=scope
        )
        return self.stored

    async def delete(self, *, refresh_token: str | None = None) -> bool:
        self.delete_calls += 1
        if self.stored is None:
            return False
        if refresh_token is not None and self.stored.refresh_token != refresh_token:
            return False
        self.stored = None
        return True


# ---------------------------------------------------------------------------
# PostgreSQL testcontainer
# ---------------------------------------------------------------------------


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """One Postgres container per session; every usage gets its own database."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for one test.

    Usage::

        async with provisioned_postgres_pool() as pool:
            ...
    """
    from estate_agenda.db import Database
    from estate_agenda.migrations import run_migrations

    @asynccontextmanager
    async def _provision(*, max_pool_size: int = 3) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        await run_migrations(db.url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
