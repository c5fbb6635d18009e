"""Durable record of calendar events and their sync lifecycle.

Backed by the ``calendar_events`` table.  Uniqueness on ``dedupe_key`` and on
non-null ``confirmation_ref`` is enforced by the database; a losing concurrent
insert surfaces as :class:`DuplicateEventError` so the caller can fetch the
winning row instead.

State changes go through :meth:`EventStore.transition`, which refuses moves
the sync lifecycle does not allow.  The check is part of the UPDATE itself, so
a stale copy of a row can never demote one that is already ``synced``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

import asyncpg

from estate_agenda.calendar.models import (
    CalendarEvent,
    CalendarEventCreate,
    InvalidSyncTransitionError,
    SyncStatus,
    allowed_sources,
    ensure_transition,
)

logger = logging.getLogger(__name__)

_TABLE = "calendar_events"
_COLUMNS = (
    "id, title, description, location, start_date, end_date, timezone, client_ref, "
    "property_ref, confirmation_ref, dedupe_key, sync_status, external_event_id, "
    "sync_error, last_sync_at, created_at, updated_at"
)
_MAX_LIST_LIMIT = 500


class DuplicateEventError(Exception):
    """Raised when an insert collides with an existing logical appointment."""

    def __init__(self, *, dedupe_key: str, confirmation_ref: int | None, constraint: str | None):
        self.dedupe_key = dedupe_key
        self.confirmation_ref = confirmation_ref
        self.constraint = constraint
        super().__init__(
            f"Calendar event already exists (constraint={constraint}, "
            f"confirmation_ref={confirmation_ref})"
        )


class EventNotFoundError(LookupError):
    """Raised when an event id does not exist."""

    def __init__(self, event_id: UUID | str) -> None:
        self.event_id = event_id
        super().__init__(f"Calendar event not found: {event_id}")


class EventStore:
    """Async accessors for ``calendar_events`` over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def insert(self, payload: CalendarEventCreate) -> CalendarEvent:
        """Insert a new ``pending`` row.

        Raises
        ------
        DuplicateEventError
            If a row with the same ``dedupe_key`` or ``confirmation_ref``
            already exists.
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO {_TABLE}
                        (title, description, location, start_date, end_date, timezone,
                         client_ref, property_ref, confirmation_ref, dedupe_key, sync_status)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    RETURNING {_COLUMNS}
                    """,
                    payload.title,
                    payload.description,
                    payload.location,
                    payload.start_date,
                    payload.end_date,
                    payload.timezone,
                    payload.client_ref,
                    payload.property_ref,
                    payload.confirmation_ref,
                    payload.dedupe_key,
                    SyncStatus.PENDING.value,
                )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateEventError(
                dedupe_key=payload.dedupe_key,
                confirmation_ref=payload.confirmation_ref,
                constraint=getattr(exc, "constraint_name", None),
            ) from exc

        event = CalendarEvent.from_record(row)
        logger.info("Calendar event inserted: id=%s start=%s", event.id, event.start_date)
        return event

    async def transition(
        self,
        event: CalendarEvent,
        target: SyncStatus,
        *,
        external_event_id: str | None = None,
        sync_error: str | None = None,
    ) -> CalendarEvent:
        """Move *event* to *target*, stamping sync metadata.

        ``synced`` records the external id and ``last_sync_at`` and clears any
        previous error; ``failed``/``needs_auth`` record *sync_error*.

        The lifecycle is checked against the row as stored, not against the
        possibly stale *event*: when a concurrent call has already synced the
        row, the UPDATE matches nothing and the synced row is returned as is.

        Raises
        ------
        InvalidSyncTransitionError
            If the lifecycle forbids ``event.sync_status -> target`` (or the
            stored status has meanwhile moved somewhere *target* is illegal).
        EventNotFoundError
            If the row disappeared underneath us.
        """
        ensure_transition(event.sync_status, target)
        sources = [status.value for status in allowed_sources(target)]

        async with self.pool.acquire() as conn:
            if target is SyncStatus.SYNCED:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {_TABLE}
                    SET sync_status = $2,
                        external_event_id = $3,
                        sync_error = NULL,
                        last_sync_at = now(),
                        updated_at = now()
                    WHERE id = $1 AND sync_status = ANY($4::text[])
                    RETURNING {_COLUMNS}
                    """,
                    event.id,
                    target.value,
                    external_event_id,
                    sources,
                )
            else:
                row = await conn.fetchrow(
                    f"""
                    UPDATE {_TABLE}
                    SET sync_status = $2,
                        sync_error = $3,
                        updated_at = now()
                    WHERE id = $1 AND sync_status = ANY($4::text[])
                    RETURNING {_COLUMNS}
                    """,
                    event.id,
                    target.value,
                    sync_error,
                    sources,
                )
            if row is None:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM {_TABLE} WHERE id = $1", event.id
                )
                if row is None:
                    raise EventNotFoundError(event.id)
                current = CalendarEvent.from_record(row)
                if current.sync_status is SyncStatus.SYNCED:
                    logger.info(
                        "Calendar event %s already synced by a concurrent call; keeping it",
                        event.id,
                    )
                    return current
                raise InvalidSyncTransitionError(current.sync_status, target)

        updated = CalendarEvent.from_record(row)
        logger.info(
            "Calendar event %s sync status %s -> %s", event.id, event.sync_status, target
        )
        return updated

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def _fetch_one(self, where: str, value: object) -> CalendarEvent | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM {_TABLE} WHERE {where}", value)
        return CalendarEvent.from_record(row) if row is not None else None

    async def get(self, event_id: UUID) -> CalendarEvent | None:
        return await self._fetch_one("id = $1", event_id)

    async def get_by_confirmation_ref(self, confirmation_ref: int) -> CalendarEvent | None:
        return await self._fetch_one("confirmation_ref = $1", confirmation_ref)

    async def get_by_dedupe_key(self, dedupe_key: str) -> CalendarEvent | None:
        return await self._fetch_one("dedupe_key = $1", dedupe_key)

    async def list_events(
        self,
        *,
        status: SyncStatus | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
    ) -> list[CalendarEvent]:
        """List events ordered by ``start_date``, optionally filtered.

        *start*/*end* bound ``start_date`` (inclusive / exclusive).
        """
        if limit <= 0:
            raise ValueError("limit must be a positive integer")
        limit = min(limit, _MAX_LIST_LIMIT)

        clauses: list[str] = []
        args: list[object] = []
        if status is not None:
            args.append(SyncStatus(status).value)
            clauses.append(f"sync_status = ${len(args)}")
        if start is not None:
            args.append(start)
            clauses.append(f"start_date >= ${len(args)}")
        if end is not None:
            args.append(end)
            clauses.append(f"start_date < ${len(args)}")
        args.append(limit)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {_COLUMNS} FROM {_TABLE} {where} "
                f"ORDER BY start_date, created_at LIMIT ${len(args)}",
                *args,
            )
        return [CalendarEvent.from_record(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Row counts per sync status; every status is present, zero included."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT sync_status, count(*) AS n FROM {_TABLE} GROUP BY sync_status"
            )
        counts = {status.value: 0 for status in SyncStatus}
        for row in rows:
            counts[row["sync_status"]] = int(row["n"])
        return counts
