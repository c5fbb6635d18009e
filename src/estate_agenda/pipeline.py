"""Confirmation pipeline: inbound message -> at most one synced calendar event.

Flow for one message:

1. extract an appointment (``None`` means "not a confirmation": no-op);
2. derive the event (title, duration, location) and its dedupe key;
3. look for the same logical appointment by ``confirmation_ref`` then by
   dedupe key; a hit in ``failed``/``needs_auth`` is resynced in place;
4. otherwise insert a ``pending`` row and sync it immediately.

A lost insert race (unique violation) is handled like step 3.  The returned
row may be in any sync state; calendar problems never raise to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

import httpx
from structlog.contextvars import bound_contextvars

from estate_agenda.calendar.credentials import OAuthTokenStore
from estate_agenda.calendar.idempotency import derive_dedupe_key, find_existing
from estate_agenda.calendar.models import (
    AppointmentConfirmation,
    CalendarEvent,
    CalendarEventCreate,
    SyncStatus,
)
from estate_agenda.calendar.store import DuplicateEventError, EventNotFoundError, EventStore
from estate_agenda.calendar.sync import SyncEngineState, load_engine_state, sync_event
from estate_agenda.config import AgendaConfig
from estate_agenda.parsing.extractor import (
    ADDRESS_UNSPECIFIED,
    AppointmentData,
    AppointmentExtractor,
)
from estate_agenda.parsing.temporal import resolve_phrase

logger = logging.getLogger(__name__)

MESSAGE_EVENT_DESCRIPTION = "Appuntamento per visita immobile - Estratto automaticamente da WhatsApp"

_RESYNCABLE = frozenset({SyncStatus.FAILED, SyncStatus.NEEDS_AUTH})


class ConfirmationPipeline:
    """The single entry point used by message ingestion and the HTTP surface."""

    def __init__(
        self,
        *,
        store: EventStore,
        token_store: OAuthTokenStore,
        config: AgendaConfig,
        http_client: httpx.AsyncClient,
        extractor: AppointmentExtractor | None = None,
        state: SyncEngineState | None = None,
    ) -> None:
        self.store = store
        self.token_store = token_store
        self.config = config
        self._http_client = http_client
        self.extractor = extractor or AppointmentExtractor(
            timezone=config.calendar.timezone,
            rollover_days=config.pipeline.past_date_rollover_days,
            denylist=config.pipeline.test_denylist,
        )
        self._state = state or SyncEngineState.unconfigured()

    @property
    def state(self) -> SyncEngineState:
        return self._state

    async def reinitialize(self) -> SyncEngineState:
        """Reload the stored credential, e.g. after a new OAuth grant."""
        self._state = await load_engine_state(
            self.token_store, self.config.calendar, http_client=self._http_client
        )
        return self._state

    # ------------------------------------------------------------------
    # Inbound confirmations
    # ------------------------------------------------------------------

    async def handle_confirmation(
        self,
        text: str,
        sender: str,
        confirmation_ref: int | None = None,
        *,
        now: datetime | None = None,
    ) -> CalendarEvent | None:
        """Turn one free-text confirmation into a calendar event.

        Returns ``None`` when the message is not an appointment (or is a
        denylisted test fixture); no row is created in that case.
        """
        with bound_contextvars(sender=sender, confirmation_ref=confirmation_ref):
            appointment = self.extractor.extract(text, sender, now=now)
            if appointment is None:
                logger.info("Message is not an appointment confirmation; ignoring")
                return None
            return await self._create_or_resync(
                self.build_message_event(appointment, confirmation_ref=confirmation_ref)
            )

    async def handle_confirmation_record(
        self,
        record: AppointmentConfirmation,
        *,
        now: datetime | None = None,
    ) -> CalendarEvent | None:
        """Turn a structured confirmation-form record into a calendar event.

        Returns ``None`` when ``record.appointment_date`` cannot be resolved.
        """
        with bound_contextvars(sender=record.phone, confirmation_ref=record.id):
            start = resolve_phrase(
                record.appointment_date,
                now=now,
                timezone=self.config.calendar.timezone,
                rollover_days=self.config.pipeline.past_date_rollover_days,
            )
            if start is None:
                logger.warning(
                    "Cannot parse appointment date %r; no event created", record.appointment_date
                )
                return None
            return await self._create_or_resync(self.build_record_event(record, start))

    # ------------------------------------------------------------------
    # Event construction
    # ------------------------------------------------------------------

    def build_message_event(
        self, appointment: AppointmentData, *, confirmation_ref: int | None = None
    ) -> CalendarEventCreate:
        title = f"{appointment.client_name} - {appointment.phone}"
        location = appointment.address if appointment.has_address else None
        start = appointment.appointment_start
        return CalendarEventCreate(
            title=title,
            description=(
                f"{MESSAGE_EVENT_DESCRIPTION}\n"
                f"Cliente: {appointment.salutation} {appointment.client_name}"
            ),
            location=location,
            start_date=start,
            end_date=start + timedelta(minutes=self.config.pipeline.message_event_minutes),
            timezone=self.config.calendar.timezone,
            confirmation_ref=confirmation_ref,
            dedupe_key=derive_dedupe_key(title, start, location),
        )

    def build_record_event(
        self, record: AppointmentConfirmation, start: datetime
    ) -> CalendarEventCreate:
        full_name = record.full_name
        title = f"{full_name} - {record.phone}"
        location = (record.address or "").strip() or None
        return CalendarEventCreate(
            title=title,
            description=(
                f"Appuntamento confermato con {record.salutation} {full_name}\n"
                f"Telefono: {record.phone}\n"
                f"Indirizzo: {location or ADDRESS_UNSPECIFIED}"
            ),
            location=location,
            start_date=start,
            end_date=start + timedelta(minutes=self.config.pipeline.confirmation_event_minutes),
            timezone=self.config.calendar.timezone,
            client_ref=record.client_ref,
            property_ref=record.property_ref,
            confirmation_ref=record.id,
            dedupe_key=derive_dedupe_key(title, start, location),
        )

    # ------------------------------------------------------------------
    # Idempotent create
    # ------------------------------------------------------------------

    async def _create_or_resync(self, payload: CalendarEventCreate) -> CalendarEvent:
        existing = await find_existing(
            self.store,
            confirmation_ref=payload.confirmation_ref,
            dedupe_key=payload.dedupe_key,
        )
        if existing is not None:
            return await self._resync_duplicate(existing)

        try:
            event = await self.store.insert(payload)
        except DuplicateEventError as exc:
            logger.info("Concurrent insert detected (%s); using the existing row", exc.constraint)
            existing = await find_existing(
                self.store,
                confirmation_ref=payload.confirmation_ref,
                dedupe_key=payload.dedupe_key,
            )
            if existing is None:
                raise
            return await self._resync_duplicate(existing)

        return await self._sync(event)

    async def _resync_duplicate(self, existing: CalendarEvent) -> CalendarEvent:
        if existing.sync_status in _RESYNCABLE:
            logger.info(
                "Duplicate confirmation for event %s in %s; resyncing",
                existing.id,
                existing.sync_status,
            )
            return await self._sync(existing)
        logger.info(
            "Duplicate confirmation for event %s (status=%s); nothing to do",
            existing.id,
            existing.sync_status,
        )
        return existing

    async def _sync(self, event: CalendarEvent) -> CalendarEvent:
        state = self._state
        outcome = await sync_event(state, event, store=self.store, token_store=self.token_store)
        # Adopt a changed state only while ours is still current: a revocation
        # must not be undone by a call holding the old value, nor override a
        # reinitialize() that happened during the call.
        if outcome.state is not state and self._state is state:
            self._state = outcome.state
        return outcome.event

    # ------------------------------------------------------------------
    # Operator operations
    # ------------------------------------------------------------------

    async def resync(self, event_id: UUID) -> CalendarEvent:
        """Retry sync for one row; ``synced`` rows are returned unchanged.

        Raises
        ------
        EventNotFoundError
            If *event_id* does not exist.
        """
        event = await self.store.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if event.sync_status is SyncStatus.SYNCED:
            return event
        with bound_contextvars(event_id=str(event_id)):
            return await self._sync(event)

    async def status(self) -> dict[str, Any]:
        return {
            "configured": self._state.configured,
            "calendar_id": self.config.calendar.calendar_id,
            "timezone": self.config.calendar.timezone,
            "counts": await self.store.count_by_status(),
        }
