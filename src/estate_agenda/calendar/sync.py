"""Calendar sync engine.

The engine's only mutable fact (is a usable credential loaded?) is an explicit
:class:`SyncEngineState` value.  :func:`sync_event` takes the current state
and returns a :class:`SyncOutcome` carrying the state to use for the next
call, so a credential revocation is visible to callers as a new value rather
than a hidden side effect.

Calendar-side failures never raise out of :func:`sync_event`; they become row
states.  Database errors propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from estate_agenda.calendar.credentials import OAuthTokenStore
from estate_agenda.calendar.google import (
    CalendarAuthError,
    GoogleCalendarClient,
    GoogleOAuthCredentials,
    is_invalid_grant,
)
from estate_agenda.calendar.models import CalendarEvent, SyncStatus
from estate_agenda.calendar.store import EventStore
from estate_agenda.config import CalendarConfig

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "Calendar is not authorized; complete the OAuth flow to enable sync"
CREDENTIAL_REVOKED_MESSAGE = "Stored refresh token was rejected (invalid_grant); reauthorize"


@dataclass(frozen=True)
class SyncEngineState:
    """Credential-present (with a client handle) or credential-absent."""

    credentials: GoogleOAuthCredentials | None = None
    client: GoogleCalendarClient | None = None

    @property
    def configured(self) -> bool:
        return self.client is not None

    @classmethod
    def unconfigured(cls) -> SyncEngineState:
        return cls()


@dataclass(frozen=True)
class SyncOutcome:
    state: SyncEngineState
    event: CalendarEvent


async def load_engine_state(
    token_store: OAuthTokenStore,
    config: CalendarConfig,
    *,
    http_client: httpx.AsyncClient,
) -> SyncEngineState:
    """Build the engine state from the stored refresh token.

    Returns an unconfigured state when the OAuth client id/secret are not
    configured or no refresh token has been stored yet.
    """
    if not config.has_app_credentials:
        logger.warning("Google OAuth client id/secret not configured; calendar sync disabled")
        return SyncEngineState.unconfigured()

    stored = await token_store.load()
    if stored is None:
        logger.info(
            "No refresh token stored for %s; calendar sync awaits authorization",
            token_store.service,
        )
        return SyncEngineState.unconfigured()

    credentials = GoogleOAuthCredentials(
        client_id=config.client_id,
        client_secret=config.client_secret,
        refresh_token=stored.refresh_token,
    )
    client = GoogleCalendarClient(
        credentials, http_client=http_client, calendar_id=config.calendar_id
    )
    logger.info("Calendar sync configured (calendar_id=%s)", config.calendar_id)
    return SyncEngineState(credentials=credentials, client=client)


async def sync_event(
    state: SyncEngineState,
    event: CalendarEvent,
    *,
    store: EventStore,
    token_store: OAuthTokenStore,
) -> SyncOutcome:
    """Push *event* to the external calendar and record the result on the row.

    - unconfigured state: row becomes ``needs_auth``; no network call.
    - success: row becomes ``synced`` with the external id.
    - HTTP 400 ``invalid_grant``: the stored credential is deleted, the row
      becomes ``needs_auth`` and the returned state is unconfigured.  Only
      the token this state was built from is deleted.
    - anything else: row becomes ``failed`` with the error message.

    Already-``synced`` rows are returned unchanged.
    """
    if event.sync_status is SyncStatus.SYNCED:
        return SyncOutcome(state, event)

    if not state.configured:
        logger.info("Calendar unconfigured; event %s marked needs_auth", event.id)
        updated = await store.transition(
            event, SyncStatus.NEEDS_AUTH, sync_error=NOT_CONFIGURED_MESSAGE
        )
        return SyncOutcome(state, updated)

    assert state.client is not None
    try:
        external_event_id = await state.client.upsert_event(event)
    except CalendarAuthError as exc:
        if is_invalid_grant(exc):
            logger.error(
                "Refresh token revoked for %s; deleting stored credential", token_store.service
            )
            revoked = state.credentials.refresh_token if state.credentials else None
            await token_store.delete(refresh_token=revoked)
            updated = await store.transition(
                event, SyncStatus.NEEDS_AUTH, sync_error=f"{CREDENTIAL_REVOKED_MESSAGE}: {exc}"
            )
            return SyncOutcome(SyncEngineState.unconfigured(), updated)

        logger.warning("Calendar sync failed for event %s: %s", event.id, exc)
        updated = await store.transition(event, SyncStatus.FAILED, sync_error=str(exc))
        return SyncOutcome(state, updated)

    updated = await store.transition(
        event, SyncStatus.SYNCED, external_event_id=external_event_id
    )
    logger.info("Event %s synced as %s", event.id, external_event_id)
    return SyncOutcome(state, updated)
