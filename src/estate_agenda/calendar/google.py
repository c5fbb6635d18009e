"""Google Calendar adapter: OAuth refresh-token exchange and event insert/update.

Only the two calls the sync engine needs are implemented.  Event ids sent to
Google are derived from the row's dedupe key, so an insert that timed out on
our side but succeeded remotely is detected on the next attempt (409) and
turned into an update of the same remote event instead of a duplicate.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from estate_agenda.calendar.idempotency import wall_clock

if TYPE_CHECKING:
    from estate_agenda.calendar.models import CalendarEvent

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
GOOGLE_CALENDAR_SCOPE = "https://www.googleapis.com/auth/calendar"

# Popup reminders one day and two hours before the appointment.
REMINDER_OVERRIDES_MINUTES = (1440, 120)

INVALID_GRANT = "invalid_grant"
_EVENT_ID_PREFIX = "ea"


class CalendarAuthError(RuntimeError):
    """Base error raised by Google Calendar auth/request helpers."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when OAuth client credentials or the refresh token are missing."""


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when refresh-token exchange fails."""

    def __init__(
        self, message: str, *, status_code: int | None = None, error_code: str | None = None
    ) -> None:
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class CalendarRequestError(CalendarAuthError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str, error_code: str | None = None) -> None:
        self.status_code = status_code
        self.message = message
        self.error_code = error_code
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


def is_invalid_grant(exc: BaseException) -> bool:
    """True when *exc* says the refresh credential is permanently unusable."""
    return (
        isinstance(exc, CalendarTokenRefreshError | CalendarRequestError)
        and exc.status_code == 400
        and exc.error_code == INVALID_GRANT
    )


class GoogleOAuthCredentials(BaseModel):
    """OAuth client credentials plus the user's refresh token."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1, repr=False)
    refresh_token: str = Field(min_length=1, repr=False)

    @field_validator("client_id", "client_secret", "refresh_token")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


# ---------------------------------------------------------------------------
# Error payload helpers
# ---------------------------------------------------------------------------


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def google_error_code(response: httpx.Response) -> str | None:
    """Machine-readable error code from a Google error payload.

    The token endpoint returns ``{"error": "invalid_grant", ...}``; the
    Calendar API returns ``{"error": {"errors": [{"reason": ...}], "status": ...}}``.
    """
    payload = _json_or_none(response)
    if not isinstance(payload, dict):
        return None
    error_payload = payload.get("error")
    if isinstance(error_payload, str) and error_payload.strip():
        return error_payload.strip()
    if isinstance(error_payload, dict):
        errors = error_payload.get("errors")
        if isinstance(errors, list):
            for item in errors:
                if isinstance(item, dict) and isinstance(item.get("reason"), str):
                    return item["reason"]
        status = error_payload.get("status")
        if isinstance(status, str) and status.strip():
            return status.strip()
    return None


def safe_google_error_message(response: httpx.Response) -> str:
    payload = _json_or_none(response)

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return redact_credential_values(" ".join(raw_text.split())[:200])
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Mask credential-looking ``key=value`` / ``"key": "value"`` pairs."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|code)\s*=\s*([^\s,;&]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


class GoogleOAuthClient:
    """Refresh-token OAuth helper with lightweight access-token caching."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._credentials = credentials
        self._http_client = http_client
        self._access_token: str | None = None
        self._access_token_expires_at: datetime | None = None
        self._refresh_lock = asyncio.Lock()

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._access_token is not None
            return self._access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._access_token is not None
                return self._access_token

            await self._refresh_access_token()
            assert self._access_token is not None
            return self._access_token

    def _token_is_fresh(self) -> bool:
        if self._access_token is None or self._access_token_expires_at is None:
            return False
        return datetime.now(UTC) < self._access_token_expires_at

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": self._credentials.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {type(exc).__name__}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}",
                status_code=response.status_code,
                error_code=google_error_code(response),
            )

        payload = _json_or_none(response)
        if not isinstance(payload, dict):
            raise CalendarTokenRefreshError("Google OAuth token endpoint returned invalid JSON")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        # Refresh early to avoid edge-of-expiration failures.
        refresh_ttl_seconds = max(expires_in_seconds - 60, 30)

        self._access_token = access_token.strip()
        self._access_token_expires_at = datetime.now(UTC) + timedelta(seconds=refresh_ttl_seconds)


# ---------------------------------------------------------------------------
# Event payload
# ---------------------------------------------------------------------------


def external_event_id_for(dedupe_key: str) -> str:
    """Deterministic Google event id (base32hex alphabet) for a dedupe key."""
    return f"{_EVENT_ID_PREFIX}{dedupe_key.lower()}"


def build_event_body(event: CalendarEvent) -> dict[str, Any]:
    """Google ``events`` resource for *event*.

    Start/end are the row's wall-clock fields with an explicit ``timeZone``;
    no UTC offset is sent.
    """
    body: dict[str, Any] = {
        "summary": event.title,
        "description": event.description or "",
        "start": {"dateTime": wall_clock(event.start_date), "timeZone": event.timezone},
        "end": {"dateTime": wall_clock(event.end_date), "timeZone": event.timezone},
        "status": "confirmed",
        "reminders": {
            "useDefault": False,
            "overrides": [
                {"method": "popup", "minutes": minutes} for minutes in REMINDER_OVERRIDES_MINUTES
            ],
        },
    }
    if event.location:
        body["location"] = event.location
    return body


# ---------------------------------------------------------------------------
# Calendar client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Insert/update events on one Google calendar."""

    def __init__(
        self,
        credentials: GoogleOAuthCredentials,
        *,
        http_client: httpx.AsyncClient,
        calendar_id: str = "primary",
    ) -> None:
        self._http_client = http_client
        self._oauth = GoogleOAuthClient(credentials, http_client)
        self.calendar_id = calendar_id

    @property
    def _events_path(self) -> str:
        return f"/calendars/{quote(self.calendar_id, safe='')}/events"

    async def upsert_event(self, event: CalendarEvent) -> str:
        """Create or update *event* remotely; returns the external event id."""
        body = build_event_body(event)
        if event.external_event_id:
            try:
                return await self.update_event(event.external_event_id, body)
            except CalendarRequestError as exc:
                if exc.status_code not in (404, 410):
                    raise
                logger.info(
                    "Remote event %s vanished; re-inserting for %s",
                    event.external_event_id,
                    event.id,
                )
        return await self.insert_event(external_event_id_for(event.dedupe_key), body)

    async def insert_event(self, event_id: str, body: dict[str, Any]) -> str:
        try:
            payload = await self._request_google_json(
                "POST", self._events_path, json_body={**body, "id": event_id}
            )
        except CalendarRequestError as exc:
            if exc.status_code != 409:
                raise
            # An earlier attempt already created it.
            logger.info("Remote event %s already exists; updating instead", event_id)
            return await self.update_event(event_id, body)
        return _event_id_from(payload, fallback=event_id)

    async def update_event(self, event_id: str, body: dict[str, Any]) -> str:
        path = f"{self._events_path}/{quote(event_id, safe='')}"
        payload = await self._request_google_json("PUT", path, json_body=body)
        return _event_id_from(payload, fallback=event_id)

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method=method, path=path, json_body=json_body)

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
                error_code=google_error_code(response),
            )

        payload = _json_or_none(response)
        if not isinstance(payload, dict):
            raise CalendarAuthError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"
        response = await self._request_once(
            method=method, url=url, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, json_body=json_body, force_refresh=True
            )
        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._oauth.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarAuthError(
                f"Google Calendar request failed: {type(exc).__name__}: {exc}"
            ) from exc


def _event_id_from(payload: dict[str, Any], *, fallback: str) -> str:
    event_id = payload.get("id")
    if isinstance(event_id, str) and event_id.strip():
        return event_id.strip()
    return fallback
