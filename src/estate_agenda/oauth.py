"""Google OAuth authorization-code flow for (re)provisioning the refresh token.

The bootstrap flow:
  1. :func:`build_authorization_url` issues a one-time CSRF state (10 minute
     TTL) and returns Google's consent URL with ``access_type=offline`` and
     ``prompt=consent`` so a refresh token is always returned.
  2. :func:`complete_authorization` validates and consumes the state,
     exchanges the code, stores the refresh token in ``oauth_tokens`` and
     reinitializes the pipeline so sync resumes immediately.

The redirect URI is derived from the public hostname
(:attr:`estate_agenda.config.AgendaConfig.redirect_uri`).

Security notes:
  - State tokens are one-time-use and expire after 10 minutes.
  - The state store is process-local; run a single worker process.
  - Client secrets and tokens are never logged or echoed back.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from estate_agenda.calendar.credentials import StoredRefreshToken
from estate_agenda.calendar.google import (
    GOOGLE_CALENDAR_SCOPE,
    GOOGLE_OAUTH_AUTHORIZE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    CalendarCredentialError,
)
from estate_agenda.config import AgendaConfig

if TYPE_CHECKING:
    from estate_agenda.pipeline import ConfirmationPipeline

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


class OAuthFlowError(Exception):
    """A callback that cannot complete; ``error_code`` is safe to return to clients."""

    def __init__(self, error_code: str, message: str) -> None:
        self.error_code = error_code
        self.message = message
        super().__init__(message)


class OAuthStateStore:
    """In-memory CSRF state tokens with expiry, consumed on first use."""

    def __init__(
        self,
        *,
        ttl_seconds: float = STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._states: dict[str, float] = {}

    def issue(self) -> str:
        state = secrets.token_urlsafe(32)
        self._states[state] = self._clock() + self._ttl_seconds
        self._evict_expired()
        return state

    def consume(self, state: str) -> bool:
        """True when *state* was issued and has not expired; it is removed either way."""
        self._evict_expired()
        expiry = self._states.pop(state, None)
        if expiry is None:
            return False
        return self._clock() < expiry

    def _evict_expired(self) -> None:
        now = self._clock()
        for key in [k for k, expiry in self._states.items() if now >= expiry]:
            del self._states[key]

    def __len__(self) -> int:
        return len(self._states)


def _require_app_credentials(config: AgendaConfig) -> tuple[str, str]:
    calendar = config.calendar
    if not calendar.client_id or not calendar.client_secret:
        raise CalendarCredentialError(
            "Google OAuth client id/secret are not configured "
            "([calendar].client_id / GOOGLE_CALENDAR_CLIENT_ID)"
        )
    return calendar.client_id, calendar.client_secret


def build_authorization_url(config: AgendaConfig, state_store: OAuthStateStore) -> tuple[str, str]:
    """Return ``(authorization_url, state)`` for a fresh consent flow.

    Raises
    ------
    CalendarCredentialError
        If the OAuth client id/secret are not configured.
    """
    client_id, _ = _require_app_credentials(config)
    state = state_store.issue()
    params = {
        "client_id": client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": GOOGLE_CALENDAR_SCOPE,
        "access_type": "offline",
        "prompt": "consent",
        "state": state,
    }
    logger.info("Google OAuth flow started (state=%s...)", state[:8])
    return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}", state


async def exchange_code(
    code: str,
    *,
    config: AgendaConfig,
    http_client: httpx.AsyncClient,
) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Raises
    ------
    OAuthFlowError
        ``token_exchange_failed`` on any transport, status or JSON problem.
    """
    client_id, client_secret = _require_app_credentials(config)
    try:
        response = await http_client.post(
            GOOGLE_OAUTH_TOKEN_URL,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": config.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
    except httpx.HTTPError as exc:
        logger.warning("Token exchange transport error: %s", type(exc).__name__)
        raise OAuthFlowError(
            "token_exchange_failed", "Could not reach Google to exchange the authorization code."
        ) from exc

    if response.status_code != 200:
        # Status only; the body may carry sensitive details
        logger.warning("Token endpoint returned HTTP %s", response.status_code)
        raise OAuthFlowError(
            "token_exchange_failed",
            "Failed to exchange authorization code for tokens. "
            "The code may have expired or already been used. Please restart the OAuth flow.",
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise OAuthFlowError(
            "token_exchange_failed", "Google returned an invalid token response."
        ) from exc
    if not isinstance(payload, dict):
        raise OAuthFlowError("token_exchange_failed", "Google returned an invalid token response.")
    return payload


async def complete_authorization(
    *,
    code: str | None,
    state: str | None,
    pipeline: ConfirmationPipeline,
    state_store: OAuthStateStore,
    http_client: httpx.AsyncClient,
) -> StoredRefreshToken:
    """Validate the callback, persist the refresh token and resume sync.

    Raises
    ------
    OAuthFlowError
        With ``missing_code``, ``missing_state``, ``invalid_state``,
        ``token_exchange_failed`` or ``no_refresh_token``.
    """
    if not code:
        raise OAuthFlowError("missing_code", "Authorization code is missing from the callback.")
    if not state:
        raise OAuthFlowError(
            "missing_state", "State parameter is missing from the callback. Possible CSRF attempt."
        )
    if not state_store.consume(state):
        logger.warning("OAuth callback received invalid or expired state token")
        raise OAuthFlowError(
            "invalid_state",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
        )

    token_data = await exchange_code(code, config=pipeline.config, http_client=http_client)

    refresh_token = token_data.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        logger.warning("Google OAuth token response did not include a refresh token")
        raise OAuthFlowError(
            "no_refresh_token",
            "Google did not return a refresh token. Revoke the app's access and retry "
            "so consent is granted again.",
        )

    scope = token_data.get("scope")
    stored = await pipeline.token_store.save(
        refresh_token, scope=scope if isinstance(scope, str) else None
    )
    await pipeline.reinitialize()
    logger.info("Google OAuth authorization complete; calendar sync re-enabled")
    return stored


_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "unauthorized_client": "This application is not authorized to use Google OAuth. "
    "Check your OAuth app configuration.",
    "invalid_scope": "The requested OAuth scope is invalid or not permitted.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


def sanitize_provider_error(error: str) -> str:
    """Map a provider error code to a safe, actionable message."""
    return _KNOWN_PROVIDER_ERRORS.get(
        error, "The OAuth authorization failed. Please restart the flow."
    )
