"""Refresh-token storage for the external calendar.

One row per service in ``oauth_tokens``.  The OAuth client id/secret are
application configuration (``[calendar]`` / environment); only the
user-granted refresh token lives in the database.

Secret material is never logged.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

from estate_agenda.config import DEFAULT_TOKEN_SERVICE

if TYPE_CHECKING:
    import asyncpg

logger = logging.getLogger(__name__)

_TABLE = "oauth_tokens"


class StoredRefreshToken(BaseModel):
    """A persisted refresh credential.  ``repr`` never shows the token."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    service: str = Field(min_length=1)
    refresh_token: str = Field(min_length=1, repr=False)
    scope: str | None = None

    @field_validator("refresh_token")
    @classmethod
    def _strip(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("refresh_token must be a non-empty string")
        return normalized


class OAuthTokenStore:
    """Async accessors for ``oauth_tokens`` over an asyncpg pool."""

    def __init__(self, pool: asyncpg.Pool, *, service: str = DEFAULT_TOKEN_SERVICE) -> None:
        self.pool = pool
        self.service = service

    async def load(self) -> StoredRefreshToken | None:
        """Return the stored credential for this service, or ``None``."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT service, refresh_token, scope FROM {_TABLE} WHERE service = $1",
                self.service,
            )
        if row is None or not row["refresh_token"]:
            return None
        return StoredRefreshToken(
            service=row["service"], refresh_token=row["refresh_token"], scope=row["scope"]
        )

    async def save(self, refresh_token: str, *, scope: str | None = None) -> StoredRefreshToken:
        """Upsert the refresh token (a new grant replaces the old one)."""
        credential = StoredRefreshToken(
            service=self.service, refresh_token=refresh_token, scope=scope
        )
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"""
                INSERT INTO {_TABLE} (service, refresh_token, scope)
                VALUES ($1, $2, $3)
                ON CONFLICT (service) DO UPDATE SET
                    refresh_token = EXCLUDED.refresh_token,
                    scope         = EXCLUDED.scope,
                    updated_at    = now()
                """,
                credential.service,
                credential.refresh_token,
                credential.scope,
            )
        logger.info("Refresh token stored for service=%r (scope=%r)", self.service, scope)
        return credential

    async def delete(self, *, refresh_token: str | None = None) -> bool:
        """Delete the stored credential; ``True`` if a row was removed.

        With *refresh_token*, only that exact token is deleted, so a revocation
        seen through an old credential leaves a newer grant in place.
        """
        async with self.pool.acquire() as conn:
            if refresh_token is None:
                result = await conn.execute(
                    f"DELETE FROM {_TABLE} WHERE service = $1", self.service
                )
            else:
                result = await conn.execute(
                    f"DELETE FROM {_TABLE} WHERE service = $1 AND refresh_token = $2",
                    self.service,
                    refresh_token,
                )
        deleted = result == "DELETE 1"
        if deleted:
            logger.warning("Refresh token deleted for service=%r", self.service)
        return deleted
