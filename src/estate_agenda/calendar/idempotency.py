"""Dedupe keys and the dual-key lookup for "same logical appointment".

A row is the same appointment when its ``confirmation_ref`` matches the
upstream identifier, or when its ``dedupe_key`` matches the content hash of
``(title, start, location)``.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from estate_agenda.calendar.models import CalendarEvent
    from estate_agenda.calendar.store import EventStore

logger = logging.getLogger(__name__)

_SEPARATOR = "|"


def wall_clock(value: datetime) -> str:
    """``YYYY-MM-DDTHH:MM:SS`` from the local fields, offset dropped."""
    return value.replace(tzinfo=None).isoformat(timespec="seconds")


def derive_dedupe_key(title: str, start: datetime, location: str | None) -> str:
    """SHA-256 hex digest of ``title|start|location``.

    Pure: the same triple always gives the same key, across processes and
    regardless of insertion order.  A missing location hashes as ``""``.
    """
    payload = _SEPARATOR.join((title, wall_clock(start), location or ""))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


async def find_existing(
    store: EventStore,
    *,
    confirmation_ref: int | None,
    dedupe_key: str,
) -> CalendarEvent | None:
    """Look up by ``confirmation_ref`` first (when given), then by ``dedupe_key``."""
    if confirmation_ref is not None:
        existing = await store.get_by_confirmation_ref(confirmation_ref)
        if existing is not None:
            logger.debug("Matched existing event %s by confirmation_ref", existing.id)
            return existing
    existing = await store.get_by_dedupe_key(dedupe_key)
    if existing is not None:
        logger.debug("Matched existing event %s by dedupe_key", existing.id)
    return existing
