"""Calendar event listing, manual resync and sync status."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from estate_agenda.api.deps import get_pipeline
from estate_agenda.api.models import ApiMeta, ApiResponse, CalendarStatus
from estate_agenda.calendar.models import CalendarEvent, SyncStatus
from estate_agenda.pipeline import ConfirmationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/calendar", tags=["calendar"])


@router.get("/events", response_model=ApiResponse[list[CalendarEvent]])
async def list_events(
    status: SyncStatus | None = Query(default=None, description="Filter by sync status."),
    start: datetime | None = Query(default=None, description="Events starting at or after."),
    end: datetime | None = Query(default=None, description="Events starting before."),
    limit: int = Query(default=100, ge=1, le=500),
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
) -> ApiResponse[list[CalendarEvent]]:
    events = await pipeline.store.list_events(status=status, start=start, end=end, limit=limit)
    return ApiResponse[list[CalendarEvent]](
        data=events, meta=ApiMeta(count=len(events), limit=limit)
    )


@router.post("/events/{event_id}/resync", response_model=CalendarEvent)
async def resync_event(
    event_id: UUID,
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
) -> CalendarEvent:
    """Retry the external sync for one event; unknown ids return 404."""
    event = await pipeline.resync(event_id)
    logger.info("Manual resync of %s finished with status=%s", event_id, event.sync_status)
    return event


@router.get("/status", response_model=CalendarStatus)
async def calendar_status(
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
) -> CalendarStatus:
    return CalendarStatus.model_validate(await pipeline.status())
