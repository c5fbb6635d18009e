"""Inbound confirmation endpoints.

- ``POST /api/confirmations``: free-text message from the messaging channel.
- ``POST /api/confirmations/records``: structured confirmation-form record.

Both return 200 whether or not an event results; calendar-side failures are
reported through the event's ``sync_status``, never as HTTP errors.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from estate_agenda.api.deps import get_pipeline
from estate_agenda.api.models import ConfirmationMessageRequest, ConfirmationResult
from estate_agenda.calendar.models import AppointmentConfirmation
from estate_agenda.pipeline import ConfirmationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/confirmations", tags=["confirmations"])


@router.post("", response_model=ConfirmationResult)
async def receive_confirmation(
    body: ConfirmationMessageRequest,
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
) -> ConfirmationResult:
    event = await pipeline.handle_confirmation(
        body.text, body.sender, confirmation_ref=body.confirmation_ref
    )
    return ConfirmationResult(created=event is not None, event=event)


@router.post("/records", response_model=ConfirmationResult)
async def receive_confirmation_record(
    record: AppointmentConfirmation,
    pipeline: ConfirmationPipeline = Depends(get_pipeline),
) -> ConfirmationResult:
    event = await pipeline.handle_confirmation_record(record)
    return ConfirmationResult(created=event is not None, event=event)
