"""Message parsing: appointment extraction and Italian date/time resolution."""

from estate_agenda.parsing.extractor import (
    ADDRESS_UNSPECIFIED,
    AppointmentData,
    AppointmentExtractor,
    extract_appointment,
)
from estate_agenda.parsing.temporal import (
    PAST_DATE_ROLLOVER_DAYS,
    resolve_date,
    resolve_date_time,
    resolve_phrase,
    resolve_time,
)

__all__ = [
    "ADDRESS_UNSPECIFIED",
    "PAST_DATE_ROLLOVER_DAYS",
    "AppointmentData",
    "AppointmentExtractor",
    "extract_appointment",
    "resolve_date",
    "resolve_date_time",
    "resolve_phrase",
    "resolve_time",
]
