"""Resolve Italian date/time fragments into absolute local datetimes.

Fragments arrive already isolated by the extraction rules (``"Lunedì 10/6"``,
``"16:00"``, ``"domani"``, ``"18"``).  Resolution never raises: any fragment
that does not match a known shape, or that names an impossible calendar day,
yields ``None``.

All results are wall-clock values in the configured zone: the date and time
fields are assigned directly with ``tzinfo=ZoneInfo(...)``; no UTC arithmetic
is involved.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from estate_agenda.config import DEFAULT_TIMEZONE

logger = logging.getLogger(__name__)

# A year-less date further than this many whole days in the past is assumed to
# refer to next year.
PAST_DATE_ROLLOVER_DAYS = 30

WEEKDAYS: dict[str, int] = {
    "lunedi": 0,
    "martedi": 1,
    "mercoledi": 2,
    "giovedi": 3,
    "venerdi": 4,
    "sabato": 5,
    "domenica": 6,
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}

MONTHS: dict[str, int] = {
    "gennaio": 1,
    "febbraio": 2,
    "marzo": 3,
    "aprile": 4,
    "maggio": 5,
    "giugno": 6,
    "luglio": 7,
    "agosto": 8,
    "settembre": 9,
    "ottobre": 10,
    "novembre": 11,
    "dicembre": 12,
}

TODAY_WORDS = frozenset({"oggi", "today"})
TOMORROW_WORDS = frozenset({"domani", "tomorrow"})

# Regex fragments shared with the extraction rules.
WEEKDAY_PATTERN = (
    r"(?:luned[iìí]|marted[iìí]|mercoled[iìí]|gioved[iìí]|venerd[iìí]|sabato|domenica)"
)
MONTH_PATTERN = (
    r"(?:gennaio|febbraio|marzo|aprile|maggio|giugno|luglio|agosto|settembre|ottobre|"
    r"novembre|dicembre)"
)
TIME_PATTERN = r"\d{1,2}(?:[:.]\d{2})?(?![:\d/])"

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_NUMERIC_DATE_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_WEEKDAY_DAY_MONTH_RE = re.compile(r"^([a-z]+)\s*,?\s+(\d{1,2})/(\d{1,2})$")
_DAY_MONTH_NAME_RE = re.compile(r"^(?:([a-z]+)\s*,?\s+)?(\d{1,2})\s+([a-z]+)(?:\s+(\d{4}))?$")
_WORD_RE = re.compile(r"^([a-z]+)$")
_TIME_RE = re.compile(r"^(\d{1,2})(?:[:.](\d{2}))?$")


def normalize_fragment(fragment: str) -> str:
    """Lower-case, strip accents and collapse whitespace/edge punctuation."""
    decomposed = unicodedata.normalize("NFKD", fragment)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().replace("'", " ").split()).strip(" ,.")


def local_now(timezone: str = DEFAULT_TIMEZONE) -> datetime:
    """Current wall-clock time in *timezone*."""
    return datetime.now(ZoneInfo(timezone))


def _as_local(now: datetime | None, timezone: str) -> datetime:
    tz = ZoneInfo(timezone)
    if now is None:
        return datetime.now(tz)
    if now.tzinfo is None:
        return now.replace(tzinfo=tz)
    return now.astimezone(tz)


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def next_weekday(today: date, weekday: int) -> date:
    """Next occurrence of *weekday* strictly after *today* (never today itself)."""
    days_ahead = (weekday - today.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return today + timedelta(days=days_ahead)


def infer_year(
    day: int,
    month: int,
    today: date,
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
) -> date | None:
    """Place a year-less day/month in the current year, or next year when stale."""
    candidate = _safe_date(today.year, month, day)
    if candidate is None:
        return None
    if (today - candidate).days > rollover_days:
        return _safe_date(today.year + 1, month, day)
    return candidate


def resolve_date(
    fragment: str,
    *,
    today: date,
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
) -> date | None:
    """Resolve a date fragment against *today*.

    Shapes, in priority order: ``oggi``/``domani`` (and English), ISO
    ``YYYY-MM-DD``, ``DD/MM/YYYY``, weekday + ``DD/MM``, ``DD <mese> [YYYY]``
    (optionally preceded by a weekday), and a bare weekday name.
    """
    if not isinstance(fragment, str):
        return None
    text = normalize_fragment(fragment)
    if not text:
        return None

    if text in TODAY_WORDS:
        return today
    if text in TOMORROW_WORDS:
        return today + timedelta(days=1)

    if match := _ISO_DATE_RE.match(text):
        year, month, day = (int(part) for part in match.groups())
        return _safe_date(year, month, day)

    if match := _NUMERIC_DATE_RE.match(text):
        day, month, year = (int(part) for part in match.groups())
        return _safe_date(year, month, day)

    if match := _WEEKDAY_DAY_MONTH_RE.match(text):
        weekday_name, day, month = match.groups()
        if weekday_name not in WEEKDAYS:
            return None
        return infer_year(int(day), int(month), today, rollover_days)

    if match := _DAY_MONTH_NAME_RE.match(text):
        weekday_name, day, month_name, year = match.groups()
        if weekday_name is not None and weekday_name not in WEEKDAYS:
            return None
        month = MONTHS.get(month_name)
        if month is None:
            return None
        if year is not None:
            return _safe_date(int(year), month, int(day))
        return infer_year(int(day), month, today, rollover_days)

    if match := _WORD_RE.match(text):
        weekday = WEEKDAYS.get(match.group(1))
        if weekday is None:
            return None
        return next_weekday(today, weekday)

    return None


def resolve_time(fragment: str) -> time | None:
    """Resolve ``HH:MM``, ``HH.MM`` or a bare ``HH`` (minutes default to 0)."""
    if not isinstance(fragment, str):
        return None
    match = _TIME_RE.match(fragment.strip())
    if match is None:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def resolve_date_time(
    date_fragment: str,
    time_fragment: str,
    *,
    now: datetime | None = None,
    timezone: str = DEFAULT_TIMEZONE,
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
) -> datetime | None:
    """Combine a date fragment and a time fragment into a local datetime.

    Returns ``None`` when either fragment cannot be resolved.
    """
    local = _as_local(now, timezone)
    resolved_date = resolve_date(date_fragment, today=local.date(), rollover_days=rollover_days)
    resolved_time = resolve_time(time_fragment)
    if resolved_date is None or resolved_time is None:
        logger.debug(
            "Unresolvable date/time fragments (date=%r, time=%r)", date_fragment, time_fragment
        )
        return None
    return datetime.combine(resolved_date, resolved_time, tzinfo=local.tzinfo)


# ---------------------------------------------------------------------------
# Whole-phrase resolution (structured confirmation records)
# ---------------------------------------------------------------------------

_PhraseRule = tuple[str, re.Pattern[str]]

_ALLE_ORE = r"(?:alle\s+ore|alle|all'|ore|h)\s*"

PHRASE_RULES: tuple[_PhraseRule, ...] = (
    (
        "day_month_name",
        re.compile(
            rf"(?P<date>(?:{WEEKDAY_PATTERN}\s*,?\s+)?\d{{1,2}}\s+{MONTH_PATTERN}(?:\s+\d{{4}})?)"
            rf"\s*,?\s*{_ALLE_ORE}(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
    (
        "relative_day",
        re.compile(
            rf"\b(?P<date>oggi|domani)\b\s*,?\s*{_ALLE_ORE}(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
    (
        "weekday_day_month",
        re.compile(
            rf"(?P<date>{WEEKDAY_PATTERN}\s+\d{{1,2}}/\d{{1,2}})(?!/)\s*,?\s*(?:{_ALLE_ORE})?"
            rf"(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
    (
        "numeric_date",
        re.compile(
            rf"(?P<date>\d{{1,2}}/\d{{1,2}}/\d{{4}})\s*,?\s*(?:{_ALLE_ORE})?(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
    (
        "iso_date",
        re.compile(
            rf"(?P<date>\d{{4}}-\d{{1,2}}-\d{{1,2}})(?:T|\s*,?\s*(?:{_ALLE_ORE})?)"
            rf"(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
    (
        "weekday_only",
        re.compile(
            rf"(?P<date>{WEEKDAY_PATTERN})\b\s*,?\s*{_ALLE_ORE}(?P<time>{TIME_PATTERN})",
            re.IGNORECASE,
        ),
    ),
)


def resolve_phrase(
    text: str,
    *,
    now: datetime | None = None,
    timezone: str = DEFAULT_TIMEZONE,
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
    rules: tuple[_PhraseRule, ...] = PHRASE_RULES,
) -> datetime | None:
    """Resolve a free-text appointment phrase such as ``"7 giugno 2025 ore 15:00"``.

    Rules are tried in order; the first one whose fragments resolve wins.
    """
    if not isinstance(text, str) or not text.strip():
        return None
    for name, pattern in rules:
        match = pattern.search(text)
        if match is None:
            continue
        resolved = resolve_date_time(
            match.group("date"),
            match.group("time"),
            now=now,
            timezone=timezone,
            rollover_days=rollover_days,
        )
        if resolved is not None:
            logger.debug("Phrase %r resolved by rule %s -> %s", text, name, resolved.isoformat())
            return resolved
    logger.debug("Phrase %r did not match any date rule", text)
    return None
