"""Extract structured appointments from free-text Italian confirmation messages.

Extraction is a set of ordered rule tables.  Each rule pairs a compiled
pattern with an extractor callable; within a table the first rule that yields
a non-``None`` value wins.  Adding a new message format means appending a rule,
not reasoning about how a cascade of ``if``/``elif`` branches interacts.

A message is an appointment only when both a client name and a resolvable
start time are found.  The address is optional and falls back to
:data:`ADDRESS_UNSPECIFIED`.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from estate_agenda.config import DEFAULT_TEST_DENYLIST, DEFAULT_TIMEZONE, DenylistEntry
from estate_agenda.parsing.temporal import (
    PAST_DATE_ROLLOVER_DAYS,
    TIME_PATTERN,
    WEEKDAY_PATTERN,
    local_now,
    resolve_date_time,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SALUTATION = "Gentile"
ADDRESS_UNSPECIFIED = "unspecified"


class AppointmentData(BaseModel):
    """One appointment recognised in one inbound message."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    client_name: str = Field(min_length=1)
    salutation: str = DEFAULT_SALUTATION
    phone: str
    appointment_start: datetime
    address: str = ADDRESS_UNSPECIFIED

    @field_validator("appointment_start")
    @classmethod
    def _require_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("appointment_start must be timezone-aware")
        return value

    @property
    def has_address(self) -> bool:
        return self.address != ADDRESS_UNSPECIFIED


@dataclass(frozen=True)
class ExtractionContext:
    """Clock and tuning shared by every rule during one extraction."""

    now: datetime
    timezone: str = DEFAULT_TIMEZONE
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS


@dataclass(frozen=True)
class ExtractionRule(Generic[T]):
    name: str
    pattern: re.Pattern[str]
    extract: Callable[[re.Match[str], ExtractionContext], T | None]

    def apply(self, text: str, context: ExtractionContext) -> T | None:
        match = self.pattern.search(text)
        if match is None:
            return None
        return self.extract(match, context)


def first_match(
    rules: Sequence[ExtractionRule[T]], text: str, context: ExtractionContext
) -> tuple[str, T] | None:
    """Return ``(rule_name, value)`` for the first rule producing a value."""
    for rule in rules:
        value = rule.apply(text, context)
        if value is not None:
            logger.debug("Extraction rule %s matched", rule.name)
            return rule.name, value
    return None


# ---------------------------------------------------------------------------
# Client name
# ---------------------------------------------------------------------------

# Longer alternatives first so "Dott.ssa" is not read as "Dott." + "ssa".
HONORIFIC_PATTERN = (
    r"(?:Gentilissim[oaie]|Gentile|Gent\.(?:mo|ma|mi|me)|Gent\.|"
    r"Egregi[oa]|Egr\.|"
    r"Dott\.ssa|Dottoressa|Dottor|Dott\.|"
    r"Sig\.ra|Sig\.na|Signora|Signorina|Signor|Sig\.|"
    r"Avv\.|Ing\.|Arch\.|Geom\.|Prof\.ssa|Prof\.)(?!\w)"
)
TEMPLATE_SALUTATION_PATTERN = r"(?:egr_sig|egr_dott|gentma_sigra|gentmo_sig)"
GREETING_PATTERN = r"(?i:buongiorno|buonasera|salve|ciao)"

_MAX_NAME_LENGTH = 60


def _clean_name(raw: str) -> str | None:
    name = " ".join(raw.split()).strip(" .,;:!?")
    if not name or len(name) > _MAX_NAME_LENGTH:
        return None
    return name


def _name_group(match: re.Match[str], context: ExtractionContext) -> str | None:  # noqa: ARG001
    return _clean_name(match.group("name"))


NAME_RULES: tuple[ExtractionRule[str], ...] = (
    ExtractionRule(
        "formal_honorific",
        re.compile(
            rf"(?<!\w){HONORIFIC_PATTERN}(?:\s*{HONORIFIC_PATTERN})*\s+(?P<name>[^,\n]+?)\s*,",
            re.IGNORECASE,
        ),
        _name_group,
    ),
    ExtractionRule(
        "template_salutation",
        re.compile(
            rf"(?<![^\W_]){TEMPLATE_SALUTATION_PATTERN}\s+(?P<name>[^,\n]+?)\s*(?:,|$)",
            re.IGNORECASE | re.MULTILINE,
        ),
        _name_group,
    ),
    ExtractionRule(
        "informal_greeting_comma",
        re.compile(rf"(?<!\w){GREETING_PATTERN}\s+(?P<name>[A-ZÀ-Ý][^,\n]*?)\s*,"),
        _name_group,
    ),
    ExtractionRule(
        "informal_greeting_single_word",
        re.compile(rf"(?<!\w){GREETING_PATTERN}\s+(?P<name>[A-ZÀ-Ý][\w']*)"),
        _name_group,
    ),
)


_SALUTATION_RE = re.compile(
    rf"(?<![^\W_])(?:{HONORIFIC_PATTERN}|{TEMPLATE_SALUTATION_PATTERN}(?!\w))",
    re.IGNORECASE,
)


def extract_salutation(text: str) -> str:
    """First honorific token in *text*, or :data:`DEFAULT_SALUTATION`."""
    match = _SALUTATION_RE.search(text)
    return match.group(0) if match else DEFAULT_SALUTATION


# ---------------------------------------------------------------------------
# Appointment start
# ---------------------------------------------------------------------------

_ANCHOR = r"appuntamento\s+di\s+"
_WEEKDAY_DATE = rf"{WEEKDAY_PATTERN}\s+\d{{1,2}}/\d{{1,2}}(?![/\d])"
_CONFIRM = r"\bconferm\w*"
_AGREE = r"\bva\s+bene\b"


def _date_time_groups(match: re.Match[str], context: ExtractionContext) -> datetime | None:
    return resolve_date_time(
        match.group("date"),
        match.group("time"),
        now=context.now,
        timezone=context.timezone,
        rollover_days=context.rollover_days,
    )


def _date_rule(name: str, pattern: str) -> ExtractionRule[datetime]:
    return ExtractionRule(name, re.compile(pattern, re.IGNORECASE | re.DOTALL), _date_time_groups)


DATE_TIME_RULES: tuple[ExtractionRule[datetime], ...] = (
    _date_rule(
        "weekday_date_alle_ore",
        rf"{_ANCHOR}(?P<date>{_WEEKDAY_DATE})\s*,?\s*alle\s+ore\s+(?P<time>\d{{1,2}}[:.]\d{{2}})",
    ),
    _date_rule(
        "weekday_date_ore_time",
        rf"{_ANCHOR}(?P<date>{_WEEKDAY_DATE})\s*,?\s*ore\s+(?P<time>\d{{1,2}}[:.]\d{{2}})",
    ),
    _date_rule(
        "weekday_date_ore_hour",
        rf"{_ANCHOR}(?P<date>{_WEEKDAY_DATE})\s*,?\s*(?:alle\s+)?(?:ore\s+)?"
        rf"(?P<time>\d{{1,2}})(?![\d/]|[:.]\d)",
    ),
    _date_rule(
        "iso_date_ore",
        rf"{_ANCHOR}(?P<date>\d{{4}}-\d{{1,2}}-\d{{1,2}})\s*,?\s*(?:alle\s+)?ore\s+"
        rf"(?P<time>{TIME_PATTERN})",
    ),
    _date_rule(
        "numeric_date_ore",
        rf"{_ANCHOR}(?P<date>\d{{1,2}}/\d{{1,2}}/\d{{4}})\s*,?\s*(?:alle\s+)?ore\s+"
        rf"(?P<time>{TIME_PATTERN})",
    ),
    _date_rule(
        "confirm_relative_day",
        rf"{_CONFIRM}.*?\b(?P<date>oggi|domani)\b.*?\balle\s+(?:ore\s+)?(?P<time>{TIME_PATTERN})",
    ),
    _date_rule(
        "agree_relative_day",
        rf"{_AGREE}.*?\b(?P<date>oggi|domani)\b.*?\balle\s+(?:ore\s+)?(?P<time>{TIME_PATTERN})",
    ),
    _date_rule(
        "confirm_weekday_date",
        rf"(?:{_CONFIRM}|{_AGREE}).*?(?P<date>{_WEEKDAY_DATE})\s*,?\s*(?:alle\s+)?(?:ore\s+)?"
        rf"(?P<time>{TIME_PATTERN})",
    ),
    _date_rule(
        "confirm_weekday_only",
        rf"(?:{_CONFIRM}|{_AGREE}).*?\b(?P<date>{WEEKDAY_PATTERN})(?!\w)\s*,?\s*"
        rf"(?:alle\s+ore|alle|ore)\s+(?P<time>{TIME_PATTERN})",
    ),
)


# ---------------------------------------------------------------------------
# Address
# ---------------------------------------------------------------------------

# A period only terminates when followed by whitespace or end of text, so
# abbreviations such as "V.le" stay inside the address.
_ADDRESS_END = r"(?=\s*\.(?:\s|$)|\s*$|\s+(?:Per|La|Attendo)\b)"
_STREET_PREFIX = (
    r"(?:Via|Viale|V\.le|Piazza|P\.za|Piazzale|Corso|C\.so|Largo|Vicolo|Strada|Località)"
)


def _address_group(match: re.Match[str], context: ExtractionContext) -> str | None:  # noqa: ARG001
    address = " ".join(match.group("address").split()).rstrip(" ,")
    return address or None


ADDRESS_RULES: tuple[ExtractionRule[str], ...] = (
    ExtractionRule(
        "in_place",
        re.compile(rf"(?<!\w)(?i:in)\s+(?P<address>[^\n]+?){_ADDRESS_END}", re.MULTILINE),
        _address_group,
    ),
    ExtractionRule(
        "presso_place",
        re.compile(rf"(?<!\w)(?i:presso)\s+(?P<address>[^\n]+?){_ADDRESS_END}", re.MULTILINE),
        _address_group,
    ),
    ExtractionRule(
        "a_street",
        re.compile(
            rf"(?<!\w)(?i:a)\s+(?P<address>{_STREET_PREFIX}\s[^\n]+?){_ADDRESS_END}",
            re.MULTILINE,
        ),
        _address_group,
    ),
)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def is_test_message(
    text: str, sender: str | None, denylist: Sequence[DenylistEntry] = DEFAULT_TEST_DENYLIST
) -> bool:
    return any(entry.matches(text, sender) for entry in denylist)


class AppointmentExtractor:
    """Stateless extractor bound to a timezone, rollover threshold and denylist."""

    def __init__(
        self,
        *,
        timezone: str = DEFAULT_TIMEZONE,
        rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
        denylist: Sequence[DenylistEntry] = DEFAULT_TEST_DENYLIST,
    ) -> None:
        self.timezone = timezone
        self.rollover_days = rollover_days
        self.denylist = tuple(denylist)

    def extract(
        self, text: str, sender: str, *, now: datetime | None = None
    ) -> AppointmentData | None:
        """Parse *text* sent by *sender*; ``None`` means "not an appointment"."""
        if not isinstance(text, str) or not text.strip():
            return None

        if is_test_message(text, sender, self.denylist):
            logger.info("Ignoring denylisted test message from %s", sender)
            return None

        context = ExtractionContext(
            now=now or local_now(self.timezone),
            timezone=self.timezone,
            rollover_days=self.rollover_days,
        )

        name_hit = first_match(NAME_RULES, text, context)
        if name_hit is None:
            logger.debug("No client name found in message from %s", sender)
            return None

        start_hit = first_match(DATE_TIME_RULES, text, context)
        if start_hit is None:
            logger.debug("No resolvable appointment date in message from %s", sender)
            return None

        address_hit = first_match(ADDRESS_RULES, text, context)

        appointment = AppointmentData(
            client_name=name_hit[1],
            salutation=extract_salutation(text),
            phone=sender,
            appointment_start=start_hit[1],
            address=address_hit[1] if address_hit else ADDRESS_UNSPECIFIED,
        )
        logger.info(
            "Extracted appointment (name_rule=%s, date_rule=%s, address_rule=%s, start=%s)",
            name_hit[0],
            start_hit[0],
            address_hit[0] if address_hit else None,
            appointment.appointment_start.isoformat(),
        )
        return appointment


def extract_appointment(
    text: str,
    sender: str,
    *,
    now: datetime | None = None,
    timezone: str = DEFAULT_TIMEZONE,
    rollover_days: int = PAST_DATE_ROLLOVER_DAYS,
    denylist: Sequence[DenylistEntry] = DEFAULT_TEST_DENYLIST,
) -> AppointmentData | None:
    extractor = AppointmentExtractor(
        timezone=timezone, rollover_days=rollover_days, denylist=denylist
    )
    return extractor.extract(text, sender, now=now)
