"""
Recurrence rule handling and occurrence expansion.

Recurring events store a compact iCalendar-style rule string on their anchor
record only:
- Rules are parsed leniently (hand-edited strings never raise)
- Occurrences are generated on demand for a query window
- The anchor is always occurrence #1 and is never generated twice

Expansion is delegated to python-dateutil's rrule.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional

from dateutil.parser import isoparse
from dateutil.rrule import DAILY, MO, MONTHLY, WEEKLY, YEARLY, rrule

logger = logging.getLogger(__name__)

ANCHOR_TOLERANCE = timedelta(seconds=60)

_DAY_CODES = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")
_DAY_NAMES = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class EndCondition(str, Enum):
    NEVER = "never"
    UNTIL = "until"
    COUNT = "count"


@dataclass(frozen=True)
class RecurrenceRule:
    """
    Parsed recurrence rule.

    ``weekdays`` uses Python weekday numbers (0=Monday ... 6=Sunday) and only
    applies to weekly rules; ``month_day`` only applies to monthly rules.
    When unset, both default to the anchor's own weekday/day at expansion.
    """

    frequency: Optional[Frequency] = None
    interval: int = 1
    weekdays: Optional[frozenset[int]] = None
    month_day: Optional[int] = None
    until: Optional[date] = None
    count: Optional[int] = None
    enabled: bool = True

    def __post_init__(self):
        if self.interval < 1:
            raise ValueError(f"interval must be positive, got {self.interval}")
        if self.count is not None and self.count < 1:
            raise ValueError(f"count must be positive, got {self.count}")
        if self.count is not None and self.until is not None:
            raise ValueError("a rule ends either by count or by until date, not both")
        if self.month_day is not None and not 1 <= self.month_day <= 31:
            raise ValueError(f"month_day out of range: {self.month_day}")
        if self.weekdays is not None and not all(0 <= d <= 6 for d in self.weekdays):
            raise ValueError(f"weekdays out of range: {sorted(self.weekdays)}")

    @property
    def is_recurring(self) -> bool:
        """False when the rule is disabled or names no frequency."""
        return self.enabled and self.frequency is not None

    @property
    def end_condition(self) -> EndCondition:
        if self.count is not None:
            return EndCondition.COUNT
        if self.until is not None:
            return EndCondition.UNTIL
        return EndCondition.NEVER

    @property
    def weekday_mask(self) -> int:
        """Weekday set as a 7-bit mask, bit 0 = Monday."""
        mask = 0
        for day in self.weekdays or ():
            mask |= 1 << day
        return mask


@dataclass(frozen=True)
class Occurrence:
    """One expanded instance of a recurring anchor."""

    start: datetime
    end: Optional[datetime]
    is_anchor: bool = False


# =============================================================================
# Parsing & serialization
# =============================================================================


def _positive_int(value: str) -> Optional[int]:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _parse_until(value: str) -> Optional[date]:
    """Accept YYYYMMDD, YYYY-MM-DD or an instant whose date part is used."""
    try:
        return isoparse(value).date()
    except (ValueError, OverflowError):
        return None


def _parse_weekdays(value: str) -> Optional[frozenset[int]]:
    days = set()
    for code in value.split(","):
        code = code.strip().upper()
        if code in _DAY_CODES:
            days.add(_DAY_CODES.index(code))
        elif code:
            logger.debug(f"Ignoring unrecognized BYDAY value '{code}'")
    return frozenset(days) if days else None


def _rule_body(rule_string: str) -> str:
    """Strip an RRULE: prefix, picking the RRULE line out of multi-line input."""
    text = rule_string.strip()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    for line in lines:
        if line.upper().startswith("RRULE:"):
            return line[len("RRULE:"):]
    return lines[-1] if lines else ""


def parse_rule(rule_string: Optional[str]) -> RecurrenceRule:
    """
    Parse a rule string into a RecurrenceRule.

    Never raises: unknown keys and malformed values are skipped and every
    recognized token is applied. A string with no usable FREQ yields a
    disabled rule.

    Args:
        rule_string: Rule such as 'FREQ=WEEKLY;BYDAY=MO,WE;COUNT=10'

    Returns:
        RecurrenceRule (``enabled=False`` when nothing usable was found)
    """
    if not rule_string or not rule_string.strip():
        return RecurrenceRule(enabled=False)

    tokens: dict[str, str] = {}
    for part in _rule_body(rule_string).split(";"):
        key, sep, value = part.partition("=")
        if not sep:
            if part.strip():
                logger.debug(f"Ignoring malformed rule token '{part}'")
            continue
        tokens[key.strip().upper()] = value.strip()

    try:
        frequency = Frequency(tokens.get("FREQ", "").upper())
    except ValueError:
        logger.debug(f"Rule '{rule_string}' has no recognized FREQ; treating as non-recurring")
        return RecurrenceRule(enabled=False)

    interval = _positive_int(tokens.get("INTERVAL", "")) or 1

    weekdays = None
    if frequency == Frequency.WEEKLY and "BYDAY" in tokens:
        weekdays = _parse_weekdays(tokens["BYDAY"])

    month_day = None
    if frequency == Frequency.MONTHLY and "BYMONTHDAY" in tokens:
        day = _positive_int(tokens["BYMONTHDAY"])
        if day is not None and day <= 31:
            month_day = day

    count = _positive_int(tokens.get("COUNT", ""))
    until = None
    if count is None and "UNTIL" in tokens:
        until = _parse_until(tokens["UNTIL"])

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        weekdays=weekdays,
        month_day=month_day,
        until=until,
        count=count,
    )


def serialize_rule(rule: RecurrenceRule) -> str:
    """
    Serialize a rule to its canonical string form.

    Disabled rules serialize to an empty string. The output is stable:
    serialize_rule(parse_rule(s)) == s for every s this function produced.
    """
    if not rule.is_recurring:
        return ""

    parts = [f"FREQ={rule.frequency.value}"]
    if rule.interval > 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.frequency == Frequency.WEEKLY and rule.weekdays:
        parts.append("BYDAY=" + ",".join(_DAY_CODES[d] for d in sorted(rule.weekdays)))
    if rule.frequency == Frequency.MONTHLY and rule.month_day is not None:
        parts.append(f"BYMONTHDAY={rule.month_day}")
    if rule.count is not None:
        parts.append(f"COUNT={rule.count}")
    elif rule.until is not None:
        parts.append(f"UNTIL={rule.until.strftime('%Y%m%d')}")
    return ";".join(parts)


def normalize_rule_string(rule_string: Optional[str]) -> Optional[str]:
    """Canonical form of a stored rule string, or None when it does not recur."""
    return serialize_rule(parse_rule(rule_string)) or None


def describe_rule(rule: RecurrenceRule) -> str:
    """Human-readable summary, e.g. 'Every 2 weeks (Mon, Fri) (6 occurrences)'."""
    if not rule.is_recurring:
        return "Does not repeat"

    single, unit = {
        Frequency.DAILY: ("Daily", "days"),
        Frequency.WEEKLY: ("Weekly", "weeks"),
        Frequency.MONTHLY: ("Monthly", "months"),
        Frequency.YEARLY: ("Yearly", "years"),
    }[rule.frequency]
    text = single if rule.interval == 1 else f"Every {rule.interval} {unit}"

    if rule.frequency == Frequency.WEEKLY and rule.weekdays:
        text += " (" + ", ".join(_DAY_NAMES[d] for d in sorted(rule.weekdays)) + ")"
    if rule.frequency == Frequency.MONTHLY and rule.month_day is not None:
        text += f" on day {rule.month_day}"

    if rule.count is not None:
        text += f" ({rule.count} occurrences)"
    elif rule.until is not None:
        text += f" until {rule.until.strftime('%d/%m/%Y')}"
    return text


# =============================================================================
# Expansion
# =============================================================================

_RRULE_FREQUENCIES = {
    Frequency.DAILY: DAILY,
    Frequency.WEEKLY: WEEKLY,
    Frequency.MONTHLY: MONTHLY,
    Frequency.YEARLY: YEARLY,
}


def _build_rrule(anchor_start: datetime, rule: RecurrenceRule) -> rrule:
    """
    Build the dateutil rrule for a parsed rule, without any COUNT.

    Weeks start on Monday so weekly intervals count from the anchor's week.
    Month days past the end of a month clamp to its last day, and a Feb 29
    yearly anchor lands on Feb 28 outside leap years.
    """
    kwargs = {
        "dtstart": anchor_start,
        "interval": rule.interval,
        "wkst": MO,
    }

    if rule.frequency == Frequency.WEEKLY:
        kwargs["byweekday"] = sorted(rule.weekdays or {anchor_start.weekday()})

    elif rule.frequency == Frequency.MONTHLY:
        target_day = rule.month_day or anchor_start.day
        if target_day > 28:
            # Last existing day among 28..target in each month
            kwargs["bymonthday"] = tuple(range(28, target_day + 1))
            kwargs["bysetpos"] = -1
        else:
            kwargs["bymonthday"] = target_day

    elif rule.frequency == Frequency.YEARLY and (anchor_start.month, anchor_start.day) == (2, 29):
        kwargs["bymonth"] = 2
        kwargs["bymonthday"] = (28, 29)
        kwargs["bysetpos"] = -1

    if rule.until is not None:
        kwargs["until"] = datetime.combine(rule.until, time.max, tzinfo=anchor_start.tzinfo)

    return rrule(_RRULE_FREQUENCIES[rule.frequency], **kwargs)


def _series(anchor_start: datetime, rule: RecurrenceRule) -> rrule:
    """
    The rrule producing every occurrence of the series.

    COUNT includes the anchor, which the rrule only yields itself when the
    anchor matches the pattern.
    """
    series = _build_rrule(anchor_start, rule)
    if rule.count is None:
        return series

    first = next(iter(series), None)
    anchor_matches = first is not None and _restore_microsecond(first, anchor_start) == anchor_start
    return series.replace(count=rule.count if anchor_matches else rule.count - 1)


def _restore_microsecond(instant: datetime, anchor_start: datetime) -> datetime:
    # rrule truncates dtstart to whole seconds
    return instant.replace(microsecond=anchor_start.microsecond)


def expand(
    anchor_start: datetime,
    anchor_end: Optional[datetime],
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    max_occurrences: Optional[int] = None,
    tolerance: timedelta = ANCHOR_TOLERANCE,
) -> list[Occurrence]:
    """
    Expand an anchor into the occurrences that start inside a window.

    The anchor itself is occurrence #1 and is returned (``is_anchor=True``)
    only when its own start lies in the window. Generated occurrences keep the
    anchor's duration. Expansion stops at the window end, after the UNTIL
    date (inclusive through that day), or once COUNT occurrences exist
    counting the anchor.

    Args:
        anchor_start: Start of the persisted anchor record
        anchor_end: End of the anchor (None for open-ended events)
        rule: Parsed recurrence rule
        window_start: Window start (inclusive)
        window_end: Window end (exclusive)
        max_occurrences: Safety limit on returned occurrences
        tolerance: Generated instants this close to the anchor are the anchor

    Returns:
        Occurrences ordered by start
    """
    duration = anchor_end - anchor_start if anchor_end is not None else None
    occurrences: list[Occurrence] = []

    def _limit_reached() -> bool:
        return max_occurrences is not None and len(occurrences) >= max_occurrences

    if window_start <= anchor_start < window_end:
        occurrences.append(Occurrence(anchor_start, anchor_end, is_anchor=True))

    if not rule.is_recurring or _limit_reached():
        return occurrences

    if rule.count is not None and rule.count <= 1:
        return occurrences

    for instant in _series(anchor_start, rule).xafter(window_start, inc=True):
        instant = _restore_microsecond(instant, anchor_start)
        if instant >= window_end:
            break
        if instant <= anchor_start or abs(instant - anchor_start) < tolerance:
            continue

        end = instant + duration if duration is not None else None
        occurrences.append(Occurrence(instant, end))
        if _limit_reached():
            logger.warning(
                f"Expansion of anchor at {anchor_start.isoformat()} hit the "
                f"{max_occurrences} occurrence limit"
            )
            break

    return occurrences


def preview(
    anchor_start: datetime,
    anchor_end: Optional[datetime],
    rule: RecurrenceRule,
    limit: int,
    after: Optional[datetime] = None,
) -> list[Occurrence]:
    """
    First ``limit`` occurrences from ``after`` (default: the anchor) onwards.

    Same expansion as expand(), with an open-ended window and a result cap.
    """
    window_start = after if after is not None else anchor_start
    window_end = datetime.max.replace(tzinfo=anchor_start.tzinfo)
    return expand(
        anchor_start,
        anchor_end,
        rule,
        window_start,
        window_end,
        max_occurrences=limit,
    )


def format_occurrence_date(instant: datetime) -> str:
    """ISO timestamp stamped on generated occurrences as ``occurrence_date``."""
    return instant.isoformat()
