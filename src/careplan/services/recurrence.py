"""Recurrence rules and calendar arithmetic for care items.

Everything here is pure: no clock, no storage.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

from dateutil.relativedelta import relativedelta

from ..domain.entities import RecurrenceUnit
from ..errors import IncompleteRuleError, InvalidRecurrenceRuleError, ValidationError

DateLike = Union[date, datetime, str]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Upper bound on generated dates per call.
MAX_GENERATED = 2048


def to_date(value: DateLike, *, field: str = "date") -> date:
    """Normalize a date, datetime, or ISO string to a calendar date.

    A datetime contributes its own calendar date; no time-zone conversion is
    applied, so the same wall-clock day always yields the same key.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if _ISO_DATE.match(text):
                return date.fromisoformat(text)
            if len(text) > 10 and _ISO_DATE.match(text[:10]):
                return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError as exc:
            raise ValidationError("Impossible calendar date", field=field, value=value) from exc
    raise ValidationError("Expected a date or YYYY-MM-DD string", field=field, value=value)


def date_key(value: DateLike) -> str:
    """Time-zone independent ``YYYY-MM-DD`` key used in occurrence identity."""

    return to_date(value).isoformat()


def parse_unit(raw: Union[str, RecurrenceUnit]) -> RecurrenceUnit:
    if isinstance(raw, RecurrenceUnit):
        return raw
    if isinstance(raw, str):
        text = raw.strip().lower()
        if text.endswith("s"):
            text = text[:-1]
        try:
            return RecurrenceUnit(text)
        except ValueError:
            pass
    raise InvalidRecurrenceRuleError("Unknown recurrence unit", field="unit", value=raw)


def add_interval(start: date, count: int, unit: RecurrenceUnit) -> date:
    """Add ``count`` units to ``start`` using calendar arithmetic.

    Month and year steps keep the day of month, clamped to the last day of the
    target month (Jan 31 + 1 month -> Feb 28 or 29).
    """

    unit = parse_unit(unit)
    if unit is RecurrenceUnit.DAY:
        step = timedelta(days=count)
    elif unit is RecurrenceUnit.WEEK:
        step = timedelta(weeks=count)
    elif unit is RecurrenceUnit.MONTH:
        step = relativedelta(months=count)
    else:
        step = relativedelta(years=count)
    try:
        return start + step
    except (OverflowError, ValueError) as exc:
        raise InvalidRecurrenceRuleError(
            "Recurrence step leaves the supported calendar range",
            field="count",
            start=start.isoformat(),
            count=count,
            unit=unit.value,
        ) from exc


def exact_span_days(start: DateLike, count: int, unit: Union[str, RecurrenceUnit]) -> int:
    """Number of calendar days covered by one interval beginning at ``start``."""

    origin = to_date(start, field="start")
    return (add_interval(origin, count, parse_unit(unit)) - origin).days


@dataclass(frozen=True)
class RecurrenceRule:
    """Every ``count`` ``unit``s, optionally bounded by a start and an end date."""

    count: int
    unit: RecurrenceUnit
    start_date: Optional[date] = None
    range_end: Optional[date] = None

    def __post_init__(self) -> None:
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count < 1:
            raise InvalidRecurrenceRuleError(
                "Recurrence count must be a positive integer", field="count", value=self.count
            )
        if not isinstance(self.unit, RecurrenceUnit):
            raise InvalidRecurrenceRuleError("Unknown recurrence unit", field="unit", value=self.unit)
        if self.start_date and self.range_end and self.range_end < self.start_date:
            raise InvalidRecurrenceRuleError(
                "Range end precedes start date",
                field="range_end",
                start_date=self.start_date.isoformat(),
                range_end=self.range_end.isoformat(),
            )

    @classmethod
    def parse(
        cls,
        count: object,
        unit: Union[str, RecurrenceUnit],
        start: Optional[DateLike] = None,
        end: Optional[DateLike] = None,
    ) -> "RecurrenceRule":
        """Build a rule from loosely typed input (form values, catalog documents)."""

        if isinstance(count, str) and count.strip().isdigit():
            count = int(count.strip())
        try:
            start_date = to_date(start, field="start_date") if start else None
            range_end = to_date(end, field="range_end") if end else None
        except ValidationError as exc:
            raise InvalidRecurrenceRuleError(exc.message, **exc.details) from exc
        return cls(
            count=count,  # type: ignore[arg-type]
            unit=parse_unit(unit),
            start_date=start_date,
            range_end=range_end,
        )

    def anchor_date(self, last_completed: Optional[date] = None) -> date:
        """Date the next interval is counted from."""

        if last_completed is not None:
            return last_completed
        if self.start_date is not None:
            return self.start_date
        raise IncompleteRuleError(
            "Rule has no completion history and no start date",
            count=self.count,
            unit=self.unit.value,
        )

    def allows(self, candidate: date) -> bool:
        return self.range_end is None or candidate <= self.range_end

    def step(self, anchor: date, n: int) -> date:
        """The n-th due date counted from ``anchor``; never accumulates clamping."""

        return add_interval(anchor, self.count * n, self.unit)


def compute_next_due(last_event_date: Optional[DateLike], rule: RecurrenceRule) -> Optional[date]:
    """Next due date after ``last_event_date`` (or the rule's start when None).

    Returns None when the computed date falls after ``rule.range_end``.
    """

    last = to_date(last_event_date, field="last_event_date") if last_event_date else None
    candidate = rule.step(rule.anchor_date(last), 1)
    if not rule.allows(candidate):
        return None
    return candidate


def due_dates(
    rule: RecurrenceRule,
    *,
    window_start: DateLike,
    window_end: DateLike,
    last_completed: Optional[DateLike] = None,
    limit: Optional[int] = None,
) -> list[date]:
    """Due dates inside ``[window_start, window_end]``, never past ``rule.range_end``.

    With a completion on or after the start date, the first due date is one
    interval after that completion; otherwise the start date itself is due.
    """

    start = to_date(window_start, field="window_start")
    end = to_date(window_end, field="window_end")
    if end < start:
        raise ValidationError("Window end precedes window start", field="window_end")
    last = to_date(last_completed, field="last_completed") if last_completed else None

    if last is not None and (rule.start_date is None or last >= rule.start_date):
        anchor, n = last, 1
    elif rule.start_date is not None:
        anchor, n = rule.start_date, 0
    else:
        raise IncompleteRuleError(
            "Rule has no completion history and no start date",
            count=rule.count,
            unit=rule.unit.value,
        )

    cap = MAX_GENERATED if limit is None else max(0, min(limit, MAX_GENERATED))
    # Jump close to the window for fixed-length units instead of stepping day by day.
    if rule.unit in (RecurrenceUnit.DAY, RecurrenceUnit.WEEK):
        span = exact_span_days(anchor, rule.count, rule.unit)
        gap = (start - anchor).days
        if gap > 0:
            n = max(n, gap // span)

    current = rule.step(anchor, n)
    while current < start:
        n += 1
        current = rule.step(anchor, n)

    out: list[date] = []
    while current <= end and rule.allows(current) and len(out) < cap:
        out.append(current)
        n += 1
        current = rule.step(anchor, n)
    return out


__all__ = [
    "DateLike",
    "RecurrenceRule",
    "add_interval",
    "compute_next_due",
    "date_key",
    "due_dates",
    "exact_span_days",
    "parse_unit",
    "to_date",
]
