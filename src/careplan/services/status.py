"""Occurrence status parsing and display-status resolution."""

from __future__ import annotations

from datetime import date
from typing import Optional, Union

from ..domain.entities import DisplayStatus, Occurrence, OccurrenceStatus
from ..errors import InvalidStatusError

_ALIASES = {
    "due": OccurrenceStatus.DUE,
    "overdue": OccurrenceStatus.OVERDUE,
    "waiting verification": OccurrenceStatus.WAITING_VERIFICATION,
    "pending verification": OccurrenceStatus.WAITING_VERIFICATION,
    "complete": OccurrenceStatus.COMPLETED,
    "completed": OccurrenceStatus.COMPLETED,
}


def parse_occurrence_status(raw: Union[str, OccurrenceStatus]) -> OccurrenceStatus:
    """Map loosely spelled status strings onto the closed status enum.

    Case, surrounding whitespace, and ``_``/``-`` separators are ignored.
    Unrecognized values are rejected rather than defaulted.
    """

    if isinstance(raw, OccurrenceStatus):
        return raw
    if isinstance(raw, str):
        key = " ".join(raw.replace("_", " ").replace("-", " ").lower().split())
        status = _ALIASES.get(key)
        if status is not None:
            return status
    raise InvalidStatusError("Unrecognized occurrence status", field="status", value=raw)


def resolve_status(occurrence: Occurrence, today: date) -> DisplayStatus:
    """Display status for an occurrence as of ``today``.

    Derived on every call; "overdue" depends on the date, so it is never stored.
    """

    if parse_occurrence_status(occurrence.status) is OccurrenceStatus.COMPLETED:
        return DisplayStatus.COMPLETED
    if occurrence.date < today:
        return DisplayStatus.OVERDUE
    return DisplayStatus.PENDING


def next_due_status(next_due: Optional[date], today: date) -> DisplayStatus:
    """Classify a care item by its next due date."""

    if next_due is None:
        return DisplayStatus.PENDING
    if next_due < today:
        return DisplayStatus.OVERDUE
    if next_due == today:
        return DisplayStatus.DUE
    return DisplayStatus.PENDING


__all__ = ["next_due_status", "parse_occurrence_status", "resolve_status"]
