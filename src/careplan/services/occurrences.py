"""Occurrence lifecycle: idempotent materialization, completion, and append-only logs."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Iterable, Optional, TypeVar

from ..domain.clock import Clock, as_utc
from ..domain.entities import Occurrence, OccurrenceStatus, normalize_slug, require_client_id
from ..domain.repositories.occurrence import OccurrenceRepository
from ..errors import (
    AlreadyCompletedError,
    ConflictingCompletionError,
    InvalidMoneyError,
    InvalidTransitionError,
    OccurrenceNotFoundError,
    ValidationError,
)
from ..infra.retry import DEFAULT_POLICY, RetryPolicy, retry_transient
from ..logging_config import get_logger
from ..money import Money, to_cents
from .recurrence import DateLike, to_date

logger = get_logger("services.occurrences")

T = TypeVar("T")

# Called after a cost-bearing completion with the completed occurrence and the cost in cents.
SpendCallback = Callable[[Occurrence, int], None]

_OPEN_STATUSES = (
    OccurrenceStatus.DUE,
    OccurrenceStatus.OVERDUE,
    OccurrenceStatus.WAITING_VERIFICATION,
)
_CLEARED_COMPLETION = {
    "cost": None,
    "completed_on": None,
    "completed_by": None,
    "completed_at": None,
}


class OccurrenceStore:
    """Owns occurrence rows and their status transitions."""

    MAX_WINDOW_DAYS = 93

    def __init__(
        self,
        repository: OccurrenceRepository,
        *,
        clock: Clock,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.retry_policy = retry_policy

    def _retry(self, operation: Callable[[], T], description: str) -> T:
        return retry_transient(operation, policy=self.retry_policy, description=description)

    def materialize(self, client_id: str, care_item_slug: str, on: DateLike) -> Occurrence:
        """Get or create the occurrence for ``(client, slug, day)`` with status Due.

        Re-running for the same identity returns the existing row unchanged.
        """
        client = require_client_id(client_id)
        slug = normalize_slug(care_item_slug)
        if not slug:
            raise ValidationError("care_item_slug is required", field="care_item_slug")
        day = to_date(on)
        key = day.isoformat()

        occurrence, created = self._retry(
            lambda: self.repository.get_or_create(client, slug, day, key),
            "materialize occurrence",
        )
        if created:
            logger.info(
                "Materialized occurrence",
                extra={"client_id": client, "care_item_slug": slug, "date_key": key, "occurrence_id": occurrence.id},
            )
        return occurrence

    def get(self, occurrence_id: int) -> Occurrence:
        occurrence = self._retry(lambda: self.repository.get_by_id(occurrence_id), "load occurrence")
        if occurrence is None:
            raise OccurrenceNotFoundError("Occurrence not found", occurrence_id=occurrence_id)
        return occurrence

    def record_completion(
        self,
        occurrence_id: int,
        completion_date: DateLike,
        cost: Optional[Money] = None,
        *,
        completed_by: Optional[str] = None,
        allow_recomplete: bool = False,
        on_spend: Optional[SpendCallback] = None,
    ) -> Occurrence:
        """Mark an occurrence Completed, charging ``cost`` through ``on_spend``.

        The status change is a compare-and-set, so of two concurrent
        completions exactly one charges the budget. If the spend callback
        fails, the completion is rolled back to the previous status and the
        error propagates.
        """
        cost_cents = to_cents(cost, field="cost") if cost is not None else None
        if cost_cents is not None and cost_cents < 0:
            raise InvalidMoneyError("Completion cost cannot be negative", field="cost", value=str(cost))
        completed_on = to_date(completion_date, field="completion_date")

        current = self.get(occurrence_id)
        if current.status is OccurrenceStatus.COMPLETED:
            return self._recomplete(current, cost_cents, allow_recomplete)

        previous = current.status
        won = self._retry(
            lambda: self.repository.compare_and_set_status(
                occurrence_id,
                expected=_OPEN_STATUSES,
                status=OccurrenceStatus.COMPLETED,
                cost=cost_cents,
                completed_on=completed_on,
                completed_by=completed_by,
                completed_at=self.clock.now(),
            ),
            "complete occurrence",
        )
        if not won:
            # Another writer completed it between our read and the update.
            return self._recomplete(self.get(occurrence_id), cost_cents, allow_recomplete)

        completed = self.get(occurrence_id)
        if cost_cents is not None and on_spend is not None:
            try:
                on_spend(completed, cost_cents)
            except Exception:
                logger.warning(
                    "Spend rejected; reverting completion",
                    extra={"occurrence_id": occurrence_id, "cost_cents": cost_cents},
                )
                self._retry(
                    lambda: self.repository.compare_and_set_status(
                        occurrence_id,
                        expected=(OccurrenceStatus.COMPLETED,),
                        status=previous,
                        **_CLEARED_COMPLETION,
                    ),
                    "revert completion",
                )
                raise

        logger.info(
            "Recorded completion",
            extra={
                "occurrence_id": occurrence_id,
                "client_id": completed.client_id,
                "care_item_slug": completed.care_item_slug,
                "completed_on": completed_on.isoformat(),
                "cost_cents": cost_cents,
            },
        )
        return completed

    def _recomplete(
        self, current: Occurrence, cost_cents: Optional[int], allow_recomplete: bool
    ) -> Occurrence:
        if not allow_recomplete:
            raise AlreadyCompletedError(
                "Occurrence is already completed", occurrence_id=current.id
            )
        if current.cost != cost_cents:
            raise ConflictingCompletionError(
                "Occurrence was completed with a different cost",
                occurrence_id=current.id,
                recorded_cost_cents=current.cost,
                requested_cost_cents=cost_cents,
            )
        return current

    def mark_done(
        self,
        occurrence_id: int,
        *,
        done_by: str,
        done_at: Optional[datetime] = None,
        comment: Optional[str] = None,
        file_ref: Optional[str] = None,
    ) -> Occurrence:
        """Carer marks the occurrence done; it then waits for verification.

        The optional comment and file are attached in the same write as the
        status change.
        """
        if not done_by or not done_by.strip():
            raise ValidationError("done_by is required", field="done_by")
        comments = [comment.strip()] if comment and comment.strip() else []
        files = [file_ref.strip()] if file_ref and file_ref.strip() else []
        stamp = as_utc(done_at) or self.clock.now()
        moved = self._retry(
            lambda: self.repository.compare_and_set_status(
                occurrence_id,
                expected=(OccurrenceStatus.DUE, OccurrenceStatus.OVERDUE),
                status=OccurrenceStatus.WAITING_VERIFICATION,
                comments=comments,
                files=files,
                done_by=done_by.strip(),
                done_at=stamp,
            ),
            "mark occurrence done",
        )
        if not moved:
            current = self.get(occurrence_id)
            raise InvalidTransitionError(
                "Occurrence cannot be marked done from its current status",
                occurrence_id=occurrence_id,
                status=current.status.value,
            )
        logger.info("Occurrence marked done", extra={"occurrence_id": occurrence_id, "done_by": done_by})
        return self.get(occurrence_id)

    def append_comment(self, occurrence_id: int, text: str) -> Occurrence:
        body = (text or "").strip()
        if not body:
            raise ValidationError("Comment text is required", field="text")
        if not self._retry(lambda: self.repository.append_comment(occurrence_id, body), "append comment"):
            raise OccurrenceNotFoundError("Occurrence not found", occurrence_id=occurrence_id)
        return self.get(occurrence_id)

    def append_file(self, occurrence_id: int, file_ref: str) -> Occurrence:
        ref = (file_ref or "").strip()
        if not ref:
            raise ValidationError("File reference is required", field="file_ref")
        if not self._retry(lambda: self.repository.append_file(occurrence_id, ref), "append file"):
            raise OccurrenceNotFoundError("Occurrence not found", occurrence_id=occurrence_id)
        return self.get(occurrence_id)

    def list_window(
        self,
        client_id: str,
        start: DateLike,
        end: DateLike,
        slugs: Optional[Iterable[str]] = None,
    ) -> list[Occurrence]:
        """Occurrences for a client between two days inclusive, at most 93 days wide."""
        client = require_client_id(client_id)
        first = to_date(start, field="start")
        last = to_date(end, field="end")
        if first > last:
            raise ValidationError("start must be on or before end", field="start")
        if (last - first).days + 1 > self.MAX_WINDOW_DAYS:
            raise ValidationError(
                f"Date window too large (> {self.MAX_WINDOW_DAYS} days)",
                field="end",
                start=first.isoformat(),
                end=last.isoformat(),
            )
        wanted = list(slugs) if slugs else None
        return self._retry(
            lambda: self.repository.list_between(client, first, last, wanted), "list occurrences"
        )

    def remove_care_item(self, client_id: str, care_item_slug: str) -> int:
        """Administrative removal of every occurrence belonging to a care item."""
        client = require_client_id(client_id)
        slug = normalize_slug(care_item_slug)
        removed = self._retry(
            lambda: self.repository.delete_for_care_item(client, slug), "remove care item"
        )
        logger.info(
            "Removed care item occurrences",
            extra={"client_id": client, "care_item_slug": slug, "removed": removed},
        )
        return removed
