"""Caller-facing operations that tie scheduling, completion and budgets together."""

from __future__ import annotations

from datetime import date, datetime
from typing import Iterable, Optional

from ..domain.clock import Clock
from ..domain.entities import (
    BudgetSummary,
    BudgetYear,
    DisplayStatus,
    Occurrence,
    RefundableLine,
    Transaction,
    require_client_id,
)
from ..domain.repositories.catalog import CareItemCatalog, CareItemRef
from ..errors import (
    IncompleteRuleError,
    InvalidTransitionError,
    OccurrenceNotFoundError,
    UnknownCategoryError,
)
from ..logging_config import get_logger
from ..money import Money
from .budgeting import BudgetAggregator
from .occurrences import OccurrenceStore
from .recurrence import DateLike, RecurrenceRule, compute_next_due, due_dates
from .rollover import YearRollover
from .status import resolve_status
from .transactions import PurchaseLine, RefundLine, TransactionLedger

logger = get_logger("services.coordinator")


class CareCoordinator:
    """Every operation takes the client explicitly; there is no default client."""

    def __init__(
        self,
        occurrences: OccurrenceStore,
        budget: BudgetAggregator,
        rollover: YearRollover,
        catalog: CareItemCatalog,
        clock: Clock,
        ledger: TransactionLedger,
    ) -> None:
        self.occurrences = occurrences
        self.budget = budget
        self.rollover = rollover
        self.ledger = ledger
        self.catalog = catalog
        self.clock = clock

    def _rule_for(self, client_id: str, care_item_slug: str) -> tuple[CareItemRef, RecurrenceRule]:
        ref = self.catalog.lookup(client_id, care_item_slug)
        if ref.rule is None:
            raise IncompleteRuleError(
                "Care item has no recurrence rule", client_id=client_id, care_item_slug=ref.slug
            )
        return ref, ref.rule

    def _owned(self, client_id: str, occurrence_id: int) -> Occurrence:
        client = require_client_id(client_id)
        occurrence = self.occurrences.get(occurrence_id)
        if occurrence.client_id != client:
            raise OccurrenceNotFoundError(
                "Occurrence not found", occurrence_id=occurrence_id, client_id=client
            )
        return occurrence

    # Scheduling --------------------------------------------------------------

    def materialize_occurrence(self, client_id: str, care_item_slug: str, on: DateLike) -> Occurrence:
        return self.occurrences.materialize(client_id, care_item_slug, on)

    def schedule_next(
        self, client_id: str, care_item_slug: str, last_completed: Optional[DateLike] = None
    ) -> Optional[Occurrence]:
        """Materialize the next due occurrence, or return None past the rule's range end."""
        client = require_client_id(client_id)
        ref, rule = self._rule_for(client, care_item_slug)
        next_due = compute_next_due(last_completed, rule)
        if next_due is None:
            logger.info(
                "No further occurrences in range",
                extra={"client_id": client, "care_item_slug": ref.slug},
            )
            return None
        return self.occurrences.materialize(client, ref.slug, next_due)

    def materialize_window(
        self,
        client_id: str,
        care_item_slug: str,
        start: DateLike,
        end: DateLike,
        *,
        last_completed: Optional[DateLike] = None,
    ) -> list[Occurrence]:
        client = require_client_id(client_id)
        ref, rule = self._rule_for(client, care_item_slug)
        dates = due_dates(rule, window_start=start, window_end=end, last_completed=last_completed)
        return [self.occurrences.materialize(client, ref.slug, day) for day in dates]

    # Lifecycle ---------------------------------------------------------------

    def record_completion(
        self,
        client_id: str,
        occurrence_id: int,
        completion_date: DateLike,
        cost: Optional[Money] = None,
        *,
        completed_by: Optional[str] = None,
        allow_recomplete: bool = False,
    ) -> Occurrence:
        """Complete an occurrence and charge ``cost`` to its care item's category.

        The charge lands in the budget year of the completion date.
        """
        self._owned(client_id, occurrence_id)

        def charge(completed: Occurrence, cents: int) -> None:
            ref = self.catalog.lookup(completed.client_id, completed.care_item_slug)
            if ref.category_id is None:
                raise UnknownCategoryError(
                    "Care item has no budget category",
                    client_id=completed.client_id,
                    care_item_slug=completed.care_item_slug,
                )
            if completed.completed_on is None:
                raise InvalidTransitionError(
                    "Occurrence has no completion date to charge against",
                    occurrence_id=completed.id,
                )
            self.budget.apply_spend_cents(
                completed.client_id,
                completed.completed_on.year,
                ref.category_id,
                completed.care_item_slug,
                cents,
                label=ref.label,
            )

        return self.occurrences.record_completion(
            occurrence_id,
            completion_date,
            cost,
            completed_by=completed_by,
            allow_recomplete=allow_recomplete,
            on_spend=charge,
        )

    def mark_done(
        self,
        client_id: str,
        occurrence_id: int,
        *,
        done_by: str,
        done_at: Optional[datetime] = None,
        comment: Optional[str] = None,
        file_ref: Optional[str] = None,
    ) -> Occurrence:
        self._owned(client_id, occurrence_id)
        return self.occurrences.mark_done(
            occurrence_id, done_by=done_by, done_at=done_at, comment=comment, file_ref=file_ref
        )

    def append_comment(self, client_id: str, occurrence_id: int, text: str) -> Occurrence:
        self._owned(client_id, occurrence_id)
        return self.occurrences.append_comment(occurrence_id, text)

    def append_file(self, client_id: str, occurrence_id: int, file_ref: str) -> Occurrence:
        self._owned(client_id, occurrence_id)
        return self.occurrences.append_file(occurrence_id, file_ref)

    def resolve_status(
        self, client_id: str, occurrence_id: int, today: Optional[date] = None
    ) -> DisplayStatus:
        occurrence = self._owned(client_id, occurrence_id)
        return resolve_status(occurrence, today or self.clock.today())

    # Budget ------------------------------------------------------------------

    def apply_spend_delta(
        self,
        client_id: str,
        year: int,
        category_id: str,
        care_item_slug: str,
        delta: Money,
        *,
        label: Optional[str] = None,
    ) -> BudgetYear:
        return self.budget.apply_spend_delta(
            client_id, year, category_id, care_item_slug, delta, label=label
        )

    def set_allocation(
        self,
        client_id: str,
        year: int,
        category_id: str,
        amount: Money,
        care_item_slug: Optional[str] = None,
        *,
        category_name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> BudgetYear:
        return self.budget.set_allocation(
            client_id,
            year,
            category_id,
            amount,
            care_item_slug,
            category_name=category_name,
            label=label,
        )

    def rollover_year(self, client_id: str, from_year: int, *, force: bool = False) -> BudgetYear:
        return self.rollover.rollover(client_id, from_year, force=force)

    def get_budget_summary(self, client_id: str, year: int) -> BudgetSummary:
        return self.budget.get_budget_summary(client_id, year)

    # Purchases ---------------------------------------------------------------

    def record_purchase(
        self,
        client_id: str,
        on: DateLike,
        lines: Iterable[PurchaseLine],
        *,
        made_by: str,
        receipt_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        return self.ledger.record_purchase(
            client_id, on, lines, made_by=made_by, receipt_ref=receipt_ref, note=note
        )

    def record_refund(
        self,
        client_id: str,
        on: DateLike,
        lines: Iterable[RefundLine],
        *,
        made_by: str,
        receipt_ref: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Transaction:
        return self.ledger.record_refund(
            client_id, on, lines, made_by=made_by, receipt_ref=receipt_ref, note=note
        )

    def refundables(self, client_id: str, year: int) -> list[RefundableLine]:
        return self.ledger.refundables(client_id, year)

    def list_transactions(self, client_id: str, year: int) -> list[Transaction]:
        return self.ledger.list_transactions(client_id, year)


__all__ = ["CareCoordinator"]
