"""In-memory repository implementations for tests, mocks, and local tooling.

Each repository guards its state with a lock so that the same atomicity the
durable store gives (unique identity, compare-and-set, single-row appends,
versioned saves) holds when threads share an instance. Callers always receive
copies, never the stored objects.
"""

from __future__ import annotations

import copy
import itertools
import threading
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional

from ...domain.entities import (
    BudgetYear,
    Occurrence,
    OccurrenceStatus,
    Transaction,
    normalize_slug,
)
from ...domain.repositories.catalog import CareItemRef
from ...errors import ConcurrencyConflictError, RefundExceedsPurchaseError, UnknownCareItemError

_UPDATABLE_FIELDS = {"cost", "completed_on", "completed_by", "completed_at", "done_by", "done_at"}


class InMemoryOccurrenceRepository:
    """Dictionary-backed occurrence store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[int, Occurrence] = {}
        self._by_identity: dict[tuple[str, str, str], int] = {}
        self._ids = itertools.count(1)

    def get_by_id(self, occurrence_id: int) -> Optional[Occurrence]:
        with self._lock:
            row = self._rows.get(occurrence_id)
            return copy.deepcopy(row) if row else None

    def get_by_identity(
        self, client_id: str, care_item_slug: str, date_key: str
    ) -> Optional[Occurrence]:
        with self._lock:
            occurrence_id = self._by_identity.get((client_id, normalize_slug(care_item_slug), date_key))
            return self.get_by_id(occurrence_id) if occurrence_id is not None else None

    def get_or_create(
        self, client_id: str, care_item_slug: str, on: date, date_key: str
    ) -> tuple[Occurrence, bool]:
        slug = normalize_slug(care_item_slug)
        key = (client_id, slug, date_key)
        with self._lock:
            existing = self._by_identity.get(key)
            if existing is not None:
                return copy.deepcopy(self._rows[existing]), False
            occurrence = Occurrence(
                id=next(self._ids),
                client_id=client_id,
                care_item_slug=slug,
                date=on,
                date_key=date_key,
                created_at=datetime.now(timezone.utc),
            )
            self._rows[occurrence.id] = occurrence
            self._by_identity[key] = occurrence.id
            return copy.deepcopy(occurrence), True

    def compare_and_set_status(
        self,
        occurrence_id: int,
        *,
        expected: Iterable[OccurrenceStatus],
        status: OccurrenceStatus,
        comments: Iterable[str] = (),
        files: Iterable[str] = (),
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unsupported occurrence fields: {sorted(unknown)}")
        with self._lock:
            row = self._rows.get(occurrence_id)
            if row is None or row.status not in set(expected):
                return False
            row.status = status
            for key, value in fields.items():
                setattr(row, key, value)
            row.comments.extend(comments)
            row.files.extend(files)
            return True

    def append_comment(self, occurrence_id: int, text: str) -> bool:
        with self._lock:
            row = self._rows.get(occurrence_id)
            if row is None:
                return False
            row.comments.append(text)
            return True

    def append_file(self, occurrence_id: int, file_ref: str) -> bool:
        with self._lock:
            row = self._rows.get(occurrence_id)
            if row is None:
                return False
            row.files.append(file_ref)
            return True

    def list_between(
        self,
        client_id: str,
        start: date,
        end: date,
        slugs: Optional[Iterable[str]] = None,
    ) -> list[Occurrence]:
        wanted = {normalize_slug(s) for s in slugs or () if normalize_slug(s)}
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._rows.values()
                if row.client_id == client_id
                and start <= row.date <= end
                and (not wanted or row.care_item_slug in wanted)
            ]
        return sorted(rows, key=lambda r: (r.date, r.care_item_slug))

    def delete_for_care_item(self, client_id: str, care_item_slug: str) -> int:
        slug = normalize_slug(care_item_slug)
        with self._lock:
            doomed = [
                key for key in self._by_identity if key[0] == client_id and key[1] == slug
            ]
            for key in doomed:
                del self._rows[self._by_identity.pop(key)]
            return len(doomed)


class InMemoryBudgetRepository:
    """Dictionary-backed budget store with versioned saves."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._years: dict[tuple[str, int], BudgetYear] = {}
        self._ids = itertools.count(1)

    def get_year(self, client_id: str, year: int) -> Optional[BudgetYear]:
        with self._lock:
            doc = self._years.get((client_id, year))
            return copy.deepcopy(doc) if doc else None

    def create_year(self, budget_year: BudgetYear) -> BudgetYear:
        key = (budget_year.client_id, budget_year.year)
        with self._lock:
            if key not in self._years:
                stored = copy.deepcopy(budget_year)
                now = datetime.now(timezone.utc)
                stored.id = next(self._ids)
                stored.version = 0
                stored.created_at = now
                stored.updated_at = now
                self._years[key] = stored
            return copy.deepcopy(self._years[key])

    def save_year(self, budget_year: BudgetYear) -> BudgetYear:
        key = (budget_year.client_id, budget_year.year)
        with self._lock:
            current = self._years.get(key)
            if current is None or current.version != budget_year.version:
                raise ConcurrencyConflictError(
                    "Budget year was modified concurrently",
                    client_id=budget_year.client_id,
                    year=budget_year.year,
                    expected_version=budget_year.version,
                )
            stored = copy.deepcopy(budget_year)
            stored.id = current.id
            stored.created_at = current.created_at
            stored.version = current.version + 1
            stored.updated_at = datetime.now(timezone.utc)
            self._years[key] = stored
            return copy.deepcopy(stored)

    def list_years(self, client_id: str) -> list[int]:
        with self._lock:
            return sorted((year for (cid, year) in self._years if cid == client_id), reverse=True)


class InMemoryTransactionRepository:
    """Dictionary-backed purchase and refund ledger."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[int, Transaction] = {}
        self._ids = itertools.count(1)
        self._line_ids = itertools.count(1)

    def _insert(self, transaction: Transaction) -> Transaction:
        stored = copy.deepcopy(transaction)
        stored.id = next(self._ids)
        stored.created_at = datetime.now(timezone.utc)
        stored.voided_at = None
        for line in stored.lines:
            line.id = next(self._line_ids)
            line.refunded = 0
        self._rows[stored.id] = stored
        return copy.deepcopy(stored)

    def _purchase_line(self, transaction_id: Optional[int], line_id: Optional[int]):
        purchase = self._rows.get(transaction_id) if transaction_id is not None else None
        if purchase is None or line_id is None:
            return None
        return purchase.find_line(line_id)

    def add_purchase(self, transaction: Transaction) -> Transaction:
        with self._lock:
            return self._insert(transaction)

    def add_refund(self, transaction: Transaction) -> Transaction:
        with self._lock:
            wanted: dict[tuple[Optional[int], Optional[int]], int] = {}
            for line in transaction.lines:
                key = (line.refund_of_transaction_id, line.refund_of_line_id)
                wanted[key] = wanted.get(key, 0) + line.amount
            for (transaction_id, line_id), amount in wanted.items():
                target = self._purchase_line(transaction_id, line_id)
                if target is None or target.refunded + amount > target.amount:
                    raise RefundExceedsPurchaseError(
                        "Refund exceeds the remaining amount of the purchase line",
                        transaction_id=transaction_id,
                        line_id=line_id,
                        amount_cents=amount,
                    )
            for (transaction_id, line_id), amount in wanted.items():
                self._purchase_line(transaction_id, line_id).refunded += amount
            return self._insert(transaction)

    def get(self, transaction_id: int) -> Optional[Transaction]:
        with self._lock:
            row = self._rows.get(transaction_id)
            return copy.deepcopy(row) if row else None

    def list_for_year(self, client_id: str, year: int) -> list[Transaction]:
        with self._lock:
            rows = [
                copy.deepcopy(row)
                for row in self._rows.values()
                if row.client_id == client_id and row.year == year and row.voided_at is None
            ]
        return sorted(rows, key=lambda r: (r.date, r.id), reverse=True)

    def void(self, transaction_id: int, voided_at: datetime) -> bool:
        with self._lock:
            row = self._rows.get(transaction_id)
            if row is None or row.voided_at is not None:
                return False
            row.voided_at = voided_at
            for line in row.lines:
                target = self._purchase_line(line.refund_of_transaction_id, line.refund_of_line_id)
                if target is not None:
                    target.refunded -= line.amount
            return True


class InMemoryCareItemCatalog:
    """Catalog of care items keyed by client and slug."""

    def __init__(self, items: Optional[dict[str, Iterable[CareItemRef]]] = None) -> None:
        self._items: dict[tuple[str, str], CareItemRef] = {}
        for client_id, refs in (items or {}).items():
            for ref in refs:
                self.register(client_id, ref)

    def register(self, client_id: str, ref: CareItemRef) -> None:
        self._items[(client_id, normalize_slug(ref.slug))] = ref

    def lookup(self, client_id: str, care_item_slug: str) -> CareItemRef:
        ref = self._items.get((client_id, normalize_slug(care_item_slug)))
        if ref is None:
            raise UnknownCareItemError(
                "Care item not found", client_id=client_id, care_item_slug=care_item_slug
            )
        return ref
