"""Plain domain entities shared by services and repository implementations.

All money fields are integer cents.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Optional

from ..errors import ValidationError


class RecurrenceUnit(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class OccurrenceStatus(str, Enum):
    """Stored lifecycle status of an occurrence."""

    DUE = "Due"
    OVERDUE = "Overdue"
    WAITING_VERIFICATION = "Waiting Verification"
    COMPLETED = "Completed"


class DisplayStatus(str, Enum):
    """Status shown to callers, derived on every read."""

    PENDING = "Pending"
    DUE = "Due"
    OVERDUE = "Overdue"
    COMPLETED = "Completed"


def normalize_slug(slug: str) -> str:
    """Care item slugs compare case-insensitively; store them trimmed and lower-case."""

    return (slug or "").strip().lower()


def require_client_id(client_id: object) -> str:
    """Every core operation is scoped to an explicit client; there is no default."""

    if not isinstance(client_id, str) or not client_id.strip():
        raise ValidationError("client_id is required", field="client_id", value=client_id)
    return client_id.strip()


def require_year(year: object) -> int:
    if isinstance(year, bool) or not isinstance(year, int) or not 1 <= year <= 9998:
        raise ValidationError("year must be a calendar year", field="year", value=year)
    return year


@dataclass
class Occurrence:
    """One scheduled instance of a care item for a client on a calendar day."""

    client_id: str
    care_item_slug: str
    date: date
    date_key: str
    status: OccurrenceStatus = OccurrenceStatus.DUE
    id: Optional[int] = None
    comments: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    cost: Optional[int] = None
    completed_on: Optional[date] = None
    completed_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    done_by: Optional[str] = None
    done_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def identity(self) -> tuple[str, str, str]:
        return (self.client_id, self.care_item_slug, self.date_key)


@dataclass
class ItemBudget:
    care_item_slug: str
    label: str
    allocated: int = 0
    spent: int = 0
    released_at: Optional[datetime] = None


@dataclass
class CategoryBudget:
    category_id: str
    category_name: str
    allocated: int = 0
    spent: int = 0
    items: list[ItemBudget] = field(default_factory=list)
    released_at: Optional[datetime] = None

    def find_item(self, care_item_slug: str) -> Optional[ItemBudget]:
        slug = normalize_slug(care_item_slug)
        return next((item for item in self.items if item.care_item_slug == slug), None)


@dataclass
class BudgetTotals:
    allocated: int = 0
    spent: int = 0


@dataclass
class BudgetYear:
    """One client's budget envelope for one calendar year.

    ``totals`` and ``surplus`` are cached rollups over the category/item
    leaves and are recomputed in the same write as any leaf change.
    ``version`` guards read-modify-write cycles against lost updates.
    """

    client_id: str
    year: int
    annual_allocated: int = 0
    opening_carryover: int = 0
    rolled_from_year: Optional[int] = None
    surplus: int = 0
    categories: list[CategoryBudget] = field(default_factory=list)
    totals: BudgetTotals = field(default_factory=BudgetTotals)
    version: int = 0
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def find_category(self, category_id: str) -> Optional[CategoryBudget]:
        return next((c for c in self.categories if c.category_id == str(category_id)), None)


@dataclass(frozen=True)
class BudgetSummary:
    """Read model for the four summary boxes plus overspend reporting."""

    client_id: str
    year: int
    annual_allocated: int
    opening_carryover: int
    allocated: int
    spent: int
    remaining: int
    surplus: int
    overspent_categories: tuple[str, ...] = ()

    @property
    def available(self) -> int:
        return self.annual_allocated + self.opening_carryover


class TransactionType(str, Enum):
    PURCHASE = "Purchase"
    REFUND = "Refund"


@dataclass
class TransactionLine:
    """One category/care-item line of a purchase or refund, in cents.

    On a purchase line ``refunded`` is the running total refunded against it.
    On a refund line ``refund_of_transaction_id`` and ``refund_of_line_id``
    name the purchase line being refunded.
    """

    category_id: str
    care_item_slug: str
    label: str
    amount: int
    id: Optional[int] = None
    refunded: int = 0
    refund_of_transaction_id: Optional[int] = None
    refund_of_line_id: Optional[int] = None

    @property
    def remaining_refundable(self) -> int:
        return max(0, self.amount - self.refunded)


@dataclass
class Transaction:
    """A dated multi-line purchase or refund for one client."""

    client_id: str
    type: TransactionType
    date: date
    made_by: str
    lines: list[TransactionLine] = field(default_factory=list)
    receipt_ref: Optional[str] = None
    note: Optional[str] = None
    id: Optional[int] = None
    voided_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def year(self) -> int:
        return self.date.year

    @property
    def total(self) -> int:
        return sum(line.amount for line in self.lines)

    def find_line(self, line_id: int) -> Optional[TransactionLine]:
        return next((line for line in self.lines if line.id == line_id), None)


@dataclass(frozen=True)
class RefundableLine:
    """A purchase line that still has an amount left to refund."""

    transaction_id: int
    purchase_date: date
    line_id: int
    category_id: str
    care_item_slug: str
    label: str
    original_amount: int
    refunded: int
    remaining: int


__all__ = [
    "BudgetSummary",
    "BudgetTotals",
    "BudgetYear",
    "CategoryBudget",
    "DisplayStatus",
    "ItemBudget",
    "Occurrence",
    "OccurrenceStatus",
    "RecurrenceUnit",
    "RefundableLine",
    "Transaction",
    "TransactionLine",
    "TransactionType",
    "normalize_slug",
    "require_client_id",
    "require_year",
]
