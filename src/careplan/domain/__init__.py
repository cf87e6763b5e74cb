"""Domain entities, enums, and ports."""

from .clock import Clock, FixedClock, SystemClock, as_utc
from .entities import (
    BudgetSummary,
    BudgetTotals,
    BudgetYear,
    CategoryBudget,
    DisplayStatus,
    ItemBudget,
    Occurrence,
    OccurrenceStatus,
    RecurrenceUnit,
    RefundableLine,
    Transaction,
    TransactionLine,
    TransactionType,
    normalize_slug,
    require_client_id,
    require_year,
)

__all__ = [
    "BudgetSummary",
    "BudgetTotals",
    "BudgetYear",
    "CategoryBudget",
    "Clock",
    "DisplayStatus",
    "FixedClock",
    "ItemBudget",
    "Occurrence",
    "OccurrenceStatus",
    "RecurrenceUnit",
    "RefundableLine",
    "SystemClock",
    "Transaction",
    "TransactionLine",
    "TransactionType",
    "as_utc",
    "normalize_slug",
    "require_client_id",
    "require_year",
]
