"""Service layer: recurrence, status, occurrences, budgeting, rollover, purchase ledger."""

from .budgeting import BudgetAggregator, SpendLine, recompute_rollups, verify_rollups
from .coordinator import CareCoordinator
from .occurrences import OccurrenceStore
from .recurrence import RecurrenceRule, add_interval, compute_next_due, due_dates, exact_span_days
from .rollover import RolloverPolicy, YearRollover
from .status import next_due_status, parse_occurrence_status, resolve_status
from .transactions import PurchaseLine, RefundLine, TransactionLedger

__all__ = [
    "BudgetAggregator",
    "CareCoordinator",
    "OccurrenceStore",
    "PurchaseLine",
    "RecurrenceRule",
    "RefundLine",
    "RolloverPolicy",
    "SpendLine",
    "TransactionLedger",
    "YearRollover",
    "add_interval",
    "compute_next_due",
    "due_dates",
    "exact_span_days",
    "next_due_status",
    "parse_occurrence_status",
    "recompute_rollups",
    "resolve_status",
    "verify_rollups",
]
