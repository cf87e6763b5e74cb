"""Repository protocol definitions for domain layer."""

from .budget import BudgetRepository
from .catalog import CareItemCatalog, CareItemRef
from .occurrence import OccurrenceRepository
from .transaction import TransactionRepository

__all__ = [
    "BudgetRepository",
    "CareItemCatalog",
    "CareItemRef",
    "OccurrenceRepository",
    "TransactionRepository",
]
