"""Concrete repository implementations (SQLModel and in-memory)."""

from .budget import SQLModelBudgetRepository
from .memory import (
    InMemoryBudgetRepository,
    InMemoryCareItemCatalog,
    InMemoryOccurrenceRepository,
    InMemoryTransactionRepository,
)
from .occurrence import SQLModelOccurrenceRepository
from .transaction import SQLModelTransactionRepository

__all__ = [
    "InMemoryBudgetRepository",
    "InMemoryCareItemCatalog",
    "InMemoryOccurrenceRepository",
    "InMemoryTransactionRepository",
    "SQLModelBudgetRepository",
    "SQLModelOccurrenceRepository",
    "SQLModelTransactionRepository",
]
