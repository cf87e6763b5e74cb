"""SQLModel table exports."""

from .budget import BudgetYearRecord, CategoryBudgetRecord, ItemBudgetRecord
from .occurrence import OccurrenceComment, OccurrenceFile, OccurrenceRecord
from .transaction import TransactionLineRecord, TransactionRecord

__all__ = [
    "BudgetYearRecord",
    "CategoryBudgetRecord",
    "ItemBudgetRecord",
    "OccurrenceComment",
    "OccurrenceFile",
    "OccurrenceRecord",
    "TransactionLineRecord",
    "TransactionRecord",
]
