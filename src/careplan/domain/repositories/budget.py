"""Budget repository protocol."""

from __future__ import annotations

from typing import Optional, Protocol

from ..entities import BudgetYear


class BudgetRepository(Protocol):
    """Storage port for per-client, per-year budget documents."""

    def get_year(self, client_id: str, year: int) -> Optional[BudgetYear]:
        """Load a detached snapshot of the budget year, or None."""
        ...

    def create_year(self, budget_year: BudgetYear) -> BudgetYear:
        """Insert a new budget year.

        If another writer created the same ``(client_id, year)`` first, the
        existing document is returned instead.
        """
        ...

    def save_year(self, budget_year: BudgetYear) -> BudgetYear:
        """Persist a modified snapshot.

        Succeeds only if the stored version still equals
        ``budget_year.version``; otherwise raises ``ConcurrencyConflictError``.
        Returns the snapshot with its version bumped.
        """
        ...

    def list_years(self, client_id: str) -> list[int]:
        """Years that have a budget document, newest first."""
        ...
