"""SQLModel implementation of Budget repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlmodel import Session, col, select

from ...domain.clock import as_utc
from ...domain.entities import BudgetTotals, BudgetYear, CategoryBudget, ItemBudget
from ...errors import ConcurrencyConflictError
from ...logging_config import get_logger
from ...models.budget import BudgetYearRecord, CategoryBudgetRecord, ItemBudgetRecord
from ..retry import storage_guard

logger = get_logger("infra.budget")


def _to_entity(row: BudgetYearRecord) -> BudgetYear:
    return BudgetYear(
        id=row.id,
        client_id=row.client_id,
        year=row.year,
        annual_allocated=row.annual_allocated_cents,
        opening_carryover=row.opening_carryover_cents,
        rolled_from_year=row.rolled_from_year,
        surplus=row.surplus_cents,
        totals=BudgetTotals(
            allocated=row.totals_allocated_cents,
            spent=row.totals_spent_cents,
        ),
        version=row.version,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        categories=[
            CategoryBudget(
                category_id=category.category_id,
                category_name=category.category_name,
                allocated=category.allocated_cents,
                spent=category.spent_cents,
                released_at=as_utc(category.released_at),
                items=[
                    ItemBudget(
                        care_item_slug=item.care_item_slug,
                        label=item.label,
                        allocated=item.allocated_cents,
                        spent=item.spent_cents,
                        released_at=as_utc(item.released_at),
                    )
                    for item in category.items
                ],
            )
            for category in row.categories
        ],
    )


def _year_values(budget_year: BudgetYear) -> dict:
    return {
        "annual_allocated_cents": budget_year.annual_allocated,
        "opening_carryover_cents": budget_year.opening_carryover,
        "rolled_from_year": budget_year.rolled_from_year,
        "surplus_cents": budget_year.surplus,
        "totals_allocated_cents": budget_year.totals.allocated,
        "totals_spent_cents": budget_year.totals.spent,
    }


class SQLModelBudgetRepository:
    """SQLModel-based budget repository implementation."""

    def __init__(self, session_factory: Callable[[], Session]):
        """Initialize with a session factory."""
        self.session_factory = session_factory

    def get_year(self, client_id: str, year: int) -> Optional[BudgetYear]:
        """Load a detached snapshot of the budget year, or None."""
        with storage_guard("budget.get"), self.session_factory() as session:
            statement = (
                select(BudgetYearRecord)
                .where(BudgetYearRecord.client_id == client_id)
                .where(BudgetYearRecord.year == year)
                .options(
                    selectinload(BudgetYearRecord.categories).selectinload(  # type: ignore[arg-type]
                        CategoryBudgetRecord.items  # type: ignore[arg-type]
                    )
                )
            )
            row = session.exec(statement).first()
            return _to_entity(row) if row else None

    def create_year(self, budget_year: BudgetYear) -> BudgetYear:
        """Insert a new budget year, or return the one a concurrent writer created."""
        try:
            with storage_guard("budget.create"), self.session_factory() as session:
                row = BudgetYearRecord(
                    client_id=budget_year.client_id,
                    year=budget_year.year,
                    version=0,
                    **_year_values(budget_year),
                )
                session.add(row)
                session.flush()
                self._sync_categories(session, row.id, budget_year)
                session.commit()
        except IntegrityError:
            logger.info(
                "Budget year already created by a concurrent writer",
                extra={"client_id": budget_year.client_id, "year": budget_year.year},
            )

        created = self.get_year(budget_year.client_id, budget_year.year)
        if created is None:  # pragma: no cover - row vanished between insert and read
            raise ConcurrencyConflictError(
                "Budget year disappeared after creation",
                client_id=budget_year.client_id,
                year=budget_year.year,
            )
        return created

    def save_year(self, budget_year: BudgetYear) -> BudgetYear:
        """Persist a modified snapshot under an optimistic version check.

        The conditional UPDATE on the year row is issued first, so concurrent
        writers serialize on it and the loser sees a zero row count.
        """
        if budget_year.id is None:
            raise ValueError("save_year requires a budget year loaded from the repository")

        now = datetime.now(timezone.utc)
        with storage_guard("budget.save"), self.session_factory() as session:
            result = session.execute(
                update(BudgetYearRecord)
                .where(col(BudgetYearRecord.id) == budget_year.id)
                .where(col(BudgetYearRecord.version) == budget_year.version)
                .values(version=budget_year.version + 1, updated_at=now, **_year_values(budget_year))
            )
            if result.rowcount != 1:
                session.rollback()
                raise ConcurrencyConflictError(
                    "Budget year was modified concurrently",
                    client_id=budget_year.client_id,
                    year=budget_year.year,
                    expected_version=budget_year.version,
                )
            self._sync_categories(session, budget_year.id, budget_year)
            session.commit()

        saved = self.get_year(budget_year.client_id, budget_year.year)
        if saved is None:
            raise ConcurrencyConflictError(
                "Budget year disappeared after saving",
                client_id=budget_year.client_id,
                year=budget_year.year,
            )
        return saved

    def _sync_categories(self, session: Session, budget_year_id: int, budget_year: BudgetYear) -> None:
        """Upsert category and item rows to match the snapshot; rows are never deleted."""
        existing = {
            row.category_id: row
            for row in session.exec(
                select(CategoryBudgetRecord)
                .where(CategoryBudgetRecord.budget_year_id == budget_year_id)
                .options(selectinload(CategoryBudgetRecord.items))  # type: ignore[arg-type]
            ).all()
        }
        for position, category in enumerate(budget_year.categories):
            row = existing.get(category.category_id)
            if row is None:
                row = CategoryBudgetRecord(
                    budget_year_id=budget_year_id, category_id=category.category_id
                )
                session.add(row)
                session.flush()
            row.position = position
            row.category_name = category.category_name
            row.allocated_cents = category.allocated
            row.spent_cents = category.spent
            row.released_at = category.released_at
            session.add(row)

            items = {item.care_item_slug: item for item in row.items}
            for item_position, item in enumerate(category.items):
                item_row = items.get(item.care_item_slug)
                if item_row is None:
                    item_row = ItemBudgetRecord(
                        budget_category_id=row.id, care_item_slug=item.care_item_slug
                    )
                item_row.position = item_position
                item_row.label = item.label
                item_row.allocated_cents = item.allocated
                item_row.spent_cents = item.spent
                item_row.released_at = item.released_at
                session.add(item_row)

    def list_years(self, client_id: str) -> list[int]:
        """Years that have a budget document, newest first."""
        with storage_guard("budget.years"), self.session_factory() as session:
            statement = (
                select(BudgetYearRecord.year)
                .where(BudgetYearRecord.client_id == client_id)
                .order_by(col(BudgetYearRecord.year).desc())
            )
            return list(session.exec(statement).all())
