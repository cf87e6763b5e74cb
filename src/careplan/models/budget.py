"""Budgeting tables.

Money columns hold integer cents.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import ClassVar, Optional

from sqlalchemy import UniqueConstraint
from sqlalchemy.orm import relationship
from sqlmodel import Field, Relationship, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BudgetYearRecord(SQLModel, table=True):
    """A client's budget envelope for one calendar year."""

    __tablename__: ClassVar[str] = "budget_year"
    __table_args__ = (UniqueConstraint("client_id", "year", name="uniq_client_year"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    client_id: str = Field(nullable=False, max_length=64, index=True)
    year: int = Field(nullable=False, index=True)
    annual_allocated_cents: int = Field(default=0, nullable=False)
    opening_carryover_cents: int = Field(default=0, nullable=False)
    rolled_from_year: Optional[int] = Field(default=None)
    surplus_cents: int = Field(default=0, nullable=False)
    totals_allocated_cents: int = Field(default=0, nullable=False)
    totals_spent_cents: int = Field(default=0, nullable=False)
    version: int = Field(default=0, nullable=False)
    created_at: datetime = Field(default_factory=_utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=_utcnow, nullable=False)

    categories: list["CategoryBudgetRecord"] = Relationship(
        back_populates="budget_year",
        sa_relationship=relationship(
            "CategoryBudgetRecord",
            back_populates="budget_year",
            order_by="CategoryBudgetRecord.position",
        ),
    )


class CategoryBudgetRecord(SQLModel, table=True):
    """Allocation and spend for one category within a budget year."""

    __tablename__: ClassVar[str] = "budget_category"
    __table_args__ = (
        UniqueConstraint("budget_year_id", "category_id", name="uniq_year_category"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    budget_year_id: int = Field(foreign_key="budget_year.id", nullable=False, index=True)
    position: int = Field(default=0, nullable=False)
    category_id: str = Field(nullable=False, max_length=64)
    category_name: str = Field(default="", max_length=128)
    allocated_cents: int = Field(default=0, nullable=False)
    spent_cents: int = Field(default=0, nullable=False)
    released_at: Optional[datetime] = Field(default=None)

    budget_year: "BudgetYearRecord" = Relationship(
        back_populates="categories",
        sa_relationship=relationship("BudgetYearRecord", back_populates="categories"),
    )
    items: list["ItemBudgetRecord"] = Relationship(
        back_populates="category",
        sa_relationship=relationship(
            "ItemBudgetRecord",
            back_populates="category",
            order_by="ItemBudgetRecord.position",
        ),
    )


class ItemBudgetRecord(SQLModel, table=True):
    """Allocation and spend for one care item within a category."""

    __tablename__: ClassVar[str] = "budget_item"
    __table_args__ = (
        UniqueConstraint("budget_category_id", "care_item_slug", name="uniq_category_item"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    budget_category_id: int = Field(foreign_key="budget_category.id", nullable=False, index=True)
    position: int = Field(default=0, nullable=False)
    care_item_slug: str = Field(nullable=False, max_length=128, index=True)
    label: str = Field(default="", max_length=128)
    allocated_cents: int = Field(default=0, nullable=False)
    spent_cents: int = Field(default=0, nullable=False)
    released_at: Optional[datetime] = Field(default=None)

    category: "CategoryBudgetRecord" = Relationship(
        back_populates="items",
        sa_relationship=relationship("CategoryBudgetRecord", back_populates="items"),
    )
