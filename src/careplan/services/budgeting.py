"""Year-scoped budget aggregation.

Item and category leaves are the source of truth. ``totals``, category spend
and ``surplus`` are rollups recomputed in the same versioned write as any leaf
change, then verified before the write is issued.
"""

from __future__ import annotations

from typing import Callable, Iterable, NamedTuple, Optional

from ..domain.clock import Clock
from ..domain.entities import (
    BudgetSummary,
    BudgetYear,
    CategoryBudget,
    ItemBudget,
    normalize_slug,
    require_client_id,
    require_year,
)
from ..domain.repositories.budget import BudgetRepository
from ..errors import (
    BudgetYearNotFoundError,
    CarePlanError,
    NegativeAllocationError,
    NegativeSpendViolationError,
    TotalsDriftError,
    UnknownCategoryError,
    ValidationError,
)
from ..infra.retry import DEFAULT_POLICY, RetryPolicy, retry_transient
from ..logging_config import get_logger
from ..money import Money, check_cents, to_cents

logger = get_logger("services.budgeting")


def recompute_rollups(budget_year: BudgetYear) -> BudgetYear:
    """Refresh category spend, totals and surplus from the leaves, in place."""

    for category in budget_year.categories:
        if category.items:
            category.spent = sum(item.spent for item in category.items)
    budget_year.totals.allocated = sum(c.allocated for c in budget_year.categories)
    budget_year.totals.spent = sum(c.spent for c in budget_year.categories)
    budget_year.surplus = (
        budget_year.annual_allocated + budget_year.opening_carryover - budget_year.totals.spent
    )
    return budget_year


def verify_rollups(budget_year: BudgetYear) -> None:
    """Raise if any spend is negative or a cached rollup disagrees with its leaves."""

    context = {"client_id": budget_year.client_id, "year": budget_year.year}
    _check_ranges(budget_year)
    for category in budget_year.categories:
        for item in category.items:
            if item.spent < 0:
                raise NegativeSpendViolationError(
                    "Item spend is negative",
                    category_id=category.category_id,
                    care_item_slug=item.care_item_slug,
                    spent_cents=item.spent,
                    **context,
                )
        if category.spent < 0:
            raise NegativeSpendViolationError(
                "Category spend is negative",
                category_id=category.category_id,
                spent_cents=category.spent,
                **context,
            )
        if category.items and category.spent != sum(item.spent for item in category.items):
            raise TotalsDriftError(
                "Category spend does not match its items",
                category_id=category.category_id,
                **context,
            )

    if budget_year.totals.spent < 0:
        raise NegativeSpendViolationError("Total spend is negative", **context)
    if budget_year.totals.spent != sum(c.spent for c in budget_year.categories):
        raise TotalsDriftError("Total spend does not match categories", **context)
    if budget_year.totals.allocated != sum(c.allocated for c in budget_year.categories):
        raise TotalsDriftError("Total allocation does not match categories", **context)
    expected_surplus = (
        budget_year.annual_allocated + budget_year.opening_carryover - budget_year.totals.spent
    )
    if budget_year.surplus != expected_surplus:
        raise TotalsDriftError("Surplus does not match totals", **context)


def _check_ranges(budget_year: BudgetYear) -> None:
    for category in budget_year.categories:
        for item in category.items:
            check_cents(item.allocated, field="allocated")
            check_cents(item.spent, field="spent")
        check_cents(category.allocated, field="allocated")
        check_cents(category.spent, field="spent")
    check_cents(budget_year.annual_allocated, field="annual_allocated")
    check_cents(budget_year.opening_carryover, field="opening_carryover")
    check_cents(budget_year.totals.allocated, field="totals.allocated")
    check_cents(budget_year.totals.spent, field="totals.spent")
    check_cents(budget_year.surplus, field="surplus")


def _require_category_id(category_id: object) -> str:
    text = str(category_id).strip() if category_id is not None else ""
    if not text:
        raise ValidationError("category_id is required", field="category_id")
    return text


def _require_slug(care_item_slug: str) -> str:
    slug = normalize_slug(care_item_slug)
    if not slug:
        raise ValidationError("care_item_slug is required", field="care_item_slug")
    return slug


class SpendLine(NamedTuple):
    """One signed spend change against a category's care item, in cents."""

    category_id: str
    care_item_slug: str
    delta_cents: int
    label: Optional[str] = None


class BudgetAggregator:
    """Read-modify-write access to budget years with optimistic versioning."""

    def __init__(
        self,
        repository: BudgetRepository,
        *,
        clock: Clock,
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.retry_policy = retry_policy

    def _mutate(
        self,
        client_id: str,
        year: int,
        change: Callable[[BudgetYear], None],
        *,
        operation: str,
        on_missing: Optional[Callable[[], CarePlanError]] = None,
    ) -> BudgetYear:
        """Load, change, recompute, verify and save one budget year.

        ``on_missing`` builds the error to raise when the year does not exist;
        without it the year is created, but only once the change has been
        validated against an empty draft. The whole cycle is retried when the
        versioned save loses a race.
        """

        def attempt() -> BudgetYear:
            doc = self.repository.get_year(client_id, year)
            if doc is None:
                if on_missing is not None:
                    raise on_missing()
                draft = BudgetYear(client_id=client_id, year=year)
                change(draft)
                verify_rollups(recompute_rollups(draft))
                doc = self.repository.create_year(BudgetYear(client_id=client_id, year=year))
            change(doc)
            recompute_rollups(doc)
            verify_rollups(doc)
            return self.repository.save_year(doc)

        try:
            return retry_transient(attempt, policy=self.retry_policy, description=operation)
        except CarePlanError as exc:
            if not exc.retryable:
                logger.warning(
                    "Rejected %s: %s",
                    operation,
                    exc.message,
                    extra={"client_id": client_id, "year": year, "error": type(exc).__name__},
                )
            raise

    # Spend -------------------------------------------------------------------

    def apply_spend_delta(
        self,
        client_id: str,
        year: int,
        category_id: str,
        care_item_slug: str,
        delta: Money,
        *,
        label: Optional[str] = None,
    ) -> BudgetYear:
        """Add ``delta`` (may be negative for refunds) to an item's spend."""
        return self.apply_spend_cents(
            client_id,
            year,
            category_id,
            care_item_slug,
            to_cents(delta, field="delta"),
            label=label,
        )

    def apply_spend_cents(
        self,
        client_id: str,
        year: int,
        category_id: str,
        care_item_slug: str,
        delta_cents: int,
        *,
        label: Optional[str] = None,
    ) -> BudgetYear:
        return self.apply_spend_lines(
            client_id, year, [SpendLine(category_id, care_item_slug, delta_cents, label)]
        )

    def apply_spend_lines(self, client_id: str, year: int, lines: Iterable[SpendLine]) -> BudgetYear:
        """Apply several spend deltas to one year in a single versioned write.

        Either every line lands or none does.
        """
        client = require_client_id(client_id)
        year = require_year(year)
        prepared = [
            SpendLine(
                _require_category_id(line.category_id),
                _require_slug(line.care_item_slug),
                check_cents(line.delta_cents, field="delta"),
                line.label,
            )
            for line in lines
        ]
        if not prepared:
            raise ValidationError("At least one spend line is required", field="lines")

        def unknown_category(category_key: str) -> CarePlanError:
            return UnknownCategoryError(
                "Budget category has not been declared",
                client_id=client,
                year=year,
                category_id=category_key,
            )

        def change(doc: BudgetYear) -> None:
            for line in prepared:
                category = doc.find_category(line.category_id)
                if category is None:
                    raise unknown_category(line.category_id)
                item = category.find_item(line.care_item_slug)
                if item is None:
                    item = ItemBudget(
                        care_item_slug=line.care_item_slug, label=line.label or line.care_item_slug
                    )
                    category.items.append(item)
                if item.spent + line.delta_cents < 0:
                    raise NegativeSpendViolationError(
                        "Spend would become negative",
                        client_id=client,
                        year=year,
                        category_id=line.category_id,
                        care_item_slug=line.care_item_slug,
                        spent_cents=item.spent,
                        delta_cents=line.delta_cents,
                    )
                item.spent += line.delta_cents

        saved = self._mutate(
            client,
            year,
            change,
            operation="apply spend delta",
            on_missing=lambda: unknown_category(prepared[0].category_id),
        )
        for line in prepared:
            logger.info(
                "Applied spend delta",
                extra={
                    "client_id": client,
                    "year": year,
                    "category_id": line.category_id,
                    "care_item_slug": line.care_item_slug,
                    "delta_cents": line.delta_cents,
                    "total_spent_cents": saved.totals.spent,
                },
            )
        return saved

    # Allocation --------------------------------------------------------------

    def set_allocation(
        self,
        client_id: str,
        year: int,
        category_id: str,
        amount: Money,
        care_item_slug: Optional[str] = None,
        *,
        category_name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> BudgetYear:
        """Set a category or item allocation, creating the year if needed.

        Category allocations are how categories get declared. They are never
        redistributed to the category's items.
        """
        client = require_client_id(client_id)
        year = require_year(year)
        category_key = _require_category_id(category_id)
        cents = to_cents(amount, field="amount")
        if cents < 0:
            raise NegativeAllocationError(
                "Allocation cannot be negative", field="amount", value=str(amount)
            )
        slug = _require_slug(care_item_slug) if care_item_slug is not None else None

        def change(doc: BudgetYear) -> None:
            category = doc.find_category(category_key)
            if slug is None:
                if category is None:
                    category = CategoryBudget(
                        category_id=category_key, category_name=category_name or category_key
                    )
                    doc.categories.append(category)
                elif category_name:
                    category.category_name = category_name
                category.allocated = cents
                return

            if category is None:
                raise UnknownCategoryError(
                    "Budget category has not been declared",
                    client_id=client,
                    year=year,
                    category_id=category_key,
                )
            item = category.find_item(slug)
            if item is None:
                item = ItemBudget(care_item_slug=slug, label=label or slug)
                category.items.append(item)
            elif label:
                item.label = label
            item.allocated = cents

        saved = self._mutate(client, year, change, operation="set allocation")
        logger.info(
            "Set allocation",
            extra={
                "client_id": client,
                "year": year,
                "category_id": category_key,
                "care_item_slug": slug,
                "allocated_cents": cents,
            },
        )
        return saved

    def set_annual_allocation(self, client_id: str, year: int, amount: Money) -> BudgetYear:
        client = require_client_id(client_id)
        year = require_year(year)
        cents = to_cents(amount, field="amount")
        if cents < 0:
            raise NegativeAllocationError(
                "Allocation cannot be negative", field="amount", value=str(amount)
            )

        def change(doc: BudgetYear) -> None:
            doc.annual_allocated = cents

        saved = self._mutate(client, year, change, operation="set annual allocation")
        logger.info(
            "Set annual allocation",
            extra={"client_id": client, "year": year, "allocated_cents": cents},
        )
        return saved

    def release_category(self, client_id: str, year: int, category_id: str) -> BudgetYear:
        """Zero a category's allocation and its items'; recorded spend is kept."""
        client = require_client_id(client_id)
        year = require_year(year)
        category_key = _require_category_id(category_id)
        released_at = self.clock.now()

        def change(doc: BudgetYear) -> None:
            category = self._existing_category(doc, category_key)
            category.allocated = 0
            category.released_at = released_at
            for item in category.items:
                item.allocated = 0
                item.released_at = released_at

        saved = self._mutate(
            client,
            year,
            change,
            operation="release category",
            on_missing=lambda: self._missing_year(client, year),
        )
        logger.info(
            "Released category", extra={"client_id": client, "year": year, "category_id": category_key}
        )
        return saved

    def release_item(
        self, client_id: str, year: int, category_id: str, care_item_slug: str
    ) -> BudgetYear:
        client = require_client_id(client_id)
        year = require_year(year)
        category_key = _require_category_id(category_id)
        slug = _require_slug(care_item_slug)
        released_at = self.clock.now()

        def change(doc: BudgetYear) -> None:
            category = self._existing_category(doc, category_key)
            item = category.find_item(slug)
            if item is None:
                raise ValidationError(
                    "Budget item not found", category_id=category_key, care_item_slug=slug
                )
            item.allocated = 0
            item.released_at = released_at

        saved = self._mutate(
            client,
            year,
            change,
            operation="release item",
            on_missing=lambda: self._missing_year(client, year),
        )
        logger.info(
            "Released item",
            extra={"client_id": client, "year": year, "category_id": category_key, "care_item_slug": slug},
        )
        return saved

    @staticmethod
    def _existing_category(doc: BudgetYear, category_id: str) -> CategoryBudget:
        category = doc.find_category(category_id)
        if category is None:
            raise UnknownCategoryError(
                "Budget category not found",
                client_id=doc.client_id,
                year=doc.year,
                category_id=category_id,
            )
        return category

    @staticmethod
    def _missing_year(client_id: str, year: int) -> CarePlanError:
        return BudgetYearNotFoundError("Budget year not found", client_id=client_id, year=year)

    # Reads -------------------------------------------------------------------

    def _load(self, client_id: str, year: int) -> Optional[BudgetYear]:
        return retry_transient(
            lambda: self.repository.get_year(client_id, year),
            policy=self.retry_policy,
            description="load budget year",
        )

    def get_year(self, client_id: str, year: int) -> Optional[BudgetYear]:
        return self._load(require_client_id(client_id), require_year(year))

    def list_years(self, client_id: str) -> list[int]:
        client = require_client_id(client_id)
        return retry_transient(
            lambda: self.repository.list_years(client),
            policy=self.retry_policy,
            description="list budget years",
        )

    def surplus(self, client_id: str, year: int) -> int:
        """Surplus in cents, recomputed from the leaves rather than read from cache."""
        doc = self.get_year(client_id, year)
        if doc is None:
            return 0
        return recompute_rollups(doc).surplus

    def get_budget_summary(self, client_id: str, year: int) -> BudgetSummary:
        client = require_client_id(client_id)
        year = require_year(year)
        doc = self._load(client, year)
        if doc is None:
            return BudgetSummary(
                client_id=client,
                year=year,
                annual_allocated=0,
                opening_carryover=0,
                allocated=0,
                spent=0,
                remaining=0,
                surplus=0,
            )

        try:
            verify_rollups(doc)
        except CarePlanError as exc:
            logger.error(
                "Budget rollups inconsistent: %s",
                exc.message,
                extra={"client_id": client, "year": year, **exc.details},
            )
            raise

        available = doc.annual_allocated + doc.opening_carryover
        return BudgetSummary(
            client_id=client,
            year=year,
            annual_allocated=doc.annual_allocated,
            opening_carryover=doc.opening_carryover,
            allocated=doc.totals.allocated,
            spent=doc.totals.spent,
            remaining=max(0, available - doc.totals.spent),
            surplus=doc.surplus,
            overspent_categories=tuple(
                c.category_id for c in doc.categories if c.spent > c.allocated
            ),
        )

    def get_category_detail(self, client_id: str, year: int, category_id: str) -> CategoryBudget:
        client = require_client_id(client_id)
        year = require_year(year)
        doc = self._load(client, year)
        if doc is None:
            raise self._missing_year(client, year)
        return self._existing_category(doc, _require_category_id(category_id))


__all__ = ["BudgetAggregator", "SpendLine", "recompute_rollups", "verify_rollups"]
