"""BudgetAggregator tests, run against both repository implementations."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from careplan.domain import BudgetYear, CategoryBudget, ItemBudget
from careplan.errors import (
    BudgetYearNotFoundError,
    ConcurrencyConflictError,
    InvalidMoneyError,
    NegativeAllocationError,
    NegativeSpendViolationError,
    TotalsDriftError,
    UnknownCategoryError,
    ValidationError,
)
from careplan.services.budgeting import BudgetAggregator, recompute_rollups, verify_rollups
from careplan.infra.retry import RetryPolicy

CLIENT = "C1"


def _assert_rollups(doc: BudgetYear) -> None:
    for category in doc.categories:
        if category.items:
            assert category.spent == sum(item.spent for item in category.items)
        assert category.spent >= 0
        for item in category.items:
            assert item.spent >= 0
    assert doc.totals.spent == sum(c.spent for c in doc.categories)
    assert doc.totals.allocated == sum(c.allocated for c in doc.categories)
    assert doc.surplus == doc.annual_allocated + doc.opening_carryover - doc.totals.spent


class TestAllocation:
    def test_category_allocation_declares_category_and_creates_year(self, aggregator):
        doc = aggregator.set_allocation(
            CLIENT, 2025, "appointments", "600.00", category_name="Appointments"
        )

        category = doc.find_category("appointments")
        assert category is not None
        assert category.category_name == "Appointments"
        assert category.allocated == 60000
        assert doc.totals.allocated == 60000
        assert aggregator.list_years(CLIENT) == [2025]

    def test_category_allocation_does_not_touch_items(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 200, "dental-appt", label="Dental")
        doc = aggregator.set_allocation(CLIENT, 2025, "appointments", 900)

        category = doc.find_category("appointments")
        assert category.allocated == 90000
        assert category.find_item("dental-appt").allocated == 20000

    def test_item_allocation_requires_category(self, aggregator):
        with pytest.raises(UnknownCategoryError):
            aggregator.set_allocation(CLIENT, 2025, "transport", 100, "taxi")

    def test_rejected_allocation_leaves_no_year_behind(self, aggregator):
        with pytest.raises(UnknownCategoryError):
            aggregator.set_allocation(CLIENT, 2025, "appointments", "50.00", "dental-appt")

        assert aggregator.list_years(CLIENT) == []
        assert aggregator.get_year(CLIENT, 2025) is None

    def test_amount_beyond_storage_range_is_rejected(self, aggregator):
        with pytest.raises(InvalidMoneyError):
            aggregator.set_allocation(CLIENT, 2025, "appointments", "100000000000000000")
        assert aggregator.list_years(CLIENT) == []

    def test_rollup_beyond_storage_range_is_rejected(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", "90000000000000000")
        with pytest.raises(InvalidMoneyError):
            aggregator.set_allocation(CLIENT, 2025, "therapy", "90000000000000000")

        doc = aggregator.get_year(CLIENT, 2025)
        assert [c.category_id for c in doc.categories] == ["appointments"]
        assert doc.totals.allocated == 9000000000000000000

    def test_negative_allocation_is_rejected(self, aggregator):
        with pytest.raises(NegativeAllocationError):
            aggregator.set_allocation(CLIENT, 2025, "appointments", "-1")
        assert aggregator.list_years(CLIENT) == []

    def test_sub_cent_amount_is_rejected(self, aggregator):
        with pytest.raises(InvalidMoneyError):
            aggregator.set_allocation(CLIENT, 2025, "appointments", "10.001")

    def test_annual_allocation_feeds_surplus(self, aggregator):
        aggregator.set_annual_allocation(CLIENT, 2025, "5000")
        assert aggregator.surplus(CLIENT, 2025) == 500000

    @pytest.mark.parametrize("year", [0, "2025", True, 2025.0])
    def test_year_must_be_integer(self, aggregator, year):
        with pytest.raises(ValidationError):
            aggregator.set_annual_allocation(CLIENT, year, 10)

    def test_client_required(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.set_allocation("", 2025, "appointments", 10)


class TestSpend:
    def test_unknown_category_is_rejected(self, aggregator):
        with pytest.raises(UnknownCategoryError):
            aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 10)

        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        with pytest.raises(UnknownCategoryError):
            aggregator.apply_spend_delta(CLIENT, 2025, "transport", "taxi", 10)

    def test_item_created_with_zero_allocation(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        doc = aggregator.apply_spend_delta(
            CLIENT, 2025, "appointments", "Dental-Appt", "35.50", label="Dental Appointment"
        )

        item = doc.find_category("appointments").find_item("dental-appt")
        assert item.allocated == 0
        assert item.spent == 3550
        assert item.label == "Dental Appointment"

    def test_refund_cannot_go_negative(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 50)
        before = aggregator.get_year(CLIENT, 2025)

        with pytest.raises(NegativeSpendViolationError):
            aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", "-50.01")

        after = aggregator.get_year(CLIENT, 2025)
        assert after.totals.spent == before.totals.spent == 5000
        assert after.version == before.version

    def test_refund_on_new_item_is_rejected(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        with pytest.raises(NegativeSpendViolationError):
            aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", -1)
        assert aggregator.get_year(CLIENT, 2025).find_category("appointments").items == []

    def test_rollups_hold_after_mixed_mutations(self, aggregator):
        aggregator.set_annual_allocation(CLIENT, 2025, 3000)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.set_allocation(CLIENT, 2025, "therapy", 1200)
        steps = [
            ("appointments", "dental-appt", "120"),
            ("therapy", "physio", "80.25"),
            ("appointments", "gp", "45"),
            ("therapy", "physio", "-20.25"),
            ("appointments", "dental-appt", "-20"),
            ("therapy", "hydro", "300"),
        ]
        for category_id, slug, delta in steps:
            doc = aggregator.apply_spend_delta(CLIENT, 2025, category_id, slug, delta)
            _assert_rollups(doc)

        assert doc.totals.spent == 12000 - 2000 + 8025 - 2025 + 4500 + 30000
        assert doc.totals.allocated == 180000
        assert aggregator.surplus(CLIENT, 2025) == 300000 - doc.totals.spent

    def test_versions_increase(self, aggregator):
        first = aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        second = aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 1)
        assert second.version == first.version + 1


class TestSummary:
    def test_missing_year_is_zero(self, aggregator):
        summary = aggregator.get_budget_summary(CLIENT, 2030)
        assert (summary.allocated, summary.spent, summary.remaining, summary.surplus) == (0, 0, 0, 0)

    def test_summary_figures(self, aggregator):
        aggregator.set_annual_allocation(CLIENT, 2025, 1000)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 100)
        aggregator.set_allocation(CLIENT, 2025, "therapy", 500)
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 150)
        aggregator.apply_spend_delta(CLIENT, 2025, "therapy", "physio", 50)

        summary = aggregator.get_budget_summary(CLIENT, 2025)

        assert summary.annual_allocated == 100000
        assert summary.allocated == 60000
        assert summary.spent == 20000
        assert summary.remaining == 80000
        assert summary.surplus == 80000
        assert summary.available == 100000
        assert summary.overspent_categories == ("appointments",)

    def test_remaining_never_negative(self, aggregator):
        aggregator.set_annual_allocation(CLIENT, 2025, 100)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 100)
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 250)

        summary = aggregator.get_budget_summary(CLIENT, 2025)
        assert summary.remaining == 0
        assert summary.surplus == -15000

    def test_category_detail(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 120)

        detail = aggregator.get_category_detail(CLIENT, 2025, "appointments")
        assert [(i.care_item_slug, i.spent) for i in detail.items] == [("dental-appt", 12000)]

        with pytest.raises(UnknownCategoryError):
            aggregator.get_category_detail(CLIENT, 2025, "transport")
        with pytest.raises(BudgetYearNotFoundError):
            aggregator.get_category_detail(CLIENT, 2024, "appointments")

    def test_list_years_descending(self, aggregator):
        for year in (2023, 2025, 2024):
            aggregator.set_annual_allocation(CLIENT, year, 10)
        aggregator.set_annual_allocation("C2", 2026, 10)
        assert aggregator.list_years(CLIENT) == [2025, 2024, 2023]


class TestRelease:
    def test_release_category_zeroes_allocations_and_keeps_spend(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 200, "dental-appt")
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 120)

        doc = aggregator.release_category(CLIENT, 2025, "appointments")

        category = doc.find_category("appointments")
        assert category.allocated == 0
        assert category.released_at is not None
        assert category.find_item("dental-appt").allocated == 0
        assert category.spent == 12000
        assert doc.totals.allocated == 0

    def test_release_item(self, aggregator):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        aggregator.set_allocation(CLIENT, 2025, "appointments", 200, "dental-appt")

        doc = aggregator.release_item(CLIENT, 2025, "appointments", "dental-appt")

        category = doc.find_category("appointments")
        assert category.allocated == 60000
        assert category.find_item("dental-appt").allocated == 0
        assert category.find_item("dental-appt").released_at is not None

    def test_release_missing(self, aggregator):
        with pytest.raises(BudgetYearNotFoundError):
            aggregator.release_category(CLIENT, 2025, "appointments")
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        with pytest.raises(UnknownCategoryError):
            aggregator.release_category(CLIENT, 2025, "transport")
        with pytest.raises(ValidationError):
            aggregator.release_item(CLIENT, 2025, "appointments", "nope")


class TestRollupVerification:
    def _doc(self) -> BudgetYear:
        doc = BudgetYear(
            client_id=CLIENT,
            year=2025,
            annual_allocated=100000,
            categories=[
                CategoryBudget(
                    category_id="appointments",
                    category_name="Appointments",
                    allocated=60000,
                    items=[ItemBudget(care_item_slug="dental-appt", label="Dental", spent=12000)],
                )
            ],
        )
        return recompute_rollups(doc)

    def test_recompute_then_verify(self):
        doc = self._doc()
        verify_rollups(doc)
        assert doc.totals.spent == 12000
        assert doc.surplus == 88000

    def test_drift_is_detected(self):
        doc = self._doc()
        doc.totals.spent = 1
        with pytest.raises(TotalsDriftError):
            verify_rollups(doc)

    def test_category_drift_is_detected(self):
        doc = self._doc()
        doc.categories[0].spent = 5
        with pytest.raises(TotalsDriftError):
            verify_rollups(doc)

    def test_surplus_drift_is_detected(self):
        doc = self._doc()
        doc.surplus += 1
        with pytest.raises(TotalsDriftError):
            verify_rollups(doc)

    def test_negative_item_is_detected(self):
        doc = self._doc()
        doc.categories[0].items[0].spent = -1
        recompute_rollups(doc)
        with pytest.raises(NegativeSpendViolationError):
            verify_rollups(doc)


class _FlakyBudgetRepository:
    """Wraps a repository and loses the first ``failures`` saves to a concurrent writer."""

    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures
        self.saves = 0

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def save_year(self, budget_year):
        self.saves += 1
        if self.saves <= self.failures:
            raise ConcurrencyConflictError("lost race", year=budget_year.year)
        return self.inner.save_year(budget_year)


class TestRetries:
    def test_conflict_is_retried(self, budget_repo, clock):
        flaky = _FlakyBudgetRepository(budget_repo, failures=2)
        service = BudgetAggregator(
            flaky, clock=clock, retry_policy=RetryPolicy(attempts=3, backoff_seconds=(0.0,))
        )

        doc = service.set_allocation(CLIENT, 2025, "appointments", 600)

        assert doc.find_category("appointments").allocated == 60000
        assert flaky.saves == 3

    def test_conflict_surfaces_when_exhausted(self, budget_repo, clock):
        flaky = _FlakyBudgetRepository(budget_repo, failures=5)
        service = BudgetAggregator(
            flaky, clock=clock, retry_policy=RetryPolicy(attempts=2, backoff_seconds=(0.0,))
        )

        with pytest.raises(ConcurrencyConflictError):
            service.set_allocation(CLIENT, 2025, "appointments", 600)
        assert flaky.saves == 2

    def test_stale_snapshot_is_rejected(self, aggregator, budget_repo):
        aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
        stale = budget_repo.get_year(CLIENT, 2025)
        aggregator.apply_spend_delta(CLIENT, 2025, "appointments", "dental-appt", 10)

        stale.annual_allocated = 1
        recompute_rollups(stale)
        with pytest.raises(ConcurrencyConflictError):
            budget_repo.save_year(stale)

    def test_concurrent_spend_is_not_lost(self, backend, budget_repo, clock):
        import threading

        service = BudgetAggregator(
            budget_repo,
            clock=clock,
            retry_policy=RetryPolicy(attempts=50, backoff_seconds=(0.0, 0.001, 0.005)),
        )
        service.set_allocation(CLIENT, 2025, "appointments", 600)

        threads = [
            threading.Thread(
                target=service.apply_spend_delta,
                args=(CLIENT, 2025, "appointments", "dental-appt", 1),
            )
            for _ in range(10)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert service.get_year(CLIENT, 2025).totals.spent == 1000


def test_released_at_uses_clock(aggregator, clock):
    aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
    doc = aggregator.release_category(CLIENT, 2025, "appointments")
    released = doc.find_category("appointments").released_at
    assert isinstance(released, datetime)
    assert released.date() == clock.today()


def test_released_at_is_utc_on_every_backend(aggregator):
    aggregator.set_allocation(CLIENT, 2025, "appointments", 600)
    aggregator.release_category(CLIENT, 2025, "appointments")

    doc = aggregator.get_year(CLIENT, 2025)
    assert doc.find_category("appointments").released_at.utcoffset() == timedelta(0)
    assert doc.updated_at.utcoffset() == timedelta(0)


def test_vanished_year_after_save_is_a_conflict(session_factory, monkeypatch):
    from careplan.infra.repositories import SQLModelBudgetRepository

    repo = SQLModelBudgetRepository(session_factory)
    doc = repo.create_year(BudgetYear(client_id=CLIENT, year=2025))
    monkeypatch.setattr(repo, "get_year", lambda client_id, year: None)

    with pytest.raises(ConcurrencyConflictError):
        repo.save_year(doc)
