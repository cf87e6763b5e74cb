"""Year rollover tests."""

from __future__ import annotations

from datetime import date

import pytest

from careplan.errors import BudgetYearNotFoundError, YearNotClosedError
from careplan.services.rollover import RolloverPolicy, YearRollover

CLIENT = "C1"


def _close_2024_with_surplus(aggregator, surplus: int) -> None:
    """Annual allocation of 1000 with spend chosen to leave ``surplus``."""
    aggregator.set_annual_allocation(CLIENT, 2024, 1000)
    aggregator.set_allocation(CLIENT, 2024, "appointments", 1000)
    aggregator.apply_spend_delta(CLIENT, 2024, "appointments", "dental-appt", 1000 - surplus)


class TestRollover:
    def test_positive_surplus_carries_over(self, aggregator, year_rollover):
        _close_2024_with_surplus(aggregator, 500)

        opened = year_rollover.rollover(CLIENT, 2024)

        assert opened.year == 2025
        assert opened.opening_carryover == 50000
        assert opened.rolled_from_year == 2024
        assert opened.categories == []
        assert aggregator.get_budget_summary(CLIENT, 2025).surplus == 50000

    def test_deficit_is_clamped_by_default(self, aggregator, year_rollover):
        _close_2024_with_surplus(aggregator, -200)
        assert aggregator.surplus(CLIENT, 2024) == -20000

        opened = year_rollover.rollover(CLIENT, 2024)

        assert opened.opening_carryover == 0

    def test_deficit_carries_when_clamp_disabled(self, aggregator, budget_repo, clock, retry_policy):
        _close_2024_with_surplus(aggregator, -200)
        service = YearRollover(
            budget_repo,
            clock=clock,
            policy=RolloverPolicy(clamp_negative=False),
            retry_policy=retry_policy,
        )

        assert service.carryover_for(CLIENT, 2024) == -20000
        assert service.rollover(CLIENT, 2024).opening_carryover == -20000

    def test_open_year_requires_force(self, aggregator, year_rollover, clock):
        aggregator.set_annual_allocation(CLIENT, 2025, 300)
        assert clock.today().year == 2025

        with pytest.raises(YearNotClosedError):
            year_rollover.rollover(CLIENT, 2025)

        opened = year_rollover.rollover(CLIENT, 2025, force=True)
        assert opened.year == 2026
        assert opened.opening_carryover == 30000

    def test_missing_source_year(self, year_rollover):
        with pytest.raises(BudgetYearNotFoundError):
            year_rollover.rollover(CLIENT, 2020)

    def test_rerun_is_idempotent(self, aggregator, year_rollover):
        _close_2024_with_surplus(aggregator, 500)

        first = year_rollover.rollover(CLIENT, 2024)
        second = year_rollover.rollover(CLIENT, 2024)

        assert second.opening_carryover == first.opening_carryover == 50000
        assert second.id == first.id
        assert aggregator.list_years(CLIENT) == [2025, 2024]

    def test_keeps_existing_target_categories(self, aggregator, year_rollover):
        _close_2024_with_surplus(aggregator, 500)
        aggregator.set_annual_allocation(CLIENT, 2025, 2000)
        aggregator.set_allocation(CLIENT, 2025, "therapy", 800)
        aggregator.apply_spend_delta(CLIENT, 2025, "therapy", "physio", 100)

        opened = year_rollover.rollover(CLIENT, 2024)

        assert [c.category_id for c in opened.categories] == ["therapy"]
        assert opened.surplus == 200000 + 50000 - 10000

    def test_rerun_after_more_spend_refreshes_carryover(self, aggregator, year_rollover, clock):
        _close_2024_with_surplus(aggregator, 500)
        year_rollover.rollover(CLIENT, 2024)

        aggregator.apply_spend_delta(CLIENT, 2024, "appointments", "dental-appt", 100)
        clock.set(date(2025, 7, 1))

        assert year_rollover.rollover(CLIENT, 2024).opening_carryover == 40000


def test_policy_from_config(tmp_path, monkeypatch):
    from careplan.config import TestConfig

    monkeypatch.setenv("CAREPLAN_ROLLOVER_CLAMP_NEGATIVE", "false")
    assert RolloverPolicy.from_config(TestConfig(tmp_path)).clamp_negative is False
    assert RolloverPolicy().carryover_for(-5) == 0
    assert RolloverPolicy(clamp_negative=False).carryover_for(-5) == -5
