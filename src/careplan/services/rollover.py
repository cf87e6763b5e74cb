"""Carry a closed year's surplus into the next year's opening balance."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import BaseConfig
from ..domain.clock import Clock
from ..domain.entities import BudgetYear, require_client_id, require_year
from ..domain.repositories.budget import BudgetRepository
from ..errors import BudgetYearNotFoundError, YearNotClosedError
from ..infra.retry import DEFAULT_POLICY, RetryPolicy, retry_transient
from ..logging_config import get_logger
from .budgeting import recompute_rollups, verify_rollups

logger = get_logger("services.rollover")


@dataclass(frozen=True)
class RolloverPolicy:
    """A negative surplus opens the next year at zero unless ``clamp_negative`` is off."""

    clamp_negative: bool = True

    @classmethod
    def from_config(cls, config: BaseConfig) -> "RolloverPolicy":
        return cls(clamp_negative=config.ROLLOVER_CLAMP_NEGATIVE)

    def carryover_for(self, surplus_cents: int) -> int:
        if self.clamp_negative and surplus_cents < 0:
            return 0
        return surplus_cents


class YearRollover:
    def __init__(
        self,
        repository: BudgetRepository,
        *,
        clock: Clock,
        policy: RolloverPolicy = RolloverPolicy(),
        retry_policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.repository = repository
        self.clock = clock
        self.policy = policy
        self.retry_policy = retry_policy

    def carryover_for(self, client_id: str, from_year: int) -> int:
        """Opening carryover ``from_year`` would hand to the next year."""
        client = require_client_id(client_id)
        source = self._source(client, require_year(from_year))
        return self.policy.carryover_for(recompute_rollups(source).surplus)

    def _source(self, client_id: str, year: int) -> BudgetYear:
        source = retry_transient(
            lambda: self.repository.get_year(client_id, year),
            policy=self.retry_policy,
            description="load rollover source",
        )
        if source is None:
            raise BudgetYearNotFoundError("Budget year not found", client_id=client_id, year=year)
        return source

    def rollover(self, client_id: str, from_year: int, *, force: bool = False) -> BudgetYear:
        """Open ``from_year + 1`` with ``from_year``'s surplus as its carryover.

        Categories are not copied. Running it again overwrites the carryover
        with the same value.
        """
        client = require_client_id(client_id)
        from_year = require_year(from_year)
        today = self.clock.today()
        if from_year >= today.year and not force:
            logger.warning(
                "Refusing rollover of open year",
                extra={"client_id": client, "from_year": from_year, "today": today.isoformat()},
            )
            raise YearNotClosedError(
                "Year has not closed yet", client_id=client, year=from_year, today=today.isoformat()
            )

        to_year = from_year + 1

        def attempt() -> BudgetYear:
            source = self._source(client, from_year)
            surplus = recompute_rollups(source).surplus
            carryover = self.policy.carryover_for(surplus)

            target = self.repository.get_year(client, to_year)
            if target is None:
                draft = BudgetYear(client_id=client, year=to_year, opening_carryover=carryover)
                verify_rollups(recompute_rollups(draft))
                target = self.repository.create_year(BudgetYear(client_id=client, year=to_year))
            target.opening_carryover = carryover
            target.rolled_from_year = from_year
            recompute_rollups(target)
            verify_rollups(target)
            saved = self.repository.save_year(target)
            logger.info(
                "Rolled budget year over",
                extra={
                    "client_id": client,
                    "from_year": from_year,
                    "to_year": to_year,
                    "surplus_cents": surplus,
                    "carryover_cents": carryover,
                    "clamped": carryover != surplus,
                },
            )
            return saved

        return retry_transient(attempt, policy=self.retry_policy, description="rollover")


__all__ = ["RolloverPolicy", "YearRollover"]
