"""Application context for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from sqlmodel import Session

from .config import BaseConfig
from .domain.clock import Clock, SystemClock
from .domain.repositories import (
    BudgetRepository,
    CareItemCatalog,
    OccurrenceRepository,
    TransactionRepository,
)
from .infra.database import create_db_engine, create_session_factory, init_database
from .infra.repositories import (
    InMemoryBudgetRepository,
    InMemoryCareItemCatalog,
    InMemoryOccurrenceRepository,
    InMemoryTransactionRepository,
    SQLModelBudgetRepository,
    SQLModelOccurrenceRepository,
    SQLModelTransactionRepository,
)
from .infra.retry import RetryPolicy
from .services.budgeting import BudgetAggregator
from .services.coordinator import CareCoordinator
from .services.occurrences import OccurrenceStore
from .services.rollover import RolloverPolicy, YearRollover
from .services.transactions import TransactionLedger


@dataclass
class AppContext:
    """Centralized application context with repositories and services."""

    # Configuration
    config: BaseConfig
    clock: Clock

    # Repositories
    occurrence_repo: OccurrenceRepository
    budget_repo: BudgetRepository
    transaction_repo: TransactionRepository
    catalog: CareItemCatalog

    # Services
    occurrences: OccurrenceStore
    budget: BudgetAggregator
    rollover: YearRollover
    ledger: TransactionLedger
    coordinator: CareCoordinator

    # Session factory (None when running on in-memory repositories)
    session_factory: Optional[Callable[[], Session]] = None


def create_app_context(
    config: Optional[BaseConfig] = None,
    *,
    clock: Optional[Clock] = None,
    catalog: Optional[CareItemCatalog] = None,
    in_memory: bool = False,
) -> AppContext:
    """Create and initialize the application context."""

    if config is None:
        config = BaseConfig()
    clock = clock or SystemClock()
    catalog = catalog or InMemoryCareItemCatalog()

    session_factory = None
    occurrence_repo: OccurrenceRepository
    budget_repo: BudgetRepository
    transaction_repo: TransactionRepository
    if in_memory:
        occurrence_repo = InMemoryOccurrenceRepository()
        budget_repo = InMemoryBudgetRepository()
        transaction_repo = InMemoryTransactionRepository()
    else:
        engine = create_db_engine(config)
        init_database(engine)
        session_factory = create_session_factory(engine)
        occurrence_repo = SQLModelOccurrenceRepository(session_factory)
        budget_repo = SQLModelBudgetRepository(session_factory)
        transaction_repo = SQLModelTransactionRepository(session_factory)

    retry_policy = RetryPolicy.from_config(config)
    occurrences = OccurrenceStore(occurrence_repo, clock=clock, retry_policy=retry_policy)
    budget = BudgetAggregator(budget_repo, clock=clock, retry_policy=retry_policy)
    rollover = YearRollover(
        budget_repo,
        clock=clock,
        policy=RolloverPolicy.from_config(config),
        retry_policy=retry_policy,
    )
    ledger = TransactionLedger(transaction_repo, budget, clock=clock, retry_policy=retry_policy)

    return AppContext(
        config=config,
        clock=clock,
        occurrence_repo=occurrence_repo,
        budget_repo=budget_repo,
        transaction_repo=transaction_repo,
        catalog=catalog,
        occurrences=occurrences,
        budget=budget,
        rollover=rollover,
        ledger=ledger,
        coordinator=CareCoordinator(occurrences, budget, rollover, catalog, clock, ledger),
        session_factory=session_factory,
    )
