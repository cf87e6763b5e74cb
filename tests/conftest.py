"""Pytest configuration and shared fixtures for CarePlan tests.

Provides an isolated SQLite database per test, a fixed clock, and repository
fixtures that run each repository-backed test against both the in-memory and
the SQLModel implementations.
"""

from __future__ import annotations

import tempfile
from datetime import date
from pathlib import Path

import pytest
from sqlmodel import Session, SQLModel, create_engine

# Import all models to ensure they're registered with SQLModel metadata
from careplan import models  # noqa: F401
from careplan.domain import FixedClock, RecurrenceUnit
from careplan.domain.repositories import CareItemRef
from careplan.infra.repositories import (
    InMemoryBudgetRepository,
    InMemoryCareItemCatalog,
    InMemoryOccurrenceRepository,
    InMemoryTransactionRepository,
    SQLModelBudgetRepository,
    SQLModelOccurrenceRepository,
    SQLModelTransactionRepository,
)
from careplan.infra.retry import RetryPolicy
from careplan.services import (
    BudgetAggregator,
    CareCoordinator,
    OccurrenceStore,
    RecurrenceRule,
    TransactionLedger,
    YearRollover,
)

CLIENT = "C1"

# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create an isolated SQLite database file for each test.

    Yields:
        Engine: SQLModel engine connected to test database
    """
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 5.0},
    )
    SQLModel.metadata.create_all(engine)

    yield engine

    engine.dispose()
    db_path.unlink(missing_ok=True)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    """Session factory matching the ``Callable[[], Session]`` the repositories expect."""

    def factory() -> Session:
        return Session(db_engine, expire_on_commit=False)

    return factory


# =============================================================================
# Domain Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(date(2025, 6, 1))


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """No sleeping between attempts in tests."""
    return RetryPolicy(attempts=3, backoff_seconds=(0.0,))


@pytest.fixture
def catalog() -> InMemoryCareItemCatalog:
    return InMemoryCareItemCatalog(
        {
            CLIENT: [
                CareItemRef(
                    slug="dental-appt",
                    label="Dental Appointment",
                    category_id="appointments",
                    rule=RecurrenceRule(count=3, unit=RecurrenceUnit.MONTH),
                ),
                CareItemRef(
                    slug="physio",
                    label="Physiotherapy",
                    category_id="therapy",
                    rule=RecurrenceRule(
                        count=1,
                        unit=RecurrenceUnit.WEEK,
                        start_date=date(2025, 1, 6),
                        range_end=date(2025, 3, 31),
                    ),
                ),
                CareItemRef(slug="check-in", label="Check-in", category_id=None),
            ]
        }
    )


# =============================================================================
# Repository Fixtures (both backends)
# =============================================================================


@pytest.fixture(params=["memory", "sqlmodel"])
def backend(request) -> str:
    return request.param


@pytest.fixture
def occurrence_repo(backend, request):
    if backend == "memory":
        return InMemoryOccurrenceRepository()
    return SQLModelOccurrenceRepository(request.getfixturevalue("session_factory"))


@pytest.fixture
def budget_repo(backend, request):
    if backend == "memory":
        return InMemoryBudgetRepository()
    return SQLModelBudgetRepository(request.getfixturevalue("session_factory"))


@pytest.fixture
def transaction_repo(backend, request):
    if backend == "memory":
        return InMemoryTransactionRepository()
    return SQLModelTransactionRepository(request.getfixturevalue("session_factory"))


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def store(occurrence_repo, clock, retry_policy) -> OccurrenceStore:
    return OccurrenceStore(occurrence_repo, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def aggregator(budget_repo, clock, retry_policy) -> BudgetAggregator:
    return BudgetAggregator(budget_repo, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def year_rollover(budget_repo, clock, retry_policy) -> YearRollover:
    return YearRollover(budget_repo, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def ledger(transaction_repo, aggregator, clock, retry_policy) -> TransactionLedger:
    return TransactionLedger(transaction_repo, aggregator, clock=clock, retry_policy=retry_policy)


@pytest.fixture
def coordinator(store, aggregator, year_rollover, catalog, clock, ledger) -> CareCoordinator:
    return CareCoordinator(store, aggregator, year_rollover, catalog, clock, ledger)
