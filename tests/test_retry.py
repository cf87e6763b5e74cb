"""Transient-error retry and storage error translation tests."""

from __future__ import annotations

import logging

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from careplan.errors import (
    ConcurrencyConflictError,
    StorageUnavailableError,
    ValidationError,
)
from careplan.infra.retry import RetryPolicy, retry_transient, storage_guard


class TestRetryTransient:
    def test_succeeds_after_transient_failures(self):
        calls = []
        sleeps = []

        def operation():
            calls.append(1)
            if len(calls) < 3:
                raise ConcurrencyConflictError("conflict")
            return "ok"

        result = retry_transient(
            operation,
            policy=RetryPolicy(attempts=3, backoff_seconds=(0.1, 0.2)),
            sleep=sleeps.append,
        )

        assert result == "ok"
        assert len(calls) == 3
        assert sleeps == [0.1, 0.2]

    def test_reraises_last_error_when_exhausted(self, caplog):
        def operation():
            raise StorageUnavailableError("timeout")

        with caplog.at_level(logging.WARNING, logger="careplan"):
            with pytest.raises(StorageUnavailableError):
                retry_transient(
                    operation,
                    policy=RetryPolicy(attempts=2, backoff_seconds=(0.0,)),
                    description="load thing",
                )

        levels = [record.levelno for record in caplog.records if record.name == "careplan.infra.retry"]
        assert levels == [logging.WARNING, logging.ERROR]

    def test_non_transient_errors_are_not_retried(self):
        calls = []

        def operation():
            calls.append(1)
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            retry_transient(operation, policy=RetryPolicy(attempts=5, backoff_seconds=(0.0,)))
        assert calls == [1]

    def test_backoff_schedule_repeats_last_step(self):
        policy = RetryPolicy(attempts=5, backoff_seconds=(0.05, 0.1))
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [0.05, 0.1, 0.1, 0.1]
        assert RetryPolicy(backoff_seconds=()).delay_for(1) == 0.0


class TestStorageGuard:
    def test_operational_error_becomes_storage_unavailable(self):
        with pytest.raises(StorageUnavailableError) as excinfo:
            with storage_guard("budget.save"):
                raise OperationalError("UPDATE", {}, Exception("database is locked"))

        assert excinfo.value.retryable
        assert excinfo.value.details["operation"] == "budget.save"

    def test_other_errors_pass_through(self):
        with pytest.raises(IntegrityError):
            with storage_guard("occurrence.create"):
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))


def test_policy_from_config(tmp_path, monkeypatch):
    from careplan.config import TestConfig

    monkeypatch.setenv("CAREPLAN_STORAGE_RETRY_ATTEMPTS", "4")
    config = TestConfig(tmp_path)
    policy = RetryPolicy.from_config(config)

    assert policy.attempts == 4
    assert policy.backoff_seconds == (0.0,)
