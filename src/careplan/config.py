"""Application configuration objects and helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    """Interpret environment variable values as booleans."""

    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {value!r}") from exc


def _env_backoff(name: str, default: tuple[float, ...]) -> tuple[float, ...]:
    """Parse a comma separated backoff schedule in seconds."""

    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        schedule = tuple(float(part) for part in value.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"{name} must be a comma separated list of seconds") from exc
    if not schedule or any(step < 0 for step in schedule):
        raise ValueError(f"{name} must contain at least one non-negative delay")
    return schedule


class BaseConfig:
    """Base configuration shared across environments."""

    APP_NAME = "CarePlan"
    DB_FILENAME = "careplan.db"
    SQLITE_PRAGMAS = {"journal_mode": "wal", "foreign_keys": "on"}

    def __init__(self) -> None:
        self.DATA_DIR = self._resolve_data_dir()
        self.DEV_MODE = _env_bool("CAREPLAN_DEV_MODE", default=True)
        self.DATABASE_URL = os.getenv("CAREPLAN_DATABASE_URL", self._build_sqlite_url())
        self.STORAGE_TIMEOUT_SECONDS = _env_float("CAREPLAN_STORAGE_TIMEOUT", 5.0)
        self.STORAGE_RETRY_ATTEMPTS = _env_int("CAREPLAN_STORAGE_RETRY_ATTEMPTS", 3)
        self.STORAGE_RETRY_BACKOFF = _env_backoff(
            "CAREPLAN_STORAGE_RETRY_BACKOFF", (0.05, 0.1, 0.2)
        )
        self.ROLLOVER_CLAMP_NEGATIVE = _env_bool("CAREPLAN_ROLLOVER_CLAMP_NEGATIVE", default=True)
        if self.STORAGE_TIMEOUT_SECONDS <= 0:
            raise ValueError("CAREPLAN_STORAGE_TIMEOUT must be positive.")
        if self.STORAGE_RETRY_ATTEMPTS < 1:
            raise ValueError("CAREPLAN_STORAGE_RETRY_ATTEMPTS must be at least 1.")

    def _resolve_data_dir(self) -> Path:
        """Return the directory where the SQLite file and logs live."""

        data_root = os.getenv("CAREPLAN_DATA_DIR", "instance")
        path = Path(data_root).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def _build_sqlite_url(self) -> str:
        db_path = self.DATA_DIR / self.DB_FILENAME
        return f"sqlite:///{db_path}"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def sqlalchemy_engine_options(self) -> dict[str, Any]:
        """Expose engine kwargs for SQLModel to consume.

        The storage timeout is handed to the driver so a locked or unreachable
        database surfaces as an error instead of blocking indefinitely.
        """

        if self.is_sqlite:
            connect_args: dict[str, Any] = {
                "check_same_thread": False,
                "timeout": self.STORAGE_TIMEOUT_SECONDS,
            }
            return {"connect_args": connect_args}
        return {
            "pool_timeout": self.STORAGE_TIMEOUT_SECONDS,
            "pool_pre_ping": True,
            "connect_args": {"connect_timeout": int(max(1, self.STORAGE_TIMEOUT_SECONDS))},
        }


class DevConfig(BaseConfig):
    """Development configuration using local SQLite."""

    DEBUG = True
    TESTING = False


class TestConfig(BaseConfig):
    """Configuration for test runs: throwaway data dir, no retry delays."""

    __test__ = False  # keep pytest from collecting this class

    DEBUG = False
    TESTING = True

    def __init__(self, data_dir: Path | str) -> None:
        self._data_dir = Path(data_dir)
        super().__init__()
        self.DATABASE_URL = self._build_sqlite_url()
        self.STORAGE_RETRY_BACKOFF = (0.0,)

    def _resolve_data_dir(self) -> Path:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        return self._data_dir.resolve()
