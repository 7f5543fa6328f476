"""Runtime configuration for the batching queue and its collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_DB_PATH = ".todo_bot.db"
_SHUTDOWN_MARGIN_SECONDS = 10.0


class ConfigurationError(ValueError):
    """Invalid or missing configuration value."""


@dataclass(slots=True)
class BatchingSettings:
    """How inbound messages are grouped into batches."""

    idle_window_seconds: float = 30.0
    max_batch_size: int = 10
    tick_interval_seconds: float = 1.0


@dataclass(slots=True)
class DeliverySettings:
    """Retry policy and worker pool settings."""

    max_attempts: int = 5
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 300.0
    attempt_timeout_seconds: float = 60.0
    worker_count: int = 4
    work_queue_size: int = 100
    graceful_shutdown_seconds: float | None = None

    def shutdown_grace_seconds(self) -> float:
        """Grace for in-flight batches at shutdown; derived from the attempt timeout if unset."""

        if self.graceful_shutdown_seconds is not None:
            return self.graceful_shutdown_seconds
        # Extraction and append each get a full attempt timeout.
        return 2 * self.attempt_timeout_seconds + _SHUTDOWN_MARGIN_SECONDS


@dataclass(slots=True)
class ExtractionSettings:
    """Language-model extraction endpoint."""

    api_key: str = ""
    model: str = "openai/gpt-4o-mini"
    base_url: str = "https://openrouter.ai/api/v1"


@dataclass(slots=True)
class SheetsSettings:
    """Spreadsheet delivery endpoint."""

    script_url: str = ""


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(DEFAULT_DB_PATH)
    sqlite_busy_timeout_ms: int = 5_000
    debug: bool = False
    batching: BatchingSettings = field(default_factory=BatchingSettings)
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    sheets: SheetsSettings = field(default_factory=SheetsSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(
                os.getenv("TODO_BOT_DB_PATH", os.getenv("DATABASE_PATH", DEFAULT_DB_PATH)),
            ),
            sqlite_busy_timeout_ms=_env_int("TODO_BOT_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            debug=env_bool("DEBUG", default=False),
            batching=BatchingSettings(
                idle_window_seconds=_env_float("TODO_BOT_IDLE_WINDOW_SECONDS", 30.0),
                max_batch_size=_env_int("TODO_BOT_MAX_BATCH_SIZE", 10),
                tick_interval_seconds=_env_float("TODO_BOT_TICK_INTERVAL_SECONDS", 1.0),
            ),
            delivery=DeliverySettings(
                max_attempts=_env_int("TODO_BOT_MAX_ATTEMPTS", 5),
                retry_base_seconds=_env_float("TODO_BOT_RETRY_BASE_SECONDS", 2.0),
                retry_max_seconds=_env_float("TODO_BOT_RETRY_MAX_SECONDS", 300.0),
                attempt_timeout_seconds=_env_float("TODO_BOT_ATTEMPT_TIMEOUT_SECONDS", 60.0),
                worker_count=_env_int("TODO_BOT_WORKER_COUNT", 4),
                work_queue_size=_env_int("TODO_BOT_WORK_QUEUE_SIZE", 100),
                graceful_shutdown_seconds=_env_optional_float("TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS"),
            ),
            extraction=ExtractionSettings(
                api_key=os.getenv("OPENROUTER_API_KEY", "").strip(),
                model=os.getenv("TODO_BOT_LLM_MODEL", "openai/gpt-4o-mini").strip(),
                base_url=os.getenv(
                    "TODO_BOT_LLM_BASE_URL",
                    "https://openrouter.ai/api/v1",
                ).strip(),
            ),
            sheets=SheetsSettings(
                script_url=os.getenv("GOOGLE_SCRIPT_URL", "").strip(),
            ),
        )

    def validate(self) -> None:
        """Raise ``ConfigurationError`` for policy values the queue cannot run with."""

        if self.sqlite_busy_timeout_ms < 0:
            raise ConfigurationError("TODO_BOT_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")
        if self.batching.idle_window_seconds <= 0:
            raise ConfigurationError("TODO_BOT_IDLE_WINDOW_SECONDS must be > 0.")
        if self.batching.max_batch_size <= 0:
            raise ConfigurationError("TODO_BOT_MAX_BATCH_SIZE must be a positive integer.")
        if self.batching.tick_interval_seconds <= 0:
            raise ConfigurationError("TODO_BOT_TICK_INTERVAL_SECONDS must be > 0.")
        if self.delivery.max_attempts <= 0:
            raise ConfigurationError("TODO_BOT_MAX_ATTEMPTS must be a positive integer.")
        if self.delivery.retry_base_seconds <= 0:
            raise ConfigurationError("TODO_BOT_RETRY_BASE_SECONDS must be > 0.")
        if self.delivery.retry_max_seconds < self.delivery.retry_base_seconds:
            raise ConfigurationError(
                "TODO_BOT_RETRY_MAX_SECONDS must be >= TODO_BOT_RETRY_BASE_SECONDS.",
            )
        if self.delivery.attempt_timeout_seconds <= 0:
            raise ConfigurationError("TODO_BOT_ATTEMPT_TIMEOUT_SECONDS must be > 0.")
        if self.delivery.worker_count <= 0:
            raise ConfigurationError("TODO_BOT_WORKER_COUNT must be a positive integer.")
        if self.delivery.work_queue_size <= 0:
            raise ConfigurationError("TODO_BOT_WORK_QUEUE_SIZE must be a positive integer.")
        grace = self.delivery.graceful_shutdown_seconds
        if grace is not None and grace < self.delivery.attempt_timeout_seconds:
            raise ConfigurationError(
                "TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS must be >= TODO_BOT_ATTEMPT_TIMEOUT_SECONDS.",
            )

    def validate_for_delivery(self) -> None:
        """Also require the remote extraction and spreadsheet endpoints."""

        self.validate()
        if not self.extraction.api_key:
            raise ConfigurationError("OPENROUTER_API_KEY is required.")
        if not self.extraction.model:
            raise ConfigurationError("TODO_BOT_LLM_MODEL must not be empty.")
        _validate_http_url("TODO_BOT_LLM_BASE_URL", self.extraction.base_url)
        if not self.sheets.script_url:
            raise ConfigurationError("GOOGLE_SCRIPT_URL is required.")
        _validate_http_url("GOOGLE_SCRIPT_URL", self.sheets.script_url)


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ConfigurationError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from error


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return _env_float(name, 0.0)
