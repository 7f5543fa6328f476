"""Shared test fixtures."""

from __future__ import annotations

import random
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from todo_bot.collaborators import LineExtractor
from todo_bot.queue.accumulator import BatchAccumulator
from todo_bot.queue.manager import QueueManager
from todo_bot.queue.models import TaskItem
from todo_bot.queue.pipeline import DeliveryPipeline
from todo_bot.queue.repository import QueueRepository
from todo_bot.queue.retry_policy import RetryPolicy
from todo_bot.storage.common import utc_now

_TODO_BOT_ENV_VARS = (
    "TODO_BOT_DB_PATH",
    "DATABASE_PATH",
    "TODO_BOT_SQLITE_BUSY_TIMEOUT_MS",
    "TODO_BOT_IDLE_WINDOW_SECONDS",
    "TODO_BOT_MAX_BATCH_SIZE",
    "TODO_BOT_TICK_INTERVAL_SECONDS",
    "TODO_BOT_MAX_ATTEMPTS",
    "TODO_BOT_RETRY_BASE_SECONDS",
    "TODO_BOT_RETRY_MAX_SECONDS",
    "TODO_BOT_ATTEMPT_TIMEOUT_SECONDS",
    "TODO_BOT_WORKER_COUNT",
    "TODO_BOT_WORK_QUEUE_SIZE",
    "TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS",
    "OPENROUTER_API_KEY",
    "TODO_BOT_LLM_MODEL",
    "TODO_BOT_LLM_BASE_URL",
    "GOOGLE_SCRIPT_URL",
    "DEBUG",
)


class ManualClock:
    """Deterministic clock; starts at the real current time so store timestamps line up."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utc_now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class ScriptedExtractor:
    """Replays scripted outcomes, then extracts one item per line."""

    def __init__(self, outcomes: Sequence[object] = ()) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def extract(self, text: str) -> list[TaskItem]:
        with self._lock:
            self.calls.append(text)
            outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return list(outcome)  # type: ignore[call-overload]
        return LineExtractor().extract(text)


class RecordingSink:
    """Remembers appended batches; raises scripted failures first."""

    def __init__(self, failures: Sequence[BaseException] = ()) -> None:
        self.failures = list(failures)
        self.appended: list[tuple[str, list[TaskItem]]] = []
        self._lock = threading.Lock()

    def append(self, batch_id: str, items: Sequence[TaskItem]) -> None:
        with self._lock:
            if self.failures:
                raise self.failures.pop(0)
            self.appended.append((batch_id, list(items)))

    @property
    def batch_ids(self) -> list[str]:
        with self._lock:
            return [batch_id for batch_id, _ in self.appended]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _TODO_BOT_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queue.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[QueueRepository]:
    repo = QueueRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def extractor() -> ScriptedExtractor:
    return ScriptedExtractor()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def scripted_extractor() -> type[ScriptedExtractor]:
    return ScriptedExtractor


@pytest.fixture()
def recording_sink() -> type[RecordingSink]:
    return RecordingSink


@pytest.fixture()
def manager_factory(
    clock: ManualClock,
) -> Iterator[Callable[..., QueueManager]]:
    created: list[QueueManager] = []

    def _factory(  # noqa: PLR0913
        repository: QueueRepository,
        *,
        extractor: object,
        sink: object,
        clock: Callable[[], datetime] = clock,
        idle_window_seconds: float = 30.0,
        max_batch_size: int = 10,
        max_attempts: int = 5,
        attempt_timeout_seconds: float = 5.0,
        tick_interval_seconds: float = 1.0,
        worker_count: int = 2,
        graceful_shutdown_seconds: float = 5.0,
    ) -> QueueManager:
        manager = QueueManager(
            repository=repository,
            pipeline=DeliveryPipeline(
                repository=repository,
                extractor=extractor,  # type: ignore[arg-type]
                sink=sink,  # type: ignore[arg-type]
                attempt_timeout_seconds=attempt_timeout_seconds,
                store_retry_attempts=2,
                store_retry_base_seconds=0.0,
            ),
            accumulator=BatchAccumulator(
                idle_window_seconds=idle_window_seconds,
                max_batch_size=max_batch_size,
                clock=clock,
            ),
            retry_policy=RetryPolicy(
                max_attempts=max_attempts,
                base_seconds=2.0,
                max_seconds=300.0,
                rng=random.Random(7),
            ),
            tick_interval_seconds=tick_interval_seconds,
            worker_count=worker_count,
            store_retry_attempts=2,
            store_retry_base_seconds=0.0,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
            clock=clock,
        )
        created.append(manager)
        return manager

    yield _factory
    for manager in created:
        manager.shutdown()
