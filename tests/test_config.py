from __future__ import annotations

from pathlib import Path

import allure
import pytest

from todo_bot.collaborators import LineExtractor
from todo_bot.config import ConfigurationError, Settings
from todo_bot.controllers import build_manager
from todo_bot.queue.repository import QueueRepository

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_settings_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".todo_bot.db")
    assert settings.debug is False
    assert settings.batching.idle_window_seconds == 30.0
    assert settings.batching.max_batch_size == 10
    assert settings.delivery.max_attempts == 5
    assert settings.delivery.retry_base_seconds == 2.0
    assert settings.delivery.retry_max_seconds == 300.0
    assert settings.delivery.worker_count == 4
    assert settings.extraction.model == "openai/gpt-4o-mini"
    assert settings.extraction.base_url == "https://openrouter.ai/api/v1"
    settings.validate()


def test_settings_read_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TODO_BOT_DB_PATH", "/tmp/queue.db")
    monkeypatch.setenv("TODO_BOT_IDLE_WINDOW_SECONDS", "12.5")
    monkeypatch.setenv("TODO_BOT_MAX_BATCH_SIZE", "3")
    monkeypatch.setenv("TODO_BOT_MAX_ATTEMPTS", "7")
    monkeypatch.setenv("TODO_BOT_WORKER_COUNT", "")
    monkeypatch.setenv("OPENROUTER_API_KEY", "  sk-test  ")
    monkeypatch.setenv("TODO_BOT_LLM_MODEL", "anthropic/claude-3-haiku")
    monkeypatch.setenv("GOOGLE_SCRIPT_URL", "https://script.google.com/macros/s/abc/exec")
    monkeypatch.setenv("DEBUG", "yes")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/queue.db")
    assert settings.batching.idle_window_seconds == 12.5
    assert settings.batching.max_batch_size == 3
    assert settings.delivery.max_attempts == 7
    assert settings.delivery.worker_count == 4
    assert settings.extraction.api_key == "sk-test"
    assert settings.extraction.model == "anthropic/claude-3-haiku"
    assert settings.debug is True
    settings.validate_for_delivery()


def test_database_path_fallback_and_explicit_override(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("DATABASE_PATH", "/data/legacy.db")

    assert Settings.from_env().db_path == Path("/data/legacy.db")
    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DEBUG", "maybe"),
        ("TODO_BOT_MAX_BATCH_SIZE", "ten"),
        ("TODO_BOT_IDLE_WINDOW_SECONDS", "soon"),
    ],
)
def test_malformed_values_raise_configuration_error(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=name):
        Settings.from_env()


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("TODO_BOT_IDLE_WINDOW_SECONDS", "0", "IDLE_WINDOW"),
        ("TODO_BOT_MAX_BATCH_SIZE", "0", "MAX_BATCH_SIZE"),
        ("TODO_BOT_MAX_ATTEMPTS", "-1", "MAX_ATTEMPTS"),
        ("TODO_BOT_RETRY_MAX_SECONDS", "1", "RETRY_MAX_SECONDS"),
        ("TODO_BOT_WORKER_COUNT", "0", "WORKER_COUNT"),
        ("TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS", "30", "GRACEFUL_SHUTDOWN_SECONDS"),
    ],
)
def test_validate_rejects_unusable_policy(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError, match=message):
        Settings.from_env().validate()


def test_validate_for_delivery_requires_remote_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    with pytest.raises(ConfigurationError, match="OPENROUTER_API_KEY"):
        Settings.from_env().validate_for_delivery()

    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    with pytest.raises(ConfigurationError, match="GOOGLE_SCRIPT_URL is required"):
        Settings.from_env().validate_for_delivery()

    monkeypatch.setenv("GOOGLE_SCRIPT_URL", "script.google.com/exec")
    with pytest.raises(ConfigurationError, match="Invalid GOOGLE_SCRIPT_URL"):
        Settings.from_env().validate_for_delivery()


def test_shutdown_grace_covers_a_full_attempt(monkeypatch: pytest.MonkeyPatch) -> None:
    settings = Settings.from_env()
    assert settings.delivery.graceful_shutdown_seconds is None
    assert settings.delivery.shutdown_grace_seconds() == 130.0

    monkeypatch.setenv("TODO_BOT_ATTEMPT_TIMEOUT_SECONDS", "5")
    assert Settings.from_env().delivery.shutdown_grace_seconds() == 20.0

    monkeypatch.setenv("TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS", "45")
    settings = Settings.from_env()
    assert settings.delivery.shutdown_grace_seconds() == 45.0
    settings.validate()


def test_build_manager_wires_shutdown_grace(
    monkeypatch: pytest.MonkeyPatch,
    repository: QueueRepository,
    sink: object,
) -> None:
    monkeypatch.setenv("TODO_BOT_GRACEFUL_SHUTDOWN_SECONDS", "90")

    manager = build_manager(
        settings=Settings.from_env(),
        repository=repository,
        extractor=LineExtractor(),
        sink=sink,  # type: ignore[arg-type]
    )
    try:
        assert manager.graceful_shutdown_seconds == 90.0
        assert manager.pipeline.attempt_timeout_seconds == 60.0
    finally:
        manager.shutdown()
