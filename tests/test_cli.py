from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from todo_bot.main import todo_bot
from todo_bot.queue.models import CloseReason, FailureClass, MessageCreate
from todo_bot.queue.repository import QueueRepository
from todo_bot.storage.common import utc_now

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Queue Operations"),
]


def _batch_id(output: str) -> str:
    match = re.search(r"Batch: (\S+)", output)
    assert match is not None, output
    return match.group(1)


def _seed_failed_and_delivered(db_path: Path) -> None:
    repo = QueueRepository(db_path)
    repo.init_schema()
    for batch_id, conversation_id in (("dead", "c8"), ("done", "c9")):
        repo.save_message(
            MessageCreate(
                message_id=f"{batch_id}-m",
                conversation_id=conversation_id,
                text="pay rent",
                received_at=utc_now(),
            ),
            batch_id=batch_id,
            position=0,
            close_reason=CloseReason.FLUSH,
        )
        repo.claim_batch(batch_id=batch_id, worker_id="seed")
    repo.fail_batch(
        batch_id="dead",
        failure_class=FailureClass.ACCESS_OR_AUTH,
        error_summary="HTTP 401 Unauthorized",
    )
    repo.mark_delivered(batch_id="done", item_count=1)
    repo.complete_batch(batch_id="done")
    repo.close()


def test_queue_add_inspect_flush_and_pending(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    first = runner.invoke(
        todo_bot,
        ["queue", "add", "--db-path", str(db_path), "--conversation", "c1", "--text", "buy milk"],
    )
    assert first.exit_code == 0, first.output
    batch_id = _batch_id(first.output)
    assert "state=open messages=1" in first.output

    second = runner.invoke(
        todo_bot,
        ["queue", "add", "--db-path", str(db_path), "--conversation", "c1", "--text", "call mom"],
    )
    assert second.exit_code == 0, second.output
    assert _batch_id(second.output) == batch_id
    assert "messages=2" in second.output

    inspect = runner.invoke(todo_bot, ["queue", "inspect", "--db-path", str(db_path), batch_id])
    assert inspect.exit_code == 0, inspect.output
    assert "State: open" in inspect.output
    assert "  [0] buy milk" in inspect.output
    assert "  [1] call mom" in inspect.output

    flush = runner.invoke(todo_bot, ["queue", "flush", "--db-path", str(db_path)])
    assert flush.exit_code == 0, flush.output
    assert "Closed batches: 1" in flush.output
    assert batch_id in flush.output

    pending = runner.invoke(todo_bot, ["queue", "pending", "--db-path", str(db_path)])
    assert pending.exit_code == 0, pending.output
    assert "Pending batches: 1" in pending.output
    assert "state=closed messages=2" in pending.output


def test_queue_add_rejects_blank_text(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        todo_bot,
        [
            "queue",
            "add",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--conversation",
            "c1",
            "--text",
            " ",
        ],
    )

    assert result.exit_code == 1
    assert "must not be empty" in result.output


def test_queue_dead_letter_retry_and_gc(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    _seed_failed_and_delivered(db_path)
    runner = CliRunner()

    dead = runner.invoke(todo_bot, ["queue", "dead-letters", "--db-path", str(db_path)])
    assert dead.exit_code == 0, dead.output
    assert "Dead letters: 1" in dead.output
    assert "error=HTTP 401 Unauthorized" in dead.output

    not_failed = runner.invoke(todo_bot, ["queue", "retry", "--db-path", str(db_path), "done"])
    assert not_failed.exit_code == 1
    assert "Only failed batches" in not_failed.output

    missing = runner.invoke(todo_bot, ["queue", "inspect", "--db-path", str(db_path), "nope"])
    assert missing.exit_code == 1
    assert "Batch not found: nope" in missing.output

    retried = runner.invoke(todo_bot, ["queue", "retry", "--db-path", str(db_path), "dead"])
    assert retried.exit_code == 0, retried.output
    assert "Batch re-queued: dead" in retried.output

    gc = runner.invoke(todo_bot, ["queue", "gc", "--db-path", str(db_path), "--days", "0"])
    assert gc.exit_code == 0, gc.output
    assert "Purged delivered batches: 1 (older than 0 days)" in gc.output

    pending = runner.invoke(todo_bot, ["queue", "pending", "--db-path", str(db_path)])
    assert "Pending batches: 1" in pending.output
    assert "dead conversation=c8 state=closed" in pending.output


def test_serve_dry_run_persists_input_until_next_start(tmp_path: Path) -> None:
    db_path = tmp_path / "serve.db"
    output_path = tmp_path / "items.jsonl"
    runner = CliRunner()

    served = runner.invoke(
        todo_bot,
        ["serve", "--db-path", str(db_path), "--dry-run", "--output", str(output_path)],
        input="c1\tbuy milk\nc1\tcall mom\nnot a message\n",
    )

    assert served.exit_code == 0, served.output
    assert "Recovery: closed_open=0" in served.output
    assert "Stopped: end of input" in served.output

    pending = runner.invoke(todo_bot, ["queue", "pending", "--db-path", str(db_path)])
    assert "Pending batches: 1" in pending.output
    assert "state=closed messages=2" in pending.output

    match = re.search(r"^  (\S+) conversation=c1 ", pending.output, re.MULTILINE)
    assert match is not None, pending.output
    inspect = runner.invoke(
        todo_bot,
        ["queue", "inspect", "--db-path", str(db_path), match.group(1)],
    )
    assert "Closed: shutdown" in inspect.output


def test_serve_requires_remote_configuration_without_dry_run(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        todo_bot,
        ["serve", "--db-path", str(tmp_path / "serve.db")],
        input="",
    )

    assert result.exit_code == 1
    assert "OPENROUTER_API_KEY is required" in result.output
