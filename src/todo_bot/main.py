"""CLI entrypoint for todo-bot."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
from rich.console import Console
from rich.logging import RichHandler

from todo_bot import __version__
from todo_bot.config import ConfigurationError, env_bool
from todo_bot.controllers import (
    QueueAddCommand,
    QueueBatchCommand,
    QueueCliController,
    QueueFlushCommand,
    QueueGcCommand,
    QueueListCommand,
    ServeCommand,
)
from todo_bot.storage.common import StoreError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()


@click.group()
@click.version_option(version=__version__, prog_name="todo-bot")
@click.option("--debug/--no-debug", default=None, help="Verbose logging (default: DEBUG env).")
def todo_bot(debug: bool | None) -> None:
    """Chat-to-spreadsheet TODO bot with a durable batching queue."""

    _configure_logging(debug)


@todo_bot.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Extract one item per line and write JSON lines locally instead of calling remote APIs.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path),
    default=None,
    help="JSON lines file for `--dry-run` (default: todo_items.jsonl).",
)
def serve(db_path: Path | None, dry_run: bool, output_path: Path | None) -> None:
    """Run the bot, reading `conversation_id<TAB>text` lines from stdin.

    Stops on end of input, SIGINT or SIGTERM. Open batches are persisted
    before exit and delivered on the next start.
    """

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.serve(
                ServeCommand(db_path=db_path, dry_run=dry_run, output_path=output_path),
                input_lines=click.get_text_stream("stdin"),
            ),
        ),
    )


@todo_bot.group()
def queue() -> None:
    """Inspect and operate the message queue."""


@queue.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--conversation", "conversation_id", required=True, help="Conversation id.")
@click.option("--text", required=True, help="Message text.")
def queue_add(db_path: Path | None, conversation_id: str, text: str) -> None:
    """Persist one message into its conversation's open batch."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.add(
                QueueAddCommand(db_path=db_path, conversation_id=conversation_id, text=text),
            ),
        ),
    )


@queue.command("flush")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--conversation",
    "conversation_id",
    default=None,
    help="Only close this conversation's open batch.",
)
def queue_flush(db_path: Path | None, conversation_id: str | None) -> None:
    """Close open batches so they are delivered without waiting for the idle window."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.flush(
                QueueFlushCommand(db_path=db_path, conversation_id=conversation_id),
            ),
        ),
    )


@queue.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max batches to show.")
def queue_pending(db_path: Path | None, limit: int | None) -> None:
    """List batches that are not delivered yet."""

    _emit_lines(
        _run(lambda: QUEUE_CONTROLLER.pending(QueueListCommand(db_path=db_path, limit=limit))),
    )


@queue.command("dead-letters")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Max batches to show.")
def queue_dead_letters(db_path: Path | None, limit: int | None) -> None:
    """List batches that failed permanently or ran out of attempts."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.dead_letters(QueueListCommand(db_path=db_path, limit=limit)),
        ),
    )


@queue.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("batch_id")
def queue_inspect(db_path: Path | None, batch_id: str) -> None:
    """Show one batch with its messages and event history."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.inspect(QueueBatchCommand(db_path=db_path, batch_id=batch_id)),
        ),
    )


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("batch_id")
def queue_retry(db_path: Path | None, batch_id: str) -> None:
    """Re-queue a dead-lettered batch with a fresh attempt budget."""

    _emit_lines(
        _run(
            lambda: QUEUE_CONTROLLER.retry(QueueBatchCommand(db_path=db_path, batch_id=batch_id)),
        ),
    )


@queue.command("gc")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=0),
    default=7,
    show_default=True,
    help="Purge delivered batches older than this many days.",
)
def queue_gc(db_path: Path | None, days: int) -> None:
    """Purge delivered batch archives."""

    _emit_lines(_run(lambda: QUEUE_CONTROLLER.gc(QueueGcCommand(db_path=db_path, days=days))))


def _run(action: Callable[[], list[str]]) -> list[str]:
    try:
        return action()
    except (ConfigurationError, StoreError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _configure_logging(debug: bool | None) -> None:
    if debug is None:
        try:
            debug = env_bool("DEBUG", default=False)
        except ConfigurationError as error:
            raise click.ClickException(str(error)) from error
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True),
        ],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    todo_bot()
