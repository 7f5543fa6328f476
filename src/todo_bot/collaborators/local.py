"""Offline collaborators for dry runs and tests."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Sequence
from pathlib import Path

from todo_bot.collaborators.base import TransientCollaboratorError
from todo_bot.queue.models import TaskItem
from todo_bot.storage.common import utc_now

logger = logging.getLogger(__name__)

_BULLET_PREFIXES = ("- [ ] ", "[ ] ", "- ", "* ", "• ")


class LineExtractor:
    """One item per non-empty line, with list bullets stripped."""

    def extract(self, text: str) -> list[TaskItem]:
        items: list[TaskItem] = []
        for line in text.splitlines():
            title = line.strip()
            for prefix in _BULLET_PREFIXES:
                if title.startswith(prefix):
                    title = title[len(prefix) :].strip()
                    break
            if title:
                items.append(TaskItem(title=title))
        return items


class JsonlSink:
    """Appends one JSON line per batch and ignores batch ids already written."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._seen: set[str] | None = None

    def append(self, batch_id: str, items: Sequence[TaskItem]) -> None:
        with self._lock:
            seen = self._load_seen()
            if batch_id in seen:
                logger.info("Batch %s already written to %s; skipping", batch_id, self.path)
                return
            record = {
                "batch_id": batch_id,
                "items": [item.to_payload() for item in items],
                "written_at": utc_now().isoformat(),
            }
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, ensure_ascii=False) + "\n")
            except OSError as error:
                raise TransientCollaboratorError(
                    f"Cannot write {self.path}: {error}",
                    reason_code="file_write_error",
                ) from error
            seen.add(batch_id)

    def written_batches(self) -> list[dict[str, object]]:
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as handle:
            return [json.loads(line) for line in handle if line.strip()]

    def _load_seen(self) -> set[str]:
        if self._seen is None:
            self._seen = {str(record["batch_id"]) for record in self.written_batches()}
        return self._seen
