"""Collaborator interfaces consumed by the delivery pipeline."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from todo_bot.queue.models import TaskItem

OUTPUT_INVALID_REASON = "output_invalid"


class CollaboratorError(RuntimeError):
    """Extraction or delivery error with retryability hint."""

    def __init__(self, message: str, *, transient: bool, reason_code: str | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.reason_code = reason_code


class TransientCollaboratorError(CollaboratorError):
    """Network, rate-limit or timeout failure worth retrying."""

    def __init__(self, message: str, *, reason_code: str | None = None) -> None:
        super().__init__(message, transient=True, reason_code=reason_code)


class PermanentCollaboratorError(CollaboratorError):
    """Malformed, refused or unauthorized request; retrying will not help."""

    def __init__(self, message: str, *, reason_code: str | None = None) -> None:
        super().__init__(message, transient=False, reason_code=reason_code)


class Extractor(Protocol):
    """Turns free-form chat text into structured TODO items."""

    def extract(self, text: str) -> list[TaskItem]:
        """Return extracted items or raise ``CollaboratorError``."""


class Sink(Protocol):
    """Durably appends extracted items to the spreadsheet-backed store."""

    def append(self, batch_id: str, items: Sequence[TaskItem]) -> None:
        """Append items tagged with ``batch_id`` or raise ``CollaboratorError``."""
