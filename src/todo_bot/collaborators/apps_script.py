"""Spreadsheet delivery through a Google Apps Script web app."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from todo_bot.collaborators.base import PermanentCollaboratorError, TransientCollaboratorError
from todo_bot.collaborators.http import (
    DEFAULT_TIMEOUT_SECONDS,
    build_client,
    post_json,
    response_json,
)
from todo_bot.queue.models import TaskItem

logger = logging.getLogger(__name__)

SERVICE_NAME = "Apps Script"


class AppsScriptSink:
    """POSTs ``{"batch_id", "items"}`` to the deployed web app URL.

    The script is expected to answer with JSON. ``{"ok": false, "error": ...}``
    is a refusal; ``"retry": true`` in that reply marks it transient. The
    batch id lets the script skip rows it has already appended.
    """

    def __init__(
        self,
        *,
        script_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.script_url = script_url
        self._client = build_client(timeout_seconds=timeout_seconds, transport=transport)

    def append(self, batch_id: str, items: Sequence[TaskItem]) -> None:
        payload = {
            "batch_id": batch_id,
            "items": [item.to_payload() for item in items],
        }
        response = post_json(self._client, self.script_url, payload, service=SERVICE_NAME)
        if "text/html" in response.headers.get("content-type", ""):
            # Apps Script serves a sign-in page when the deployment is not public.
            raise PermanentCollaboratorError(
                f"{SERVICE_NAME} answered with an HTML page; check the web app access settings",
                reason_code="html_reply",
            )
        body = response_json(response, service=SERVICE_NAME)
        if isinstance(body, dict) and body.get("ok") is False:
            reason = body.get("error", "unknown error")
            message = f"{SERVICE_NAME} rejected batch {batch_id}: {reason}"
            if body.get("retry"):
                raise TransientCollaboratorError(message, reason_code="script_retry")
            raise PermanentCollaboratorError(message, reason_code="script_rejected")
        logger.info("Appended %d rows for batch %s", len(items), batch_id)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> AppsScriptSink:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
