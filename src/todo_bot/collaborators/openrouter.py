"""LLM-backed TODO extraction through an OpenAI-compatible chat completions API."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import date
from typing import Any

import httpx

from todo_bot.collaborators.base import (
    OUTPUT_INVALID_REASON,
    PermanentCollaboratorError,
    TransientCollaboratorError,
)
from todo_bot.collaborators.http import (
    DEFAULT_TIMEOUT_SECONDS,
    build_client,
    post_json,
    response_json,
)
from todo_bot.queue.models import TaskItem

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "openai/gpt-4o-mini"
SERVICE_NAME = "OpenRouter"

SYSTEM_PROMPT = """\
You extract TODO items from chat messages a user sent to their task bot.
Today is {today}. Reply with a JSON object only, no prose:
{{"items": [{{"title": "...", "due_date": "YYYY-MM-DD" or null, "notes": "..." or null}}]}}
Rules:
- One item per distinct task. Keep titles short and imperative.
- Resolve relative dates ("tomorrow", "on Friday") against today.
- Reply with {{"items": []}} when the messages contain no tasks.
"""


class OpenRouterExtractor:
    """Calls the chat completions endpoint and parses the JSON item list."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.model = model
        self._today = today
        self._client = build_client(
            base_url=base_url,
            timeout_seconds=timeout_seconds,
            headers={"Authorization": f"Bearer {api_key}"},
            transport=transport,
        )

    def extract(self, text: str) -> list[TaskItem]:
        if not text.strip():
            return []
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {
                    "role": "system",
                    "content": SYSTEM_PROMPT.format(today=self._today().isoformat()),
                },
                {"role": "user", "content": text},
            ],
        }
        response = post_json(self._client, "/chat/completions", payload, service=SERVICE_NAME)
        body = response_json(response, service=SERVICE_NAME)
        content = _completion_content(body)
        items = parse_items(content)
        logger.debug("%s returned %d items with model %s", SERVICE_NAME, len(items), self.model)
        return items

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> OpenRouterExtractor:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _completion_content(body: Any) -> str:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        # OpenRouter reports upstream provider failures inside a 200 reply.
        message = f"{SERVICE_NAME} error: {body['error'].get('message') or body['error']}"
        code = body["error"].get("code")
        if isinstance(code, int) and (code == 429 or code >= 500):
            raise TransientCollaboratorError(message, reason_code=f"upstream_{code}")
        raise PermanentCollaboratorError(message)
    try:
        content = body["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as error:
        raise PermanentCollaboratorError(
            f"{SERVICE_NAME} reply has no completion content",
            reason_code=OUTPUT_INVALID_REASON,
        ) from error
    if not isinstance(content, str):
        raise PermanentCollaboratorError(
            f"{SERVICE_NAME} completion content is not text",
            reason_code=OUTPUT_INVALID_REASON,
        )
    return content


def parse_items(content: str) -> list[TaskItem]:
    """Parse the model reply into items.

    Accepts ``{"items": [...]}`` or a bare list, optionally wrapped in a
    markdown code fence. Entries without a title are dropped; an unparsable
    ``due_date`` becomes ``None``.
    """

    try:
        parsed = json.loads(_strip_code_fence(content))
    except json.JSONDecodeError as error:
        raise PermanentCollaboratorError(
            f"Model reply is not valid JSON: {content[:200]}",
            reason_code=OUTPUT_INVALID_REASON,
        ) from error

    raw_items = parsed.get("items") if isinstance(parsed, dict) else parsed
    if not isinstance(raw_items, list):
        raise PermanentCollaboratorError(
            "Model reply has no items list",
            reason_code=OUTPUT_INVALID_REASON,
        )

    items: list[TaskItem] = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        title = str(raw.get("title") or "").strip()
        if not title:
            continue
        notes = raw.get("notes")
        items.append(
            TaskItem(
                title=title,
                due_date=_parse_due_date(raw.get("due_date")),
                notes=(str(notes).strip() or None) if notes else None,
            ),
        )
    return items


def _parse_due_date(value: object) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.debug("Ignoring unparsable due_date %r", value)
        return None


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if not text.startswith("```"):
        return text
    lines = text.splitlines()[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines)
