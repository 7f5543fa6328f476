"""Shared httpx plumbing for HTTP-backed collaborators."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from todo_bot.collaborators.base import (
    OUTPUT_INVALID_REASON,
    PermanentCollaboratorError,
    TransientCollaboratorError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 2
USER_AGENT = "todo-bot/0.1"

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})
_MAX_DETAIL_CHARS = 300


def build_client(
    *,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    max_retries: int = DEFAULT_MAX_RETRIES,
    headers: dict[str, str] | None = None,
    base_url: str = "",
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """httpx client with connect retries, timeouts and redirects enabled."""

    base_headers = {"User-Agent": USER_AGENT}
    if headers:
        base_headers.update(headers)
    return httpx.Client(
        base_url=base_url,
        timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        headers=base_headers,
        transport=transport or httpx.HTTPTransport(retries=max_retries),
        follow_redirects=True,
    )


def post_json(
    client: httpx.Client,
    url: str,
    payload: dict[str, Any],
    *,
    service: str,
) -> httpx.Response:
    """POST ``payload`` and translate transport failures and HTTP errors."""

    try:
        response = client.post(url, json=payload)
    except httpx.TimeoutException as error:
        logger.warning("Timeout calling %s", service)
        raise TransientCollaboratorError(
            f"{service} request timed out: {error}",
            reason_code="timeout",
        ) from error
    except httpx.TransportError as error:
        logger.warning("Network error calling %s: %s", service, error)
        raise TransientCollaboratorError(
            f"{service} network error: {error}",
            reason_code="network_error",
        ) from error
    raise_for_status(response, service=service)
    return response


def raise_for_status(response: httpx.Response, *, service: str) -> None:
    """429, 408 and 5xx are transient; any other non-2xx status is permanent."""

    if response.is_success:
        return
    status = response.status_code
    message = f"{service} returned HTTP {status} {response.reason_phrase}: {_detail(response)}"
    if status in _TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientCollaboratorError(message, reason_code=f"http_{status}")
    raise PermanentCollaboratorError(message, reason_code=f"http_{status}")


def response_json(response: httpx.Response, *, service: str) -> Any:
    try:
        return response.json()
    except ValueError as error:
        raise PermanentCollaboratorError(
            f"{service} replied with non-JSON content: {_detail(response)}",
            reason_code=OUTPUT_INVALID_REASON,
        ) from error


def _detail(response: httpx.Response) -> str:
    text = response.text.strip().replace("\n", " ")
    return text[:_MAX_DETAIL_CHARS] or "<empty body>"
