"""Deterministic collaborator failure classification for retry policy."""

from __future__ import annotations

import httpx

from todo_bot.collaborators.base import OUTPUT_INVALID_REASON, CollaboratorError
from todo_bot.queue.models import FailureClass, FailureClassification

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "timed out",
)

_MAX_SUMMARY_CHARS = 500


def classify_failure(*, stage: str, error: BaseException) -> FailureClassification:
    """Classify an extraction/delivery exception into a deterministic retry class."""

    summary = _summarize(error)

    if isinstance(error, TimeoutError | httpx.TimeoutException):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code=f"{stage}_timeout",
            matched_rule="timeout",
            matched_pattern=None,
            error_summary=summary,
        )

    if isinstance(error, CollaboratorError):
        if error.transient:
            return FailureClassification(
                failure_class=FailureClass.COLLABORATOR_TRANSIENT,
                reason_code=error.reason_code or f"{stage}_transient",
                matched_rule="collaborator_transient",
                matched_pattern=None,
                error_summary=summary,
            )
        if error.reason_code == OUTPUT_INVALID_REASON:
            return FailureClassification(
                failure_class=FailureClass.OUTPUT_INVALID,
                reason_code=f"{stage}_output_invalid",
                matched_rule="output_invalid",
                matched_pattern=None,
                error_summary=summary,
            )
        return _classify_text(stage=stage, summary=summary, reason_code=error.reason_code)

    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            failure_class=FailureClass.COLLABORATOR_TRANSIENT,
            reason_code=f"{stage}_transport_error",
            matched_rule="transport_error",
            matched_pattern=None,
            error_summary=summary,
        )

    return _classify_text(stage=stage, summary=summary, reason_code=None, allow_transient=True)


def _classify_text(
    *,
    stage: str,
    summary: str,
    reason_code: str | None,
    allow_transient: bool = False,
) -> FailureClassification:
    haystack = summary.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            reason_code=reason_code or f"{stage}_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
            error_summary=summary,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=reason_code or f"{stage}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
            error_summary=summary,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            reason_code=reason_code or f"{stage}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
            error_summary=summary,
        )

    # Explicitly permanent collaborator errors are never promoted to transient.
    if allow_transient:
        pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                failure_class=FailureClass.COLLABORATOR_TRANSIENT,
                reason_code=f"{stage}_rate_limit_transient",
                matched_rule="rate_limit_transient",
                matched_pattern=pattern,
                error_summary=summary,
            )

        pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                failure_class=FailureClass.COLLABORATOR_TRANSIENT,
                reason_code=f"{stage}_generic_transient",
                matched_rule="generic_transient",
                matched_pattern=pattern,
                error_summary=summary,
            )

    return FailureClassification(
        failure_class=FailureClass.COLLABORATOR_NON_RETRYABLE,
        reason_code=reason_code or f"{stage}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
        error_summary=summary,
    )


def _summarize(error: BaseException) -> str:
    text = str(error).strip() or type(error).__name__
    return text[:_MAX_SUMMARY_CHARS]


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
