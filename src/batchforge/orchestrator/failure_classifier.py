"""Deterministic execution failure classification for unit retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from batchforge.orchestrator.models import ErrorCategory

_HTTP_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    400: ErrorCategory.INVALID_INPUT,
    401: ErrorCategory.PROVIDER_ERROR,
    403: ErrorCategory.CONTENT_FILTERED,
    404: ErrorCategory.INVALID_INPUT,
    408: ErrorCategory.TIMEOUT,
    429: ErrorCategory.RATE_LIMITED,
    500: ErrorCategory.PROVIDER_ERROR,
    502: ErrorCategory.NETWORK_ERROR,
    503: ErrorCategory.PROVIDER_ERROR,
    504: ErrorCategory.TIMEOUT,
}

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "quota exceeded",
)
_CONTENT_FILTER_PATTERNS: tuple[str, ...] = (
    "content filter",
    "nsfw",
    "safety",
    "violat",
    "moderat",
    "prohibited",
    "blocked",
)
_INVALID_INPUT_PATTERNS: tuple[str, ...] = (
    "invalid input",
    "invalid prompt",
    "invalid param",
    "malformed",
    "validation",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "econnrefused",
    "enotfound",
    "dns",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (
    "timeout",
    "timed out",
    "deadline",
)

_MESSAGE_RULES: tuple[tuple[str, ErrorCategory, tuple[str, ...]], ...] = (
    ("rate_limited", ErrorCategory.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    ("content_filtered", ErrorCategory.CONTENT_FILTERED, _CONTENT_FILTER_PATTERNS),
    ("invalid_input", ErrorCategory.INVALID_INPUT, _INVALID_INPUT_PATTERNS),
    ("network_error", ErrorCategory.NETWORK_ERROR, _NETWORK_PATTERNS),
    ("timeout", ErrorCategory.TIMEOUT, _TIMEOUT_PATTERNS),
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: ErrorCategory
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.category.retryable


def classify_failure(
    *,
    message: str,
    status_code: int | None = None,
) -> FailureClassification:
    """Classify a provider failure by HTTP status first, then by message text."""

    if status_code is not None and status_code in _HTTP_STATUS_CATEGORIES:
        return FailureClassification(
            category=_HTTP_STATUS_CATEGORIES[status_code],
            matched_rule=f"http_{status_code}",
            matched_pattern=None,
        )

    haystack = message.lower()
    for rule, category, patterns in _MESSAGE_RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                category=category,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return FailureClassification(
        category=ErrorCategory.UNKNOWN,
        matched_rule="fallback_unknown",
        matched_pattern=None,
    )


def classify_exception(error: BaseException) -> FailureClassification:
    """Classify an unexpected exception raised by a backend."""

    if isinstance(error, TimeoutError):
        return FailureClassification(
            category=ErrorCategory.TIMEOUT,
            matched_rule="exception_timeout",
            matched_pattern=None,
        )
    if isinstance(error, ConnectionError):
        return FailureClassification(
            category=ErrorCategory.NETWORK_ERROR,
            matched_rule="exception_connection",
            matched_pattern=None,
        )
    return classify_failure(message=f"{type(error).__name__}: {error}")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
