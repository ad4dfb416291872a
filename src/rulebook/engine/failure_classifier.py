"""Deterministic tool failure classification for the bridge retry policy."""

from __future__ import annotations

from dataclasses import dataclass

TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

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
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota exceeded",
    "insufficient_quota",
    "insufficient credits",
    "credit balance is too low",
    "payment required",
    "billing hard limit",
    "usage limit reached",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "invalid api key",
    "api key not valid",
    "invalid x-api-key",
    "authentication failed",
    "401 unauthorized",
    "not logged in",
    "please log in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)


@dataclass(slots=True, frozen=True)
class FailureClassification:
    """Why a non-zero exit happened and whether retrying may help."""

    retryable: bool
    matched_rule: str
    matched_pattern: str | None

    def describe(self) -> str:
        if self.matched_pattern is None:
            return self.matched_rule
        return f"{self.matched_rule} ({self.matched_pattern!r})"


def classify_exit_failure(*, exit_code: int, stderr: str, stdout_tail: str = "") -> FailureClassification:
    """Classify a non-zero exit without an explicit error event.

    Rate-limit and network messages are checked first and always retried.
    Only specific account and model phrases make a failure permanent;
    everything else, including unmatched output, is treated as transient.
    """

    haystack = f"{stderr}\n{stdout_tail}".lower()

    for rule, patterns in (
        ("rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS),
        ("generic_transient", _GENERIC_TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(retryable=True, matched_rule=rule, matched_pattern=pattern)

    for rule, patterns in (
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(retryable=False, matched_rule=rule, matched_pattern=pattern)

    if exit_code in TRANSIENT_EXIT_CODES:
        return FailureClassification(
            retryable=True,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )
    return FailureClassification(
        retryable=True,
        matched_rule="fallback_transient",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
