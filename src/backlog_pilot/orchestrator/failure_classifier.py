"""Deterministic classification of reasoning agent failures."""

from __future__ import annotations

from dataclasses import dataclass

from backlog_pilot.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1
DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)

# Checked in order; the first rule with a matching pattern wins.
_RULES: tuple[tuple[str, FailureClass, tuple[str, ...]], ...] = (
    (
        "billing_or_quota",
        FailureClass.BILLING_OR_QUOTA,
        (
            "quota",
            "resource_exhausted",
            "insufficient",
            "billing",
            "payment",
            "credit balance",
            "usage limit",
        ),
    ),
    (
        "access_or_auth",
        FailureClass.ACCESS_OR_AUTH,
        (
            "unauthorized",
            "forbidden",
            "permission denied",
            "invalid api key",
            "authentication",
            "not logged in",
            "please run /login",
        ),
    ),
    (
        "model_not_available",
        FailureClass.MODEL_NOT_AVAILABLE,
        (
            "model not found",
            "unknown model",
            "unsupported model",
            "invalid model",
            "model is not available",
        ),
    ),
    (
        "rate_limit_transient",
        FailureClass.BACKEND_TRANSIENT,
        (
            "too many requests",
            "rate limit",
            "429",
            "overloaded",
            "try again later",
        ),
    ),
)

_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "503",
)

_TRANSIENT_CLASSES = frozenset(
    {FailureClass.BACKEND_TRANSIENT, FailureClass.TIMEOUT, FailureClass.CANCELLED},
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class in _TRANSIENT_CLASSES

    def describe(self, *, exit_code: int) -> str:
        """One-line error message recorded on the failed session."""

        detail = f" (matched {self.matched_pattern!r})" if self.matched_pattern else ""
        return f"{self.reason_code}: agent exited with code {exit_code}{detail}."


def classify_agent_failure(
    *,
    agent: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> AgentFailureClassification:
    """Classify a non-zero agent exit by its output, then by its exit code."""

    haystack = f"{stderr}\n{stdout}".lower()

    for rule, failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                failure_class=failure_class,
                reason_code=f"{agent}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return AgentFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{agent}_backend_transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exit_code",
            matched_pattern=pattern,
        )

    return AgentFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{agent}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
