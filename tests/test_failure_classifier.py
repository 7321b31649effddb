from __future__ import annotations

import allure

from backlog_pilot.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_agent_failure,
)
from backlog_pilot.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Reasoning Backend"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_agent_failure(
        agent="gemini",
        exit_code=137,
        stdout="",
        stderr="Quota exceeded for this project",
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert classified.transient is False


def test_classifier_maps_auth_errors() -> None:
    classified = classify_agent_failure(
        agent="claude",
        exit_code=1,
        stdout="Not logged in. Please run /login",
        stderr="",
    )
    assert classified.failure_class == FailureClass.ACCESS_OR_AUTH
    assert classified.reason_code == "claude_access_or_auth"


def test_classifier_maps_model_unavailable() -> None:
    classified = classify_agent_failure(
        agent="claude",
        exit_code=1,
        stdout="",
        stderr="Invalid model requested",
    )
    assert classified.failure_class == FailureClass.MODEL_NOT_AVAILABLE
    assert classified.reason_code == "claude_model_not_available"


def test_classifier_maps_rate_limit_to_backend_transient() -> None:
    classified = classify_agent_failure(
        agent="codex",
        exit_code=1,
        stdout="",
        stderr="HTTP 429 too many requests, please retry",
    )
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.transient is True


def test_classifier_generic_transient_and_exit_codes() -> None:
    network = classify_agent_failure(
        agent="codex",
        exit_code=1,
        stdout="",
        stderr="Connection refused by upstream",
    )
    killed = classify_agent_failure(agent="codex", exit_code=143, stdout="", stderr="")

    assert network.matched_rule == "generic_transient"
    assert network.reason_code == "codex_backend_transient"
    assert killed.failure_class == FailureClass.BACKEND_TRANSIENT
    assert killed.matched_rule == "transient_exit_code"
    assert killed.matched_pattern is None


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_agent_failure(
        agent="codex",
        exit_code=2,
        stdout="fatal: unsupported syntax in prompt template",
        stderr="",
    )
    assert classified.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.describe(exit_code=2) == (
        "codex_backend_non_retryable: agent exited with code 2."
    )


def test_describe_mentions_matched_pattern() -> None:
    classified = classify_agent_failure(
        agent="gemini",
        exit_code=1,
        stdout="",
        stderr="billing account disabled",
    )
    assert classified.describe(exit_code=1) == (
        "gemini_billing_or_quota: agent exited with code 1 (matched 'billing')."
    )
