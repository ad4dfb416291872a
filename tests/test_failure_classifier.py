from __future__ import annotations

import allure

from rulebook.engine.failure_classifier import classify_exit_failure

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Retry Policy"),
]


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_exit_failure(exit_code=137, stderr="Quota exceeded for this project")

    assert classified.retryable is False
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota exceeded"


def test_classifier_maps_auth_and_model_errors_to_permanent() -> None:
    auth = classify_exit_failure(exit_code=1, stderr="Error: not logged in. Please log in first.")
    model = classify_exit_failure(exit_code=1, stderr="Invalid model requested")

    assert (auth.retryable, auth.matched_rule) == (False, "access_or_auth")
    assert (model.retryable, model.matched_rule) == (False, "model_not_available")


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_exit_failure(exit_code=1, stderr="HTTP 429 too many requests, please retry")

    assert classified.retryable is True
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.describe() == "rate_limit_transient ('too many requests')"


def test_classifier_reads_stdout_tail_too() -> None:
    classified = classify_exit_failure(exit_code=1, stderr="", stdout_tail="connection reset by peer")

    assert classified.retryable is True
    assert classified.matched_rule == "generic_transient"


def test_classifier_uses_transient_exit_codes() -> None:
    classified = classify_exit_failure(exit_code=143, stderr="")

    assert classified.retryable is True
    assert classified.matched_rule == "transient_exit_code"


def test_classifier_falls_back_to_transient() -> None:
    classified = classify_exit_failure(exit_code=2, stderr="segmentation fault")

    assert classified.retryable is True
    assert classified.matched_rule == "fallback_transient"
    assert classified.describe() == "fallback_transient"


def test_network_failure_mentioning_auth_stays_transient() -> None:
    classified = classify_exit_failure(exit_code=1, stderr="connection reset while refreshing authentication")

    assert classified.retryable is True
    assert classified.matched_rule == "generic_transient"


def test_loose_account_words_do_not_make_a_failure_permanent() -> None:
    for stderr in ("403 forbidden on upload", "insufficient disk space", "earned credits: 3"):
        assert classify_exit_failure(exit_code=1, stderr=stderr).retryable is True
