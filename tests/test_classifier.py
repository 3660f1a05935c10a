import asyncio

import pytest

from forgeline.classifier import ErrorCategory, FailureTracker, RetryPolicy, classify
from forgeline.errors import ProviderInstallationError, ProviderStreamError


@pytest.mark.parametrize("raw, category", [
    ("Error: Invalid API key provided", ErrorCategory.AUTHENTICATION),
    ("HTTP 401 Unauthorized", ErrorCategory.AUTHENTICATION),
    ("You exceeded your current quota", ErrorCategory.BILLING),
    ("Your credit balance is too low", ErrorCategory.BILLING),
    ("429 Too Many Requests", ErrorCategory.RATE_LIMIT),
    ("read ECONNRESET", ErrorCategory.NETWORK),
    ("request timed out after 30s", ErrorCategory.NETWORK),
    ("AbortError: the operation was aborted", ErrorCategory.ABORT),
    ("claude: command not found", ErrorCategory.INSTALLATION),
    ("something odd happened", ErrorCategory.STREAM),
])
def test_text_is_classified(raw, category):
    result = classify(raw)
    assert result.category == category
    assert result.raw == raw
    assert result.hint


def test_first_matching_rule_wins():
    # Mentions both auth and rate limits; auth is checked first.
    assert classify("unauthorized: rate limit exceeded").category == ErrorCategory.AUTHENTICATION


@pytest.mark.parametrize("raw, category", [
    ("request timed out after 4010ms", ErrorCategory.NETWORK),
    ("tokenizer produced 4290 tokens", ErrorCategory.STREAM),
    ("processed 5020 records before failing", ErrorCategory.STREAM),
    ("Error 502 Bad Gateway", ErrorCategory.NETWORK),
    ("database connection pool exhausted by the test suite", ErrorCategory.STREAM),
    ("upstream replied 402", ErrorCategory.BILLING),
])
def test_status_codes_and_keywords_match_whole_words(raw, category):
    assert classify(raw).category == category


def test_transport_abort_is_a_retryable_network_error():
    raw = "('Connection aborted.', RemoteDisconnected('Remote end closed connection without response'))"
    result = classify(raw)
    assert result.category == ErrorCategory.NETWORK
    assert result.retryable
    assert not classify("the user aborted the migration plan").is_abort
    assert classify("Request was cancelled by the user").is_abort


def test_exception_types_are_classified():
    assert classify(FileNotFoundError("codex")).category == ErrorCategory.INSTALLATION
    assert classify(ProviderInstallationError("no cli")).category == ErrorCategory.INSTALLATION
    assert classify(ConnectionError()).category == ErrorCategory.NETWORK
    assert classify(asyncio.CancelledError()).is_abort


def test_only_network_errors_are_retryable():
    assert classify("ETIMEDOUT").retryable
    assert not classify("invalid api key").retryable
    assert not classify("429").retryable


def test_unknown_error_keeps_raw_text():
    result = classify(None)
    assert result.category == ErrorCategory.STREAM
    assert result.raw == "Unknown error"

    result = classify(RuntimeError("segfault in tool"))
    assert result.message == "segfault in tool"


def test_stream_error_carries_its_verdict():
    verdict = classify("429 Too Many Requests")
    error = ProviderStreamError("claude exited with code 1", raw="stderr text", classified=verdict)
    assert classify(error) is verdict


def test_failure_tracker_pauses_on_burst():
    now = [0.0]
    tracker = FailureTracker(threshold=3, window_seconds=60, clock=lambda: now[0])
    stream = classify("boom")

    assert not tracker.record_failure(stream)
    now[0] = 10
    assert not tracker.record_failure(stream)
    now[0] = 20
    assert tracker.record_failure(stream)


def test_failure_tracker_window_slides_and_success_resets():
    now = [0.0]
    tracker = FailureTracker(threshold=2, window_seconds=30, clock=lambda: now[0])
    stream = classify("boom")

    tracker.record_failure(stream)
    now[0] = 31
    assert not tracker.record_failure(stream)
    assert tracker.count == 1

    tracker.record_success()
    assert tracker.count == 0


def test_failure_tracker_pauses_on_quota_when_enabled():
    assert FailureTracker(threshold=5).record_failure(classify("insufficient_quota"))
    assert not FailureTracker(threshold=5, pause_on_quota=False).record_failure(classify("insufficient_quota"))


@pytest.mark.asyncio
async def test_retry_policy_retries_network_errors():
    policy = RetryPolicy(max_attempts=3, multiplier=0, min_seconds=0, max_seconds=0)
    attempts = []
    retried = []

    async for attempt in policy.retrying(on_retry=lambda state: retried.append(state.attempt_number)):
        with attempt:
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("ECONNRESET")

    assert len(attempts) == 3
    assert retried == [1, 2]


@pytest.mark.asyncio
async def test_retry_policy_surfaces_other_errors_immediately():
    policy = RetryPolicy(max_attempts=3, multiplier=0, min_seconds=0, max_seconds=0)
    attempts = []

    with pytest.raises(RuntimeError):
        async for attempt in policy.retrying():
            with attempt:
                attempts.append(1)
                raise RuntimeError("invalid api key")

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_retry_policy_gives_up_after_max_attempts():
    policy = RetryPolicy(max_attempts=2, multiplier=0, min_seconds=0, max_seconds=0)
    attempts = []

    with pytest.raises(ConnectionError):
        async for attempt in policy.retrying():
            with attempt:
                attempts.append(1)
                raise ConnectionError("socket hang up")

    assert len(attempts) == 2
