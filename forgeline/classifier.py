"""
FORGELINE Error Classifier & Retry Policy

Raw errors and stderr text from provider streams are run through an
ordered chain of (predicate, category, message) rules. The first match
wins. Only network/timeout errors are retried; everything else is
surfaced with a remediation hint and the raw text kept for debugging.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from forgeline.config_loader import RetryConfig, SchedulerConfig
from forgeline.errors import ForgelineError, ProviderInstallationError, ProviderStreamError


class ErrorCategory(str, Enum):
    INSTALLATION = "installation"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    BILLING = "billing"
    NETWORK = "network"
    ABORT = "abort"
    STREAM = "stream"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ClassifiedError:
    category: ErrorCategory
    message: str
    hint: str
    raw: str
    retryable: bool = False

    @property
    def is_abort(self) -> bool:
        return self.category == ErrorCategory.ABORT


Predicate = Callable[[Any, str], bool]


@dataclass(frozen=True)
class ClassifierRule:
    category: ErrorCategory
    predicate: Predicate
    # None means "surface the raw text verbatim"
    message: str | None
    hint: str
    retryable: bool = False


# ---------------------------------------------------------------------------
# Predicate helpers
# ---------------------------------------------------------------------------

def _contains(*needles: str) -> Predicate:
    lowered = tuple(n.lower() for n in needles)
    return lambda error, text: any(n in text for n in lowered)


def _pattern(*regexes: str) -> Predicate:
    compiled = re.compile("|".join(f"(?:{r})" for r in regexes))
    return lambda error, text: compiled.search(text) is not None


def _instance_of(*types: type) -> Predicate:
    return lambda error, text: isinstance(error, types)


def _either(*predicates: Predicate) -> Predicate:
    return lambda error, text: any(p(error, text) for p in predicates)


# Explicit abort signals only; "Connection aborted." is a network failure.
_ABORT_TEXT = _pattern(
    r"\babort_?error\b",
    r"\b(?:operation|request|query|run|stream) (?:was |has been )?(?:aborted|cancell?ed)\b",
    r"\b(?:aborted|cancell?ed) by (?:the )?user\b",
)

DEFAULT_RULES: tuple[ClassifierRule, ...] = (
    ClassifierRule(
        ErrorCategory.INSTALLATION,
        _either(
            _instance_of(ProviderInstallationError, FileNotFoundError),
            _contains("command not found", "enoent", "not installed", "failed to spawn"),
        ),
        "Provider CLI is not installed or could not be started",
        "Install the provider CLI (or set its path in config), then run `forgeline status`.",
    ),
    ClassifierRule(
        ErrorCategory.AUTHENTICATION,
        _either(
            _contains(
                "authentication failed", "authentication_failed", "invalid api key",
                "invalid x-api-key", "fix external api key", "not authenticated", "authenticationerror",
                "please log in", "unauthorized",
            ),
            _pattern(r"\b401\b"),
        ),
        "Authentication failed. Please check your API key.",
        "Log in with the provider CLI or set its API key, then restart the feature.",
    ),
    ClassifierRule(
        ErrorCategory.ABORT,
        _either(_instance_of(asyncio.CancelledError), _ABORT_TEXT),
        "Operation was cancelled",
        "No action needed.",
    ),
    ClassifierRule(
        ErrorCategory.BILLING,
        _either(
            _contains(
                "credit balance", "insufficient_quota", "quota", "billing",
                "usage limit", "payment required",
            ),
            _pattern(r"\b402\b"),
        ),
        "Usage quota or billing limit reached",
        "Check your plan or credits. Auto mode stays paused until you restart it.",
    ),
    ClassifierRule(
        ErrorCategory.RATE_LIMIT,
        _either(
            _contains("rate limit", "rate_limit", "ratelimiterror", "too many requests", "overloaded"),
            _pattern(r"\b429\b"),
        ),
        "Provider rate limit exceeded",
        "Wait a few minutes before retrying, or lower max concurrency.",
    ),
    ClassifierRule(
        ErrorCategory.NETWORK,
        _either(
            _instance_of(TimeoutError, ConnectionError),
            _contains(
                "network", "timeout", "timed out", "econnrefused", "econnreset",
                "etimedout", "socket hang up", "remotedisconnected",
            ),
            _pattern(
                r"\bconnection (?:refused|reset|aborted|closed|error|lost)\b",
                r"\b50[234]\b",
            ),
        ),
        "Network error while talking to the provider",
        "Check connectivity. FORGELINE retries these automatically.",
        retryable=True,
    ),
)


def _raw_text(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, ForgelineError):
        return error.raw or error.message
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def classify(error: Any, rules: tuple[ClassifierRule, ...] = DEFAULT_RULES) -> ClassifiedError:
    """Classify an exception, a raw string, or None."""
    if isinstance(error, ProviderStreamError) and error.classified is not None:
        return error.classified

    raw = _raw_text(error)
    message_text = error.message if isinstance(error, ForgelineError) else raw
    text = f"{message_text}\n{raw}".lower()

    for rule in rules:
        if rule.predicate(error, text):
            return ClassifiedError(
                category=rule.category,
                message=rule.message or raw,
                hint=rule.hint,
                raw=raw,
                retryable=rule.retryable,
            )

    return ClassifiedError(
        category=ErrorCategory.STREAM,
        message=message_text,
        hint="See the raw diagnostic for details.",
        raw=raw,
    )


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class RetryPolicy:
    """Bounded exponential-backoff retries for network-classified errors."""

    def __init__(
        self,
        max_attempts: int = 3,
        multiplier: float = 1.0,
        min_seconds: float = 1.0,
        max_seconds: float = 30.0,
    ):
        self.max_attempts = max_attempts
        self.multiplier = multiplier
        self.min_seconds = min_seconds
        self.max_seconds = max_seconds

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            multiplier=config.backoff_multiplier,
            min_seconds=config.backoff_min_seconds,
            max_seconds=config.backoff_max_seconds,
        )

    @staticmethod
    def should_retry(error: BaseException) -> bool:
        return classify(error).retryable

    def retrying(self, on_retry: Callable[[RetryCallState], None] | None = None) -> AsyncRetrying:
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning(
                f"[CLASSIFIER] Retryable error (attempt {state.attempt_number}/{self.max_attempts}): {exc}"
            )
            if on_retry:
                on_retry(state)

        return AsyncRetrying(
            retry=retry_if_exception(self.should_retry),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.multiplier, min=self.min_seconds, max=self.max_seconds
            ),
            before_sleep=_before_sleep,
            reraise=True,
        )


class FailureTracker:
    """
    Sliding window of consecutive failures for one project.

    SDK errors are often unhelpful, so a burst of failures is treated
    like a quota problem and pauses auto mode.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_seconds: float = 60.0,
        pause_on_quota: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.pause_on_quota = pause_on_quota
        self._clock = clock
        self._failures: list[tuple[float, str]] = []

    @classmethod
    def from_config(cls, config: SchedulerConfig) -> "FailureTracker":
        return cls(
            threshold=config.failure_threshold,
            window_seconds=config.failure_window_seconds,
            pause_on_quota=config.pause_on_quota,
        )

    @property
    def count(self) -> int:
        return len(self._failures)

    def record_failure(self, classified: ClassifiedError) -> bool:
        """Record a failure; return True if auto mode should pause."""
        now = self._clock()
        self._failures.append((now, classified.message))
        self._failures = [(t, m) for t, m in self._failures if now - t < self.window_seconds]

        if len(self._failures) >= self.threshold:
            return True
        if self.pause_on_quota and classified.category in (ErrorCategory.RATE_LIMIT, ErrorCategory.BILLING):
            return True
        return False

    def record_success(self) -> None:
        self._failures.clear()
