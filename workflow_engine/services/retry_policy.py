"""Retry decisions for failed batch items.

The policy is a pure function of (error, attempt_count): it never sleeps,
touches the database or mutates the queue. The worker pool acts on the
returned decision.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Callable, Optional

from workflow_engine.exceptions import (
    CancellationSkip,
    CredentialError,
    PermanentAPIError,
    StorageError,
    TransientAPIError,
    ValidationError,
)

# Error classes
TRANSIENT = "transient"
PERMANENT = "permanent"

# Decisions
RETRY = "retry"
FAIL = "fail"


@dataclass(frozen=True)
class RetryDecision:
    """What to do with an item after a failed attempt."""

    action: str
    error_class: str
    delay_seconds: float = 0.0
    reason: str = ""

    @property
    def should_retry(self) -> bool:
        return self.action == RETRY


class RetryPolicy:
    """Exponential backoff with jitter, bounded by max_attempts."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 2.0,
        max_delay_seconds: float = 60.0,
        rand: Optional[Callable[[], float]] = None
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds
        self._rand = rand or random.random

    @classmethod
    def from_engine_config(cls, engine_config, rand: Optional[Callable[[], float]] = None) -> "RetryPolicy":
        return cls(
            max_attempts=engine_config.max_attempts,
            base_delay_seconds=engine_config.retry_base_delay_seconds,
            max_delay_seconds=engine_config.retry_max_delay_seconds,
            rand=rand
        )

    @staticmethod
    def classify(error: BaseException) -> str:
        """Classify an error as transient or permanent.

        Credential and validation problems, content rejections and
        cancellation are permanent. Rate limits, 5xx, timeouts, transport
        failures and storage failures are transient. Anything unrecognised
        is treated as transient; max_attempts still bounds it.
        """
        if isinstance(error, (CredentialError, ValidationError, PermanentAPIError, CancellationSkip)):
            return PERMANENT
        if isinstance(error, (TransientAPIError, StorageError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
            return TRANSIENT
        return TRANSIENT

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the retry that follows attempt number `attempt` (1-based)."""
        exponent = max(attempt, 1) - 1
        raw = min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)
        # Jitter factor in [0.5, 1.0]
        return raw * (0.5 + 0.5 * self._rand())

    def decide(self, error: BaseException, attempt_count: int) -> RetryDecision:
        """Decide whether an item that failed on attempt `attempt_count` is retried."""
        error_class = self.classify(error)

        if error_class == PERMANENT:
            return RetryDecision(FAIL, error_class, reason=f"{type(error).__name__} is not retryable")

        if attempt_count >= self.max_attempts:
            return RetryDecision(
                FAIL,
                error_class,
                reason=f"Max attempts ({self.max_attempts}) exhausted"
            )

        return RetryDecision(RETRY, error_class, delay_seconds=self.backoff_delay(attempt_count))
