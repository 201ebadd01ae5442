"""
Retry policies for TaskRuns.

A failed TaskRun is rescheduled by the Executor while its policy allows
another attempt. The policy only answers two questions: may attempt N be
followed by another one, and how long to wait before it.

Tasks without a `retry` block get no policy at all and fail on the first
error.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class BackoffKind(Enum):
    CONSTANT = "constant"
    EXPONENTIAL = "exponential"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RetryPolicy:
    """
    How often and how fast a TaskRun is retried.

    The document form maps one to one onto the fields:

        retry:
          type: exponential      # kind
          maxAttempts: 5         # max_attempts
          interval: 1s           # initial_delay_ms
          maxInterval: 30s       # max_delay_ms
          multiplier: 2          # backoff_multiplier

    A bare integer (`retry: 4`) builds an exponential policy with the
    default delays, see `with_max_attempts()`.
    """

    max_attempts: int
    """Total number of attempts, the first run included."""

    initial_delay_ms: int
    max_delay_ms: int
    """Upper bound of any single wait."""

    backoff_multiplier: float = 2.0
    kind: BackoffKind = BackoffKind.EXPONENTIAL

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must not be negative")
        if self.backoff_multiplier < 1.0:
            raise ValueError(f"backoff_multiplier must be >= 1.0, got {self.backoff_multiplier}")

    @classmethod
    def with_max_attempts(cls, max_attempts: int) -> RetryPolicy:
        """Exponential policy starting at 1s, doubling, capped at 30s."""
        return cls(max_attempts, 1000, 30_000)

    @classmethod
    def constant(cls, max_attempts: int, delay_ms: int) -> RetryPolicy:
        return cls(max_attempts, delay_ms, delay_ms, 1.0, BackoffKind.CONSTANT)

    def has_remaining(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Milliseconds to wait after attempt `attempt` (1-based) failed.

        None when that attempt was the last one. Exponential policies wait
        initial_delay_ms * backoff_multiplier ** (attempt - 1), never more
        than max_delay_ms.
        """
        if not self.has_remaining(attempt):
            return None
        if self.kind is BackoffKind.CONSTANT:
            return min(self.initial_delay_ms, self.max_delay_ms)
        grown = self.initial_delay_ms * self.backoff_multiplier ** (attempt - 1)
        return int(min(grown, self.max_delay_ms))

    def __repr__(self) -> str:
        return (
            f"RetryPolicy({self.kind}, attempts={self.max_attempts}, "
            f"delay={self.initial_delay_ms}..{self.max_delay_ms}ms, x{self.backoff_multiplier:g})"
        )
