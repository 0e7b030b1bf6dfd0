"""
govkit Resilience

Bounded retry for network-facing port calls, backoff schedule for the
enactment poll loop, and a cooperative cancellation signal.

    ┌──────────────────────────────────────────────────────────────────┐
    │  RetryPolicy            PollPolicy             CancellationToken │
    │  ├─ Max attempts        ├─ Initial interval    ├─ cancel()       │
    │  ├─ Exponential         ├─ Multiplier          ├─ is_cancelled   │
    │  ├─ Jitter              ├─ Max interval        └─ raise_if_...   │
    │  └─ Retryable exc       └─ Timeout                               │
    └──────────────────────────────────────────────────────────────────┘

Only TransportError is retried by default. Domain rejections propagate on the
first attempt, because resubmitting a rejected proposal is never transparent.

Usage
─────

    retry = RetryPolicy(max_attempts=3, base_delay_seconds=0.5)
    handle = retry.execute(lambda: relay.submit(payload, "mainnet", 500_000))

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import functools
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Iterator, Optional, TypeVar

from govkit.pipeline.errors import (
    MigrationCancelled,
    RetryExhaustedError,
    TransportError,
)

T = TypeVar("T")


# ════════════════════════════════════════════════════════════════════════════
# RETRY POLICY
# ════════════════════════════════════════════════════════════════════════════


class BackoffStrategy(Enum):
    """Retry backoff strategies."""
    FIXED = auto()           # Fixed delay between retries
    EXPONENTIAL = auto()     # Exponential backoff (2^n)
    EXPONENTIAL_JITTER = auto()  # Exponential with random jitter
    LINEAR = auto()          # Linear increase


@dataclass
class RetryConfig:
    """Retry policy configuration."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    jitter_factor: float = 0.5  # Random factor 0-1
    retryable_exceptions: tuple = (TransportError,)
    non_retryable_exceptions: tuple = ()


@dataclass
class RetryMetrics:
    """Retry metrics."""
    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    retries_exhausted: int = 0
    total_retry_delay_seconds: float = 0.0


class RetryPolicy:
    """
    Retry policy with configurable backoff strategies.

    Makes at most ``max_attempts`` calls. Non-retryable exceptions propagate
    immediately; once the budget is spent RetryExhaustedError is raised with
    the last exception attached. A ``cancel`` token, if given, is checked
    after every backoff sleep; cancellation raises MigrationCancelled.

    Example:
        retry = RetryPolicy(max_attempts=3, backoff_strategy=BackoffStrategy.EXPONENTIAL)

        @retry
        def flaky_operation():
            return external_service.call()

        # Or programmatic
        result = retry.execute(lambda: external_service.call())
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 30.0,
        backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL,
        jitter_factor: float = 0.5,
        retryable_exceptions: tuple = (TransportError,),
        non_retryable_exceptions: tuple = (),
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional["CancellationToken"] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.config = RetryConfig(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
            backoff_strategy=backoff_strategy,
            jitter_factor=jitter_factor,
            retryable_exceptions=retryable_exceptions,
            non_retryable_exceptions=non_retryable_exceptions,
        )
        self._metrics = RetryMetrics()
        self._lock = threading.Lock()
        self._on_retry = on_retry
        self._sleep = sleep
        self.cancel = cancel

    @classmethod
    def from_config(cls, config=None, **overrides) -> "RetryPolicy":
        """Build a policy from the ``retry`` configuration section."""
        if config is None:
            from govkit.pipeline.config import get_config
            config = get_config()
        section = config.retry
        kwargs = {
            "max_attempts": section.max_attempts.get(),
            "base_delay_seconds": section.base_delay_seconds.get(),
            "max_delay_seconds": section.max_delay_seconds.get(),
            "backoff_strategy": BackoffStrategy[section.backoff.get().upper()],
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    @property
    def metrics(self) -> RetryMetrics:
        """Current retry metrics."""
        with self._lock:
            return RetryMetrics(
                total_attempts=self._metrics.total_attempts,
                successful_attempts=self._metrics.successful_attempts,
                failed_attempts=self._metrics.failed_attempts,
                retries_exhausted=self._metrics.retries_exhausted,
                total_retry_delay_seconds=self._metrics.total_retry_delay_seconds,
            )

    def _calculate_delay(self, attempt: int) -> float:
        """Calculate delay before next retry."""
        base = self.config.base_delay_seconds

        if self.config.backoff_strategy == BackoffStrategy.FIXED:
            delay = base
        elif self.config.backoff_strategy == BackoffStrategy.LINEAR:
            delay = base * attempt
        elif self.config.backoff_strategy == BackoffStrategy.EXPONENTIAL:
            delay = base * (2 ** (attempt - 1))
        elif self.config.backoff_strategy == BackoffStrategy.EXPONENTIAL_JITTER:
            exp_delay = base * (2 ** (attempt - 1))
            jitter = random.uniform(0, self.config.jitter_factor * exp_delay)
            delay = exp_delay + jitter
        else:
            delay = base

        return min(delay, self.config.max_delay_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        """Check if exception is retryable."""
        if isinstance(exc, self.config.non_retryable_exceptions):
            return False
        return isinstance(exc, self.config.retryable_exceptions)

    def execute(self, func: Callable[[], T]) -> T:
        """Execute function with retry policy."""
        last_exception: Optional[Exception] = None

        for attempt in range(1, self.config.max_attempts + 1):
            with self._lock:
                self._metrics.total_attempts += 1

            try:
                result = func()
                with self._lock:
                    self._metrics.successful_attempts += 1
                return result
            except Exception as e:
                last_exception = e
                with self._lock:
                    self._metrics.failed_attempts += 1

                if not self._is_retryable(e):
                    raise

                if attempt < self.config.max_attempts:
                    delay = self._calculate_delay(attempt)
                    with self._lock:
                        self._metrics.total_retry_delay_seconds += delay

                    if self._on_retry:
                        self._on_retry(attempt, e, delay)

                    self._sleep(delay)
                    if self.cancel is not None:
                        self.cancel.raise_if_cancelled("retry")

        with self._lock:
            self._metrics.retries_exhausted += 1

        raise RetryExhaustedError(self.config.max_attempts, last_exception)

    def __call__(self, func: Callable[..., T]) -> Callable[..., T]:
        """Decorator for retry protection."""
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            return self.execute(lambda: func(*args, **kwargs))
        return wrapper


# ════════════════════════════════════════════════════════════════════════════
# POLL POLICY
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PollPolicy:
    """
    Backoff schedule for re-checking whether a proposal was applied.

    The first poll happens immediately. Sleep n (1-based) lasts
    ``initial_interval * multiplier ** (n - 1)`` seconds, capped at
    ``max_interval``. Polling stops once the next sleep would take the total
    wait past ``timeout_seconds``.
    """
    initial_interval_seconds: float = 15.0
    multiplier: float = 2.0
    max_interval_seconds: float = 300.0
    timeout_seconds: float = 3600.0

    def __post_init__(self):
        if self.initial_interval_seconds <= 0 or self.max_interval_seconds <= 0:
            raise ValueError("Poll intervals must be positive")
        if self.multiplier < 1:
            raise ValueError("Poll multiplier must be >= 1")
        if self.timeout_seconds < 0:
            raise ValueError("Poll timeout must be non-negative")

    @classmethod
    def from_config(cls, config=None, **overrides) -> "PollPolicy":
        """Build a policy from the ``poll`` configuration section."""
        if config is None:
            from govkit.pipeline.config import get_config
            config = get_config()
        section = config.poll
        kwargs = {
            "initial_interval_seconds": section.initial_interval_seconds.get(),
            "multiplier": section.multiplier.get(),
            "max_interval_seconds": section.max_interval_seconds.get(),
            "timeout_seconds": section.timeout_seconds.get(),
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def intervals(self) -> Iterator[float]:
        """Yield the sleeps allowed before the timeout is reached."""
        waited = 0.0
        interval = self.initial_interval_seconds
        while True:
            step = min(interval, self.max_interval_seconds)
            if waited + step > self.timeout_seconds:
                return
            waited += step
            yield step
            interval = interval * self.multiplier


# ════════════════════════════════════════════════════════════════════════════
# CANCELLATION
# ════════════════════════════════════════════════════════════════════════════


class CancellationToken:
    """Thread-safe cancellation signal observed between and inside stages."""

    def __init__(self):
        self._event = threading.Event()
        self._reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self._reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" during {where}" if where else ""
            raise MigrationCancelled(f"{self._reason}{suffix}")

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if cancelled meanwhile."""
        return self._event.wait(seconds)
