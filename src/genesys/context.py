"""Cooperative cancellation and bounded retries for provider calls."""
from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import ErrorKind, GenesysError, OperationCancelled, ProviderError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS_CAP = 5


class RunContext:
    """Cancellation signal and per-call timeout shared by one invocation."""

    def __init__(self, call_timeout: float = 60.0) -> None:
        """Create an uncancelled context with the given per-call timeout."""
        self.call_timeout = call_timeout
        self._event = threading.Event()

    def cancel(self) -> None:
        """Signal every task observing this context to stop."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        """Raise :class:`OperationCancelled` when the context was cancelled."""
        if self._event.is_set():
            raise OperationCancelled("Operation cancelled.")

    def wait(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff parameters."""

    max_attempts: int = MAX_ATTEMPTS_CAP
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_CAP:
            raise ValueError(
                f"max_attempts must be between 1 and {MAX_ATTEMPTS_CAP}; got {self.max_attempts}."
            )

    def delay_for(self, attempt: int, rng: random.Random | None = None) -> float:
        """Return the backoff delay after the *attempt*-th failure (1-based)."""
        base = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter <= 0:
            return base
        source = rng or random
        return base + base * self.jitter * source.random()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_attempts": self.max_attempts,
            "base_delay": self.base_delay,
            "max_delay": self.max_delay,
            "jitter": self.jitter,
        }


def call_with_retry(
    ctx: RunContext,
    fn: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    description: str = "provider call",
    rng: random.Random | None = None,
) -> T:
    """Invoke *fn*, retrying throttled and transient failures.

    Non-retriable errors propagate unchanged. When the attempt budget is
    spent the last error is wrapped in a fatal :class:`ProviderError`.
    Cancellation is checked before every attempt and during backoff.
    """
    effective = policy or RetryPolicy()
    attempt = 0
    while True:
        ctx.check()
        attempt += 1
        try:
            return fn()
        except GenesysError as exc:
            if not exc.retriable:
                raise
            if attempt >= effective.max_attempts:
                raise ProviderError(
                    f"{description} failed after {attempt} attempts: {exc.message}",
                    kind=ErrorKind.FATAL,
                    underlying=exc,
                ) from exc
            delay = effective.delay_for(attempt, rng)
            LOGGER.warning(
                "%s: %s (%s); retrying in %.2fs (attempt %d/%d)",
                description,
                exc.message,
                exc.kind.value,
                delay,
                attempt,
                effective.max_attempts,
            )
            if ctx.wait(delay):
                raise OperationCancelled(f"{description} cancelled during backoff.") from exc


__all__ = ["MAX_ATTEMPTS_CAP", "RetryPolicy", "RunContext", "call_with_retry"]
