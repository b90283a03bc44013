"""Backoff schedule and retry eligibility for failed turn calls."""

from __future__ import annotations

import asyncio
import logging
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from book_distiller.config import RetrySettings
from book_distiller.distiller.models import RetryState

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
RandomFn = Callable[[], float]

COUNTDOWN_TICK_SECONDS = 1.0


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt budget and exponential backoff bounds for one turn."""

    max_attempts: int = 5
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    jitter_max_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_max_seconds=settings.jitter_max_seconds,
        )


class RetryController:
    """Decides whether a failed attempt is retried and how long to wait.

    Attempts are numbered from 1. The controller owns the waiting and the
    display countdown but never writes to a job's logs.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        random_fn: RandomFn = random.random,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._random = random_fn
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self.policy.max_attempts

    def should_retry(self, attempt: int, max_attempts: int | None = None) -> bool:
        limit = self.policy.max_attempts if max_attempts is None else max_attempts
        return attempt < limit

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay: ``base * 2 ** (attempt - 1)`` capped at the maximum."""

        return min(
            self.policy.max_delay_seconds,
            self.policy.base_delay_seconds * (2 ** max(attempt - 1, 0)),
        )

    def compute_delay(self, attempt: int) -> float:
        jitter = self._random() * self.policy.jitter_max_seconds
        return self.base_delay(attempt) + jitter

    def begin(self, *, attempt: int, delay: float, error_message: str) -> RetryState:
        return RetryState(
            attempt=attempt,
            max_attempts=self.policy.max_attempts,
            remaining_seconds=math.ceil(delay),
            last_error_message=error_message,
        )

    async def wait(self, state: RetryState, delay: float) -> None:
        """Sleep for ``delay`` while a countdown ticks ``state`` down for display."""

        countdown = asyncio.create_task(self._countdown(state))
        try:
            await self._sleep(delay)
        finally:
            countdown.cancel()
            state.remaining_seconds = 0

    async def _countdown(self, state: RetryState) -> None:
        while state.remaining_seconds > 0:
            await self._sleep(COUNTDOWN_TICK_SECONDS)
            state.remaining_seconds -= 1


def describe_retry(state: RetryState) -> str:
    """Trace text for a scheduled retry."""

    reason = state.last_error_message.rstrip(".")
    return (
        f"Attempt {state.attempt}/{state.max_attempts} failed: "
        f"{reason}. Retrying in {state.remaining_seconds}s."
    )
