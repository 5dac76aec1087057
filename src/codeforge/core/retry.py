"""Bounded exponential backoff used for polling the container runtime."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry schedule: ``max_attempts`` tries, waiting ``base_delay * multiplier**(n-1)`` before try ``n``.

    The first attempt never waits. ``sleep`` is injectable so tests can run
    without real delays.
    """

    max_attempts: int = 10
    base_delay: float = 0.5
    multiplier: float = 1.5
    sleep: Sleep = field(default=asyncio.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    def delay(self, attempt: int) -> float:
        """Delay before zero-based ``attempt``."""
        if attempt <= 0:
            return 0.0
        return self.base_delay * (self.multiplier ** (attempt - 1))

    def delays(self) -> list[float]:
        """Every delay the policy would wait, in order."""
        return [self.delay(i) for i in range(self.max_attempts)]

    async def wait(self, attempt: int) -> None:
        """Sleep before ``attempt`` (no-op for the first)."""
        delay = self.delay(attempt)
        if delay > 0:
            await self.sleep(delay)

    @classmethod
    def from_config(cls, tracking: object, sleep: Sleep | None = None) -> RetryPolicy:
        """Build from a :class:`TrackingConfigModel`-like object."""
        return cls(
            max_attempts=getattr(tracking, "max_attempts"),
            base_delay=getattr(tracking, "base_delay"),
            multiplier=getattr(tracking, "multiplier"),
            sleep=sleep or asyncio.sleep,
        )
