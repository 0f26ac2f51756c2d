"""Exponential reconnection backoff with jitter."""

from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class Backoff:
    """Delay for reconnect attempt ``n`` (1-based).

    ``base * 2**(n-1)`` capped at ``maximum``, then moved up or down by a
    random fraction of itself no larger than ``jitter``. The result never
    exceeds ``maximum``.
    """

    base_ms: float = 1000.0
    maximum_ms: float = 10_000.0
    jitter: float = 0.5
    rng: Callable[[], float] = field(default=random.random)

    def delay_ms(self, attempt: int) -> float:
        delay = min(self.maximum_ms, self.base_ms * (2 ** max(0, attempt - 1)))
        if self.jitter:
            deviation = self.rng() * self.jitter * delay
            delay = delay - deviation if self.rng() < 0.5 else delay + deviation
        return max(0.0, min(delay, self.maximum_ms))
