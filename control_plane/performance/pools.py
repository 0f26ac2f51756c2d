"""Named object pools.

A pool hands out objects from its available list (or builds new ones with
the factory) and tracks every handed-out object by identity. Returning an
object runs ``reset`` on it exactly once before it becomes available again.
Objects that were not handed out by the pool are refused.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PoolStats:
    name: str
    available: int
    in_use: int
    created: int
    reused: int

    @property
    def reuse_rate(self) -> float:
        handed_out = self.created + self.reused
        return round(self.reused / handed_out, 4) if handed_out else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "available": self.available,
            "in_use": self.in_use,
            "created": self.created,
            "reused": self.reused,
            "reuse_rate": self.reuse_rate,
        }


class ObjectPool(Generic[T]):
    """Reusable objects with a factory and an optional reset hook."""

    def __init__(
        self,
        name: str,
        factory: Callable[[], T],
        reset: Callable[[T], None] | None = None,
        *,
        initial_size: int = 0,
        max_size: int = 100,
    ) -> None:
        self.name = name
        self._factory = factory
        self._reset = reset
        self._max_size = max_size
        self._available: list[T] = []
        self._in_use: dict[int, T] = {}
        self._created = 0
        self._reused = 0

        for _ in range(min(initial_size, max_size)):
            self._available.append(factory())
            self._created += 1

    def take(self) -> T:
        if self._available:
            obj = self._available.pop()
            self._reused += 1
        else:
            obj = self._factory()
            self._created += 1
        self._in_use[id(obj)] = obj
        return obj

    def give(self, obj: T) -> bool:
        """Return ``obj`` to the pool. False when it was not taken from here."""
        if self._in_use.pop(id(obj), None) is None:
            return False

        if self._reset is not None:
            try:
                self._reset(obj)
            except Exception as exc:
                # A half-reset object must not be handed out again.
                log.warning("memory.pool.reset_failed", pool=self.name, error=str(exc))
                return False

        if len(self._available) < self._max_size:
            self._available.append(obj)
        return True

    def trim(self) -> int:
        """Halve the available list. Returns the number of objects dropped."""
        keep = len(self._available) // 2
        dropped = len(self._available) - keep
        del self._available[keep:]
        return dropped

    def stats(self) -> PoolStats:
        return PoolStats(
            name=self.name,
            available=len(self._available),
            in_use=len(self._in_use),
            created=self._created,
            reused=self._reused,
        )
