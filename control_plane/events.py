"""EventBus - named, synchronously dispatched component events.

Every component that announces something (RTC lifecycle, RL rejections,
slow queries, memory pressure, migration progress, breaches) owns an
EventBus. Handlers are registered per event name and invoked in
registration order on the calling coroutine's thread; there is no queue
and no await between handlers.

Handler isolation:
    An exception raised by one handler is logged and does not prevent the
    remaining handlers from running, nor does it propagate to the emitter.

Payloads are plain frozen dataclasses owned by each component (e.g.
``SlowQuery``, ``MemoryPressure``, ``BatchStatusChanged``).

Usage:
    bus = EventBus("qo")
    bus.on("slow_query", lambda payload: print(payload.duration_ms))
    bus.emit("slow_query", SlowQuery(...))
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)

Handler = Callable[[Any], None]


class EventBus:
    """Per-component registry of event handlers."""

    def __init__(self, source: str) -> None:
        self._source = source
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> None:
        """Register ``handler`` for ``event`` (duplicates are ignored)."""
        handlers = self._handlers.setdefault(str(event), [])
        if handler not in handlers:
            handlers.append(handler)

    def off(self, event: str, handler: Handler | None = None) -> None:
        """Remove one handler, or every handler of ``event`` when None."""
        key = str(event)
        if handler is None:
            self._handlers.pop(key, None)
            return
        handlers = self._handlers.get(key)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def once(self, event: str, handler: Handler) -> None:
        """Register a handler that removes itself after the first call."""

        def _wrapper(payload: Any) -> None:
            self.off(event, _wrapper)
            handler(payload)

        self.on(event, _wrapper)

    def emit(self, event: str, payload: Any = None) -> int:
        """Invoke every handler of ``event``. Returns the count that ran cleanly."""
        key = str(event)
        handlers = list(self._handlers.get(key, ()))
        ok = 0
        for handler in handlers:
            try:
                handler(payload)
                ok += 1
            except Exception as exc:
                log.error(
                    "events.handler_failed",
                    source=self._source,
                    event_name=key,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                    exc_info=True,
                )
        return ok

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(str(event), ()))

    def clear(self) -> None:
        self._handlers.clear()
