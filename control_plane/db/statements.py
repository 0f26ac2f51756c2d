"""Prepared-statement promotion.

Statements are counted by their normalized text. Once a statement has
been seen more than ``prepare_threshold`` times it is promoted to a named
handle (``stmt_<n>``). On an asyncpg connection a promoted statement is
prepared server-side once per connection (``Connection.prepare``) and
later executions bind parameters to that plan instead of sending the
text again.

At capacity the least-used handle is demoted before a new one is added.
Demotion drops the handle's per-connection statements; asyncpg
deallocates them on the server once they are garbage collected.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any
from weakref import WeakKeyDictionary

import asyncpg
import structlog
from asyncpg.prepared_stmt import PreparedStatement

log = structlog.get_logger(__name__)

# Usage counters kept for statements that are not (yet) promoted.
_MAX_TRACKED_MULTIPLIER = 10


@dataclass
class PreparedHandle:
    sql: str
    name: str
    use_count: int = 0
    statements: WeakKeyDictionary[asyncpg.Connection, PreparedStatement] = field(
        default_factory=WeakKeyDictionary, repr=False
    )

    async def statement_on(self, driver: asyncpg.Connection) -> PreparedStatement:
        """The server-side statement for ``driver``, prepared on first use."""
        statement = self.statements.get(driver)
        if statement is None:
            statement = await driver.prepare(self.sql)
            self.statements[driver] = statement
            log.debug("qo.statement_prepared", name=self.name)
        return statement

    def discard(self, driver: asyncpg.Connection) -> None:
        self.statements.pop(driver, None)

    @property
    def connections(self) -> int:
        return len(self.statements)


class PreparedStatementRegistry:
    def __init__(self, *, capacity: int = 500, threshold: int = 3) -> None:
        self.capacity = capacity
        self.threshold = threshold
        self._handles: dict[str, PreparedHandle] = {}
        self._usage: OrderedDict[str, int] = OrderedDict()
        self._sequence = 0
        self._promotions = 0
        self._demotions = 0
        self._prepared_executions = 0

    def handle_for(self, sql: str) -> PreparedHandle | None:
        """Count one execution of ``sql``; the handle once it is promoted."""
        handle = self._handles.get(sql)
        if handle is not None:
            handle.use_count += 1
            return handle

        seen = self._usage.pop(sql, 0) + 1
        if seen > self.threshold:
            return self._promote(sql, seen)

        self._usage[sql] = seen
        if len(self._usage) > self.capacity * _MAX_TRACKED_MULTIPLIER:
            self._usage.popitem(last=False)
        return None

    def _promote(self, sql: str, seen: int) -> PreparedHandle:
        if len(self._handles) >= self.capacity:
            least_used = min(self._handles.values(), key=lambda h: h.use_count)
            del self._handles[least_used.sql]
            least_used.statements.clear()
            self._demotions += 1
            log.debug("qo.statement_demoted", name=least_used.name, use_count=least_used.use_count)

        handle = PreparedHandle(sql=sql, name=f"stmt_{self._sequence}", use_count=seen)
        self._sequence += 1
        self._promotions += 1
        self._handles[sql] = handle
        log.debug("qo.statement_promoted", name=handle.name, use_count=seen)
        return handle

    def executed_prepared(self) -> None:
        self._prepared_executions += 1

    def get(self, sql: str) -> PreparedHandle | None:
        return self._handles.get(sql)

    def __len__(self) -> int:
        return len(self._handles)

    def clear(self) -> None:
        for handle in self._handles.values():
            handle.statements.clear()
        self._handles.clear()
        self._usage.clear()

    def stats(self) -> dict[str, Any]:
        return {
            "total": len(self._handles),
            "max_allowed": self.capacity,
            "promotions": self._promotions,
            "demotions": self._demotions,
            "prepared_executions": self._prepared_executions,
            "tracked": len(self._usage),
        }
