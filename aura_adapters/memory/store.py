"""
In-memory data store implementing the session core's DataStore protocol.

Used by the demo and the test suite in place of a hosted database. Rows live
in per-table lists; every committed write is pushed to the matching change
listeners, in commit order, before the write returns.
"""

import asyncio
import itertools
import uuid
from collections.abc import Hashable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from aura_core.domain.errors import StoreReadFailed, StoreWriteFailed
from aura_core.services.store import ChangeHandler, Filters, Result, Row, RowChange

logger = structlog.get_logger(__name__)


@dataclass
class _Listener:
    table: str
    filters: dict[str, Any]
    on_event: ChangeHandler


def _matches(row: Mapping[str, Any], filters: Filters) -> bool:
    return all(row.get(column) == value for column, value in filters.items())


class InMemoryDataStore:
    """
    Dict-backed store with change notification.

    Failure injection: set fail_writes / fail_reads to make every write or
    read resolve to an error, the way a flaky backend would.
    """

    def __init__(self, simulated_latency_seconds: float = 0.0) -> None:
        self.simulated_latency_seconds = simulated_latency_seconds
        self.fail_writes = False
        self.fail_reads = False
        self.write_count = 0
        self.logger = logger.bind(component="memory_store")

        self._tables: dict[str, list[tuple[int, Row]]] = {}
        self._listeners: dict[int, _Listener] = {}
        self._sequence = itertools.count()
        self._handles = itertools.count(1)
        self._commit_lock = asyncio.Lock()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def rows(self, table: str) -> list[Row]:
        """Snapshot of a table in insertion order."""
        return [dict(row) for _, row in self._tables.get(table, [])]

    async def insert(self, table: str, row: Mapping[str, Any]) -> Result[Row, StoreWriteFailed]:
        await self._round_trip()
        if self.fail_writes:
            return self._write_failure(table, "insert")

        try:
            async with self._commit_lock:
                stored: Row = {
                    "id": uuid.uuid4().hex,
                    "created_at": datetime.now(UTC),
                    **row,
                }
                self._tables.setdefault(table, []).append((next(self._sequence), stored))
                self.write_count += 1
                self.logger.debug("row_inserted", table=table, row_id=stored["id"])
                await self._publish(RowChange(table=table, event_type="INSERT", new=dict(stored)))
            return Result.ok(dict(stored))
        except Exception as e:
            self.logger.exception("store_insert_error", table=table, error=str(e))
            return Result.err(StoreWriteFailed(f"Insert into {table} failed: {e}"))

    async def update(
        self, table: str, filters: Filters, patch: Mapping[str, Any]
    ) -> Result[list[Row], StoreWriteFailed]:
        await self._round_trip()
        if self.fail_writes:
            return self._write_failure(table, "update")

        try:
            async with self._commit_lock:
                updated: list[Row] = []
                for _, stored in self._tables.get(table, []):
                    if _matches(stored, filters):
                        stored.update(patch)
                        updated.append(dict(stored))
                self.write_count += 1
                self.logger.debug("rows_updated", table=table, count=len(updated))
                for new in updated:
                    await self._publish(RowChange(table=table, event_type="UPDATE", new=new))
            return Result.ok(updated)
        except Exception as e:
            self.logger.exception("store_update_error", table=table, error=str(e))
            return Result.err(StoreWriteFailed(f"Update of {table} failed: {e}"))

    async def select(
        self,
        table: str,
        filters: Filters,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> Result[list[Row], StoreReadFailed]:
        await self._round_trip()
        if self.fail_reads:
            self.logger.warning("simulated_read_failure", table=table)
            return Result.err(StoreReadFailed(f"Simulated read failure on {table}"))

        try:
            matched = [
                (sequence, row)
                for sequence, row in self._tables.get(table, [])
                if _matches(row, filters)
            ]
            if order_by is not None:
                # Insertion order breaks ties between equal sort keys
                matched.sort(key=lambda entry: (entry[1][order_by], entry[0]), reverse=descending)
            elif descending:
                matched.reverse()
            rows = [dict(row) for _, row in matched]
            return Result.ok(rows[:limit] if limit is not None else rows)
        except Exception as e:
            self.logger.exception("store_select_error", table=table, error=str(e))
            return Result.err(StoreReadFailed(f"Select from {table} failed: {e}"))

    def subscribe_changes(self, table: str, filters: Filters, on_event: ChangeHandler) -> Hashable:
        handle = next(self._handles)
        self._listeners[handle] = _Listener(table=table, filters=dict(filters), on_event=on_event)
        self.logger.debug("listener_registered", table=table, handle=handle)
        return handle

    def unsubscribe(self, handle: Hashable) -> None:
        if self._listeners.pop(handle, None) is not None:  # type: ignore[call-overload]
            self.logger.debug("listener_released", handle=handle)

    async def _publish(self, change: RowChange) -> None:
        for handle, listener in list(self._listeners.items()):
            # Released while an earlier listener was being awaited
            if handle not in self._listeners:
                continue
            if listener.table != change.table or not _matches(change.new, listener.filters):
                continue
            try:
                await listener.on_event(change)
            except Exception as e:
                self.logger.exception(
                    "change_listener_failed", table=change.table, handle=handle, error=str(e)
                )

    async def _round_trip(self) -> None:
        if self.simulated_latency_seconds > 0:
            await asyncio.sleep(self.simulated_latency_seconds)

    def _write_failure(self, table: str, operation: str) -> Result[Any, StoreWriteFailed]:
        self.logger.warning("simulated_write_failure", table=table, operation=operation)
        return Result.err(StoreWriteFailed(f"Simulated {operation} failure on {table}"))


class StaticIdentity:
    """IdentityProvider that always reports the same user (or nobody)."""

    def __init__(self, user_id: str | None = None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> str | None:
        return self.user_id
