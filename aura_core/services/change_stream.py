"""
Realtime subscription adapter over the store's row-change notifications.

Key patterns:
- Message passing instead of callbacks: store pushes are converted into typed
  events on a bounded asyncio.Queue owned by a single consumer
- Backpressure: a full channel makes the store's notification wait
- Structural cleanup: closing a subscription releases the store listeners,
  discards queued events and ends the consumer's async iteration
"""

import asyncio
from collections.abc import AsyncIterator, Hashable

import structlog
from pydantic import ValidationError

from aura_core.domain.models import (
    ChangeEvent,
    Session,
    SessionChanged,
    StatusEvent,
    StatusInserted,
    Vital,
    VitalInserted,
)
from aura_core.services.store import (
    SESSIONS_TABLE,
    STATUSES_TABLE,
    VITALS_TABLE,
    DataStore,
    RowChange,
)

logger = structlog.get_logger(__name__)


def to_change_event(change: RowChange) -> ChangeEvent | None:
    """Translate a raw row change into a typed event; None when not applicable."""
    if change.event_type == "DELETE":
        return None
    if change.table == SESSIONS_TABLE:
        return SessionChanged(session=Session.model_validate(change.new))
    if change.event_type != "INSERT":
        return None
    if change.table == STATUSES_TABLE:
        return StatusInserted(status=StatusEvent.model_validate(change.new))
    if change.table == VITALS_TABLE:
        return VitalInserted(vital=Vital.model_validate(change.new))
    return None


class Subscription:
    """
    Handle for one session's live feed.

    Events are yielded by events() in the order the store committed them.
    Once closed, late pushes are dropped and the iterator ends.
    """

    def __init__(self, session_id: str, max_events: int) -> None:
        self.session_id = session_id
        self.dropped_events = 0
        self._queue: asyncio.Queue[ChangeEvent | None] = asyncio.Queue(maxsize=max_events)
        self._space_available = asyncio.Event()
        self._handles: list[Hashable] = []
        self._closed = False
        self.logger = logger.bind(session_id=session_id)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def deliver(self, change: RowChange) -> None:
        """Store-facing entry point, registered as the change listener."""
        if self._closed:
            self._drop(change, reason="subscription_closed")
            return

        try:
            event = to_change_event(change)
        except ValidationError as e:
            self.logger.warning(
                "change_payload_invalid",
                table=change.table,
                event_type=change.event_type,
                errors=e.error_count(),
            )
            return

        if event is None:
            self.logger.debug("change_ignored", table=change.table, event_type=change.event_type)
            return

        while not self._closed:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._space_available.clear()
                await self._space_available.wait()

        self._drop(change, reason="subscription_closed")

    async def events(self) -> AsyncIterator[ChangeEvent]:
        """Single-owner consumer loop; ends when the subscription closes."""
        while not self._closed:
            event = await self._queue.get()
            self._space_available.set()
            if event is None or self._closed:
                break
            yield event

    def _attach(self, handles: list[Hashable]) -> None:
        self._handles = handles

    def _close(self) -> list[Hashable]:
        self._closed = True
        discarded = 0
        while True:
            try:
                self._queue.get_nowait()
                discarded += 1
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)
        self._space_available.set()
        if discarded:
            self.logger.info("queued_events_discarded", count=discarded)
        handles, self._handles = self._handles, []
        return handles

    def _drop(self, change: RowChange, reason: str) -> None:
        self.dropped_events += 1
        self.logger.debug("change_event_dropped", table=change.table, reason=reason)


class ChangeStream:
    """Opens and releases per-session subscriptions against a DataStore."""

    def __init__(self, store: DataStore, max_events: int = 256) -> None:
        if max_events < 1:
            raise ValueError("max_events must be at least 1")
        self.store = store
        self.max_events = max_events
        self.logger = logger.bind(component="change_stream")

    def subscribe(self, session_id: str) -> Subscription:
        """Listen to the session row plus its status and vital inserts."""
        subscription = Subscription(session_id, self.max_events)
        handles = [
            self.store.subscribe_changes(SESSIONS_TABLE, {"id": session_id}, subscription.deliver),
            self.store.subscribe_changes(
                STATUSES_TABLE, {"session_id": session_id}, subscription.deliver
            ),
            self.store.subscribe_changes(
                VITALS_TABLE, {"session_id": session_id}, subscription.deliver
            ),
        ]
        subscription._attach(handles)
        self.logger.info("subscription_opened", session_id=session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription | None) -> None:
        """Release a subscription. Safe to call repeatedly or with None."""
        if subscription is None or subscription.closed:
            return
        for handle in subscription._close():
            self.store.unsubscribe(handle)
        self.logger.info(
            "subscription_closed",
            session_id=subscription.session_id,
            dropped_events=subscription.dropped_events,
        )
