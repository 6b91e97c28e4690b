"""
Session lifecycle controller: one monitoring session, one live subscription.

Design principles:
- Injected collaborators: the data store and identity provider come in
  through the constructor, so tests run against an in-memory fake
- Single writer of local state: direct actions and the change-stream
  consumer both go through the same apply-snapshot path
- Expected failures resolve to Result.err plus the view's error field,
  nothing is raised past the controller
- Exactly one subscription at a time, released before a new one opens
"""

import asyncio
from collections.abc import Callable, Mapping
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError

from aura_core.domain.errors import (
    AuthRequired,
    NoActiveSession,
    SessionCoreError,
    StoreReadFailed,
    StoreWriteFailed,
)
from aura_core.domain.models import (
    ChangeEvent,
    Session,
    SessionChanged,
    SessionInput,
    SessionState,
    SessionView,
    StatusEvent,
    StatusInserted,
    Vital,
    VitalInserted,
)
from aura_core.services.change_stream import ChangeStream, Subscription
from aura_core.services.store import (
    SESSIONS_TABLE,
    STATUSES_TABLE,
    VITALS_TABLE,
    DataStore,
    IdentityProvider,
    Result,
)

logger = structlog.get_logger(__name__)

SessionListener = Callable[[SessionView], None]
SnapshotSource = Literal["write_ack", "stream"]


class SessionControllerConfig(BaseModel):
    """Tuning for the controller's realtime channel."""

    channel_max_events: int = Field(
        default=256,
        gt=0,
        description="Capacity of the bounded event channel per subscription.",
    )


class SessionController:
    """
    Owns the local view of one monitoring session.

    The view is replaced, never mutated, on every change; listeners receive
    the new SessionView snapshot. Use as an async context manager to make
    sure the live subscription is released on every exit path.
    """

    def __init__(
        self,
        store: DataStore,
        identity: IdentityProvider,
        config: SessionControllerConfig | None = None,
        change_stream: ChangeStream | None = None,
    ) -> None:
        self.store = store
        self.identity = identity
        self.config = config or SessionControllerConfig()
        self.change_stream = change_stream or ChangeStream(
            store, max_events=self.config.channel_max_events
        )
        self.logger = logger.bind(component="session_controller")

        self._view = SessionView()
        self._subscription: Subscription | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._listeners: list[SessionListener] = []
        # What the last load_session read; queued stream events older than it are stale
        self._read_state: SessionState | None = None
        self._read_vital: Vital | None = None

    async def __aenter__(self) -> "SessionController":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.teardown()

    # Observable state

    @property
    def state(self) -> SessionView:
        return self._view

    @property
    def session(self) -> Session | None:
        return self._view.session

    @property
    def lifecycle_state(self) -> SessionState | None:
        return self._view.lifecycle_state

    @property
    def status_message(self) -> str:
        return self._view.status_message

    @property
    def status_history(self) -> tuple[StatusEvent, ...]:
        return self._view.status_history

    @property
    def latest_vital(self) -> Vital | None:
        return self._view.latest_vital

    @property
    def error(self) -> str | None:
        return self._view.error

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    def add_listener(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Actions

    async def create(self, session_input: SessionInput) -> Result[Session, SessionCoreError]:
        """Insert a new session in CREATED and start listening to it."""
        user_id = self.identity.current_user_id()
        if not user_id:
            return self._fail(AuthRequired(), "session_create_rejected")

        row: dict[str, Any] = {
            "user_id": user_id,
            "user_name": session_input.user_name,
            "age": session_input.age,
            "gender": session_input.gender.value,
            "mode": session_input.mode.value,
            "state": SessionState.CREATED.value,
        }
        insert_result = await self.store.insert(SESSIONS_TABLE, row)
        if insert_result.is_err():
            return self._fail(insert_result.unwrap_err(), "session_create_failed")

        session = self._parse_session(insert_result.unwrap())
        if session is None:
            return self._fail(
                StoreWriteFailed("Store returned an invalid session row"), "session_create_failed"
            )

        subscription = self._replace_subscription(session.id)
        self._replace(
            session=session,
            lifecycle_state=session.state,
            status_message="",
            status_history=(),
            latest_vital=None,
            error=None,
        )
        self._start_consumer(subscription)
        self.logger.info("session_created", session_id=session.id, mode=session.mode.value)
        return Result.ok(session)

    async def begin_monitoring(self) -> Result[Session, SessionCoreError]:
        """Move a CREATED session to STARTED once the store confirms the write."""
        session = self._view.session
        if session is None or self._view.lifecycle_state != SessionState.CREATED:
            error = NoActiveSession()
            self.logger.warning(
                "begin_monitoring_rejected",
                reason=error.code,
                lifecycle_state=self._lifecycle_value(),
            )
            return Result.err(error)

        update_result = await self.store.update(
            SESSIONS_TABLE, {"id": session.id}, {"state": SessionState.STARTED.value}
        )
        if update_result.is_err():
            return self._fail(update_result.unwrap_err(), "begin_monitoring_failed")

        rows = update_result.unwrap()
        confirmed = self._parse_session(rows[0]) if rows else None
        if confirmed is None:
            return self._fail(
                StoreWriteFailed(f"Session {session.id} was not updated"),
                "begin_monitoring_failed",
            )

        # The view may have been reset or switched while the write was in flight
        if self._view.session is None or self._view.session.id != confirmed.id:
            self.logger.info("begin_monitoring_ack_discarded", session_id=confirmed.id)
            return Result.ok(confirmed)

        self._apply_session(confirmed, source="write_ack")
        if self._view.error is not None:
            self._replace(error=None)
        self.logger.info("monitoring_requested", session_id=confirmed.id)
        return Result.ok(confirmed)

    async def load_session(self, session_id: str) -> Result[Session, SessionCoreError]:
        """
        Re-enter an existing session view from a point-in-time read.

        The subscription is opened before the reads so nothing committed in
        between is lost; statuses seen on both paths are de-duplicated by id.
        """
        subscription = self._replace_subscription(session_id)

        session_result = await self.store.select(SESSIONS_TABLE, {"id": session_id}, limit=1)
        if session_result.is_err():
            return self._fail_load(subscription, session_result.unwrap_err())
        rows = session_result.unwrap()
        session = self._parse_session(rows[0]) if rows else None
        if session is None:
            return self._fail_load(
                subscription, StoreReadFailed(f"Session {session_id} not found")
            )

        history_result = await self.store.select(
            STATUSES_TABLE, {"session_id": session_id}, order_by="created_at"
        )
        vital_result = await self.store.select(
            VITALS_TABLE,
            {"session_id": session_id},
            order_by="created_at",
            descending=True,
            limit=1,
        )
        for read_result in (history_result, vital_result):
            if read_result.is_err():
                return self._fail_load(subscription, read_result.unwrap_err())

        try:
            history = tuple(StatusEvent.model_validate(row) for row in history_result.unwrap())
            vital_rows = vital_result.unwrap()
            vital = Vital.model_validate(vital_rows[0]) if vital_rows else None
        except ValidationError as e:
            return self._fail_load(
                subscription,
                StoreReadFailed(f"Invalid rows for session {session_id}: {e.error_count()} errors"),
            )

        if subscription is not self._subscription:
            # A newer load/create/reset replaced this one while reading
            return Result.ok(session)

        self._replace(
            session=session,
            lifecycle_state=session.state,
            status_message=history[-1].message if history else "",
            status_history=history,
            latest_vital=vital,
            error=None,
        )
        self._read_state = session.state
        self._read_vital = vital
        self._start_consumer(subscription)
        self.logger.info(
            "session_loaded",
            session_id=session_id,
            lifecycle_state=session.state.value,
            statuses=len(history),
            has_vital=vital is not None,
        )
        return Result.ok(session)

    def reset_local(self) -> None:
        """Abandon the current view. Idempotent; never fails."""
        self._release_subscription()
        self._replace(
            session=None,
            lifecycle_state=None,
            status_message="",
            status_history=(),
            latest_vital=None,
            error=None,
        )
        self.logger.debug("session_view_reset")

    async def teardown(self) -> None:
        """Release the subscription and wait for the consumer task to stop."""
        consumer = self._release_subscription()
        if consumer is not None:
            await asyncio.gather(consumer, return_exceptions=True)

    # Event folding

    def apply_event(self, event: ChangeEvent) -> None:
        """Fold one change-stream event into the view."""
        if isinstance(event, SessionChanged):
            self._apply_session(event.session, source="stream")
        elif isinstance(event, StatusInserted):
            self._append_status(event.status)
        elif isinstance(event, VitalInserted):
            if self._predates_read(event.vital):
                self.logger.debug("stale_vital_ignored", vital_id=event.vital.id)
                return
            self._replace(latest_vital=event.vital)
            self.logger.info("vital_received", session_id=event.vital.session_id)

    def _apply_session(self, session: Session, source: SnapshotSource) -> None:
        current = self._view.lifecycle_state
        if (
            source == "stream"
            and self._read_state is not None
            and not self._read_state.can_transition_to(session.state)
        ):
            # Committed before the point-in-time read and queued behind it
            self.logger.debug(
                "stale_stream_snapshot_ignored",
                session_id=session.id,
                read_state=self._read_state.value,
                pushed=session.state.value,
            )
            return
        if current is not None and not current.can_transition_to(session.state):
            if source == "write_ack":
                # The stream already moved past what this write acknowledged
                self.logger.debug(
                    "stale_write_ack_ignored",
                    session_id=session.id,
                    current=current.value,
                    acknowledged=session.state.value,
                )
                return
            self.logger.warning(
                "lifecycle_regression_observed",
                session_id=session.id,
                current=current.value,
                pushed=session.state.value,
            )

        if current != session.state:
            self.logger.info(
                "lifecycle_transition",
                session_id=session.id,
                source=source,
                previous=current.value if current else None,
                current=session.state.value,
            )
        self._replace(session=session, lifecycle_state=session.state)

    def _predates_read(self, vital: Vital) -> bool:
        read = self._read_vital
        if read is None or vital.id == read.id:
            return False
        return vital.created_at < read.created_at

    def _append_status(self, status: StatusEvent) -> None:
        if any(existing.id == status.id for existing in self._view.status_history):
            return
        self._replace(
            status_history=(*self._view.status_history, status),
            status_message=status.message,
        )

    # Internals

    def _replace(self, **changes: Any) -> None:
        updated = self._view.model_copy(update=changes)
        if updated == self._view:
            return
        self._view = updated
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._view)
            except Exception as e:
                self.logger.exception("session_listener_failed", error=str(e))

    def _replace_subscription(self, session_id: str) -> Subscription:
        self._release_subscription()
        self._subscription = self.change_stream.subscribe(session_id)
        return self._subscription

    def _release_subscription(self) -> asyncio.Task[None] | None:
        self._read_state = None
        self._read_vital = None
        subscription, self._subscription = self._subscription, None
        consumer, self._consumer = self._consumer, None
        self.change_stream.unsubscribe(subscription)
        if consumer is not None and not consumer.done():
            consumer.cancel()
        return consumer

    def _start_consumer(self, subscription: Subscription) -> None:
        self._consumer = asyncio.create_task(
            self._consume(subscription), name=f"session-stream-{subscription.session_id}"
        )

    async def _consume(self, subscription: Subscription) -> None:
        async for event in subscription.events():
            if subscription is not self._subscription:
                break
            self.apply_event(event)
        self.logger.debug("stream_consumer_stopped", session_id=subscription.session_id)

    def _fail(self, error: SessionCoreError, event: str) -> Result[Session, SessionCoreError]:
        self.logger.warning(event, reason=error.code, error=error.message)
        self._replace(error=error.message)
        return Result.err(error)

    def _fail_load(
        self, subscription: Subscription, error: SessionCoreError
    ) -> Result[Session, SessionCoreError]:
        if subscription is not self._subscription:
            self.change_stream.unsubscribe(subscription)
            self.logger.warning("session_load_failed", reason=error.code, superseded=True)
            return Result.err(error)
        self._release_subscription()
        self._replace(
            session=None,
            lifecycle_state=None,
            status_message="",
            status_history=(),
            latest_vital=None,
        )
        return self._fail(error, "session_load_failed")

    def _parse_session(self, row: Mapping[str, Any]) -> Session | None:
        try:
            return Session.model_validate(row)
        except ValidationError as e:
            self.logger.error("session_row_invalid", errors=e.error_count())
            return None

    def _lifecycle_value(self) -> str | None:
        state = self._view.lifecycle_state
        return state.value if state else None
