"""
Tests for the session lifecycle controller.

Testing philosophy:
- Run against the real in-memory store rather than mocks
- Cover both convergence paths (write acknowledgement and change stream)
- Verify teardown leaves nothing listening
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Hashable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from aura_adapters.memory.device import DeviceSimulator
from aura_adapters.memory.store import InMemoryDataStore, StaticIdentity
from aura_core.domain.errors import AuthRequired, NoActiveSession, StoreReadFailed, StoreWriteFailed
from aura_core.domain.models import (
    Gender,
    Session,
    SessionChanged,
    SessionInput,
    SessionMode,
    SessionState,
    SessionView,
    StatusEvent,
    StatusInserted,
    Vital,
    VitalInserted,
)
from aura_core.services.progress import MONITORING_STEPS, report_ready
from aura_core.services.session_controller import SessionController, SessionControllerConfig
from aura_core.services.store import Filters, Result, Row, RowChange

USER_ID = "user-1"


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until the predicate holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


def session_input(**overrides: Any) -> SessionInput:
    values: dict[str, Any] = {
        "user_name": "Asha",
        "age": 42,
        "gender": Gender.FEMALE,
        "mode": SessionMode.SELF,
    }
    values.update(overrides)
    return SessionInput(**values)


def session_snapshot(state: SessionState, session_id: str = "session-1") -> Session:
    return Session(
        id=session_id,
        user_id=USER_ID,
        user_name="Asha",
        age=42,
        gender=Gender.FEMALE,
        mode=SessionMode.SELF,
        state=state,
    )


class LeakyStore(InMemoryDataStore):
    """Keeps notifying listeners after they are released, like a lagging transport."""

    def unsubscribe(self, handle: Hashable) -> None:
        return None


class StreamBeatsAckStore(InMemoryDataStore):
    """The device moves the session on before the start acknowledgement comes back."""

    async def update(
        self, table: str, filters: Filters, patch: dict[str, Any]
    ) -> Result[list[Row], StoreWriteFailed]:
        result = await super().update(table, filters, patch)
        if patch.get("state") == SessionState.STARTED.value:
            await super().update(table, filters, {"state": SessionState.MONITORING.value})
            await asyncio.sleep(0.01)
        return result


class AdvancesDuringReadStore(InMemoryDataStore):
    """Commits newer session and vital rows while the session read is in flight."""

    def __init__(self) -> None:
        super().__init__()
        self.advance_session_id: str | None = None

    async def select(
        self, table: str, filters: Filters, **options: Any
    ) -> Result[list[Row], StoreReadFailed]:
        session_id, self.advance_session_id = self.advance_session_id, None
        if table == "sessions" and session_id is not None:
            taken_at = datetime.now(UTC)
            await self.update("sessions", {"id": session_id}, {"state": "MONITORING"})
            await self.insert(
                "vitals", {"session_id": session_id, "hr": 120, "created_at": taken_at}
            )
            await self.insert(
                "vitals",
                {"session_id": session_id, "hr": 72, "created_at": taken_at + timedelta(seconds=1)},
            )
            await self.update("sessions", {"id": session_id}, {"state": "COMPLETED"})
        return await super().select(table, filters, **options)


@pytest.fixture
def store() -> InMemoryDataStore:
    return InMemoryDataStore()


@pytest.fixture
def identity() -> StaticIdentity:
    return StaticIdentity(USER_ID)


@pytest.fixture
async def controller(
    store: InMemoryDataStore, identity: StaticIdentity
) -> AsyncIterator[SessionController]:
    async with SessionController(store, identity) as ctrl:
        yield ctrl


class TestCreate:
    async def test_create_without_identity_fails_without_writing(
        self, store: InMemoryDataStore
    ) -> None:
        controller = SessionController(store, StaticIdentity(None))

        result = await controller.create(session_input())

        assert result.is_err()
        assert isinstance(result.unwrap_err(), AuthRequired)
        assert store.write_count == 0
        assert controller.error == "Not authenticated"
        assert controller.session is None
        assert store.listener_count == 0

    async def test_create_persists_session_and_opens_subscription(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        result = await controller.create(session_input(mode=SessionMode.ASSISTED))

        session = result.unwrap()
        assert session.state == SessionState.CREATED
        assert session.user_id == USER_ID
        assert session.mode == SessionMode.ASSISTED
        assert controller.lifecycle_state == SessionState.CREATED
        assert controller.session == session
        assert controller.error is None
        assert store.rows("sessions")[0]["id"] == session.id
        assert store.listener_count == 3

    async def test_store_rejection_sets_error_and_keeps_previous_view(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        first = (await controller.create(session_input())).unwrap()
        previous_subscription = controller.subscription
        store.fail_writes = True

        result = await controller.create(session_input(user_name="Ravi"))

        assert isinstance(result.unwrap_err(), StoreWriteFailed)
        assert controller.error is not None
        assert controller.session == first
        assert controller.subscription is previous_subscription
        assert store.listener_count == 3

    async def test_second_create_replaces_subscription(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        await controller.create(session_input())
        old_subscription = controller.subscription

        await controller.create(session_input(user_name="Ravi"))

        assert old_subscription is not None and old_subscription.closed
        assert controller.subscription is not old_subscription
        assert store.listener_count == 3
        assert controller.session is not None and controller.session.user_name == "Ravi"


class TestBeginMonitoring:
    async def test_begin_monitoring_moves_session_to_started(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session = (await controller.create(session_input())).unwrap()

        result = await controller.begin_monitoring()

        assert result.unwrap().state == SessionState.STARTED
        assert controller.lifecycle_state == SessionState.STARTED
        assert store.rows("sessions")[0]["state"] == "STARTED"
        assert store.rows("sessions")[0]["id"] == session.id

    async def test_begin_monitoring_without_session_is_rejected(
        self, controller: SessionController
    ) -> None:
        result = await controller.begin_monitoring()

        assert isinstance(result.unwrap_err(), NoActiveSession)
        assert controller.error is None

    async def test_begin_monitoring_after_completion_is_rejected(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session = (await controller.create(session_input())).unwrap()
        await store.update("sessions", {"id": session.id}, {"state": "COMPLETED"})
        await eventually(lambda: controller.lifecycle_state == SessionState.COMPLETED)
        writes_before = store.write_count

        result = await controller.begin_monitoring()

        assert isinstance(result.unwrap_err(), NoActiveSession)
        assert controller.lifecycle_state == SessionState.COMPLETED
        assert store.write_count == writes_before

    async def test_write_failure_leaves_state_unchanged(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        await controller.create(session_input())
        store.fail_writes = True

        result = await controller.begin_monitoring()

        assert isinstance(result.unwrap_err(), StoreWriteFailed)
        assert controller.lifecycle_state == SessionState.CREATED
        assert controller.error is not None

    async def test_successful_retry_clears_previous_error(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        await controller.create(session_input())
        store.fail_writes = True
        await controller.begin_monitoring()
        store.fail_writes = False

        result = await controller.begin_monitoring()

        assert result.is_ok()
        assert controller.error is None

    async def test_late_acknowledgement_does_not_regress_lifecycle(self) -> None:
        store = StreamBeatsAckStore()
        async with SessionController(store, StaticIdentity(USER_ID)) as controller:
            await controller.create(session_input())

            result = await controller.begin_monitoring()

            assert result.unwrap().state == SessionState.STARTED
            assert controller.lifecycle_state == SessionState.MONITORING


class TestEventFolding:
    def test_applying_same_session_event_twice_equals_once(self) -> None:
        controller = SessionController(InMemoryDataStore(), StaticIdentity(USER_ID))
        snapshots: list[SessionView] = []
        controller.add_listener(snapshots.append)
        event = SessionChanged(session=session_snapshot(SessionState.STARTED))

        controller.apply_event(event)
        once = controller.state
        controller.apply_event(event)

        assert controller.state == once
        assert len(snapshots) == 1

    def test_duplicate_status_is_recorded_once(self) -> None:
        controller = SessionController(InMemoryDataStore(), StaticIdentity(USER_ID))
        status = StatusEvent(id="s1", session_id="session-1", message="System Initialised")

        controller.apply_event(StatusInserted(status=status))
        controller.apply_event(StatusInserted(status=status))

        assert controller.status_history == (status,)
        assert controller.status_message == "System Initialised"

    def test_latest_vital_replaces_previous(self) -> None:
        controller = SessionController(InMemoryDataStore(), StaticIdentity(USER_ID))

        controller.apply_event(VitalInserted(vital=Vital(id="v1", session_id="session-1", hr=70)))
        controller.apply_event(VitalInserted(vital=Vital(id="v2", session_id="session-1", hr=90)))

        assert controller.latest_vital is not None and controller.latest_vital.id == "v2"

    def test_stream_snapshot_wins_even_when_it_moves_backwards(self) -> None:
        controller = SessionController(InMemoryDataStore(), StaticIdentity(USER_ID))

        controller.apply_event(SessionChanged(session=session_snapshot(SessionState.MONITORING)))
        controller.apply_event(SessionChanged(session=session_snapshot(SessionState.STARTED)))

        assert controller.lifecycle_state == SessionState.STARTED

    def test_failing_listener_does_not_stop_others(self) -> None:
        controller = SessionController(InMemoryDataStore(), StaticIdentity(USER_ID))
        received: list[SessionView] = []

        def broken(view: SessionView) -> None:
            raise RuntimeError("render failed")

        controller.add_listener(broken)
        controller.add_listener(received.append)
        controller.apply_event(SessionChanged(session=session_snapshot(SessionState.STARTED)))
        controller.remove_listener(broken)

        assert len(received) == 1


class TestLiveSession:
    async def test_device_run_drives_view_to_completed_report(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session = (await controller.create(session_input())).unwrap()
        device = DeviceSimulator(
            store, session.id, scenario="fever_tachycardia", step_delay_seconds=0
        )
        run = asyncio.create_task(device.run())

        await controller.begin_monitoring()
        vital = (await asyncio.wait_for(run, timeout=2.0)).unwrap()
        await eventually(lambda: report_ready(controller.state))

        assert controller.lifecycle_state == SessionState.COMPLETED
        assert [s.message for s in controller.status_history] == list(MONITORING_STEPS)
        assert controller.status_message == MONITORING_STEPS[-1]
        assert controller.latest_vital == vital

    async def test_small_channel_still_delivers_everything(
        self, store: InMemoryDataStore, identity: StaticIdentity
    ) -> None:
        config = SessionControllerConfig(channel_max_events=1)
        async with SessionController(store, identity, config=config) as controller:
            session = (await controller.create(session_input())).unwrap()
            run = asyncio.create_task(
                DeviceSimulator(store, session.id, step_delay_seconds=0).run()
            )
            await controller.begin_monitoring()
            await asyncio.wait_for(run, timeout=2.0)
            await eventually(lambda: report_ready(controller.state))

            assert len(controller.status_history) == len(MONITORING_STEPS)


class TestReset:
    async def test_reset_clears_view_and_releases_listeners(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        await controller.create(session_input())
        subscription = controller.subscription

        controller.reset_local()

        assert controller.state == SessionView()
        assert controller.subscription is None
        assert subscription is not None and subscription.closed
        assert store.listener_count == 0

    async def test_reset_is_idempotent(self, controller: SessionController) -> None:
        controller.reset_local()
        controller.reset_local()

        assert controller.state == SessionView()

    async def test_late_emissions_after_reset_are_ignored(self) -> None:
        store = LeakyStore()
        async with SessionController(store, StaticIdentity(USER_ID)) as controller:
            session = (await controller.create(session_input())).unwrap()
            subscription = controller.subscription
            controller.reset_local()

            await store.insert("statuses", {"session_id": session.id, "message": "late"})
            await store.update("sessions", {"id": session.id}, {"state": "STARTED"})
            assert subscription is not None
            await subscription.deliver(
                RowChange(table="vitals", event_type="INSERT", new={"session_id": session.id})
            )
            await asyncio.sleep(0.01)

            assert controller.state == SessionView()
            assert subscription.dropped_events == 3

    async def test_teardown_stops_consumer(
        self, store: InMemoryDataStore, identity: StaticIdentity
    ) -> None:
        controller = SessionController(store, identity)
        async with controller:
            await controller.create(session_input())

        assert store.listener_count == 0
        assert controller.subscription is None


class TestLoadSession:
    async def _seed(self, store: InMemoryDataStore, state: str = "MONITORING") -> str:
        row = (
            await store.insert(
                "sessions",
                {
                    "user_id": USER_ID,
                    "user_name": "Asha",
                    "age": 42,
                    "gender": "Female",
                    "mode": "Self",
                    "state": state,
                },
            )
        ).unwrap()
        for message in MONITORING_STEPS[:2]:
            await store.insert("statuses", {"session_id": row["id"], "message": message})
        await store.insert("vitals", {"session_id": row["id"], "hr": 80, "status": "GREEN"})
        return row["id"]

    async def test_load_populates_view_from_store(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session_id = await self._seed(store)

        result = await controller.load_session(session_id)

        assert result.unwrap().id == session_id
        assert controller.lifecycle_state == SessionState.MONITORING
        assert [s.message for s in controller.status_history] == list(MONITORING_STEPS[:2])
        assert controller.status_message == MONITORING_STEPS[1]
        assert controller.latest_vital is not None and controller.latest_vital.hr == 80
        assert store.listener_count == 3

    async def test_loaded_session_keeps_following_the_stream(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session_id = await self._seed(store)
        await controller.load_session(session_id)

        await store.insert("statuses", {"session_id": session_id, "message": "Final Analysis"})
        await store.update("sessions", {"id": session_id}, {"state": "COMPLETED"})
        await eventually(lambda: controller.lifecycle_state == SessionState.COMPLETED)

        assert controller.status_message == "Final Analysis"
        assert len(controller.status_history) == 3

    async def test_missing_session_clears_view_and_sets_error(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        await controller.create(session_input())

        result = await controller.load_session("does-not-exist")

        assert isinstance(result.unwrap_err(), StoreReadFailed)
        assert controller.session is None
        assert controller.error is not None
        assert store.listener_count == 0

    async def test_read_failure_is_reported(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session_id = await self._seed(store)
        store.fail_reads = True

        result = await controller.load_session(session_id)

        assert isinstance(result.unwrap_err(), StoreReadFailed)
        assert controller.subscription is None

    async def test_changes_committed_during_read_do_not_replay_backwards(self) -> None:
        store = AdvancesDuringReadStore()
        session_id = await self._seed(store, state="STARTED")
        store.advance_session_id = session_id
        states: list[SessionState | None] = []
        heart_rates: set[float | None] = set()

        def record(view: SessionView) -> None:
            if not states or states[-1] != view.lifecycle_state:
                states.append(view.lifecycle_state)
            if view.latest_vital is not None:
                heart_rates.add(view.latest_vital.hr)

        async with SessionController(store, StaticIdentity(USER_ID)) as controller:
            controller.add_listener(record)

            await controller.load_session(session_id)
            subscription = controller.subscription
            assert subscription is not None
            await eventually(lambda: subscription.pending == 0)
            await asyncio.sleep(0.01)

            assert states == [SessionState.COMPLETED]
            assert heart_rates == {72}
            assert report_ready(controller.state)

    async def test_progress_after_load_is_still_applied(
        self, store: InMemoryDataStore, controller: SessionController
    ) -> None:
        session_id = await self._seed(store, state="STARTED")
        await controller.load_session(session_id)

        await store.update("sessions", {"id": session_id}, {"state": "MONITORING"})
        await store.insert("vitals", {"session_id": session_id, "hr": 64})
        await eventually(lambda: controller.lifecycle_state == SessionState.MONITORING)
        await eventually(
            lambda: controller.latest_vital is not None and controller.latest_vital.hr == 64
        )
