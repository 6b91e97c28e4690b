"""
Simulated bedside device.

Plays the hardware side of a monitoring session against any DataStore: it
waits for the user to start monitoring, reports progress through status rows,
writes one vital reading and marks the session complete. Scenarios select
which reading is produced.
"""

import asyncio
from collections.abc import Mapping
from typing import Any

import structlog

from aura_core.domain.errors import NoActiveSession, SessionCoreError
from aura_core.domain.models import HealthStatus, SessionState, Vital
from aura_core.services.progress import MONITORING_STEPS
from aura_core.services.store import (
    SESSIONS_TABLE,
    STATUSES_TABLE,
    VITALS_TABLE,
    DataStore,
    Result,
    RowChange,
)

logger = structlog.get_logger(__name__)

SCENARIO_READINGS: dict[str, dict[str, float | None]] = {
    "normal": {"temp": 36.7, "hr": 78, "spo2": 98, "audio": 2.1},
    "fever_tachycardia": {"temp": 38.0, "hr": 110, "spo2": 92, "audio": 3.4},
    "sensor_error": {"temp": 36.5, "hr": 0, "spo2": 98, "audio": 5.0},
    "partial": {"temp": None, "hr": 95, "spo2": 97, "audio": None},
}

# Device-side ranges for the coarse health tag; wider than the risk engine's
HEALTH_TAG_RANGES: dict[str, tuple[float, float, int]] = {
    "temp": (31.0, 37.5, 35),
    "hr": (60.0, 100.0, 35),
    "spo2": (80.0, 100.0, 30),
}


def health_tag(reading: Mapping[str, float | None]) -> HealthStatus:
    """Coarse GREEN/YELLOW/RED tag stored alongside the vital."""
    points = 0
    for field, (low, high, weight) in HEALTH_TAG_RANGES.items():
        value = reading.get(field)
        if value is not None and not low <= value <= high:
            points += weight
    if points >= 70:
        return HealthStatus.RED
    if points >= 30:
        return HealthStatus.YELLOW
    return HealthStatus.GREEN


class DeviceSimulator:
    """Drives one session from STARTED through COMPLETED."""

    def __init__(
        self,
        store: DataStore,
        session_id: str,
        scenario: str = "normal",
        step_delay_seconds: float = 0.5,
        start_timeout_seconds: float | None = None,
    ) -> None:
        if scenario not in SCENARIO_READINGS:
            raise ValueError(f"Unknown device scenario: {scenario}")
        self.store = store
        self.session_id = session_id
        self.scenario = scenario
        self.step_delay_seconds = step_delay_seconds
        self.start_timeout_seconds = start_timeout_seconds
        self.logger = logger.bind(component="device_simulator", session_id=session_id)
        self._started = asyncio.Event()

    async def run(self) -> Result[Vital, SessionCoreError]:
        """Wait for the start signal, then stream progress and the final reading."""
        try:
            await asyncio.wait_for(self.wait_for_start(), timeout=self.start_timeout_seconds)
        except TimeoutError:
            self.logger.warning("device_start_timeout", timeout=self.start_timeout_seconds)
            return Result.err(NoActiveSession(f"Session {self.session_id} was never started"))

        result = await self._set_state(SessionState.MONITORING)
        if result.is_err():
            return await self._abort(result.unwrap_err())

        for step in MONITORING_STEPS:
            status_result = await self.store.insert(
                STATUSES_TABLE, {"session_id": self.session_id, "message": step}
            )
            if status_result.is_err():
                return await self._abort(status_result.unwrap_err())
            self.logger.debug("device_step_reported", step=step)
            await asyncio.sleep(self.step_delay_seconds)

        reading = SCENARIO_READINGS[self.scenario]
        vital_result = await self.store.insert(
            VITALS_TABLE,
            {"session_id": self.session_id, **reading, "status": health_tag(reading).value},
        )
        if vital_result.is_err():
            return await self._abort(vital_result.unwrap_err())

        result = await self._set_state(SessionState.COMPLETED)
        if result.is_err():
            return await self._abort(result.unwrap_err())

        vital = Vital.model_validate(vital_result.unwrap())
        self.logger.info(
            "device_run_completed",
            scenario=self.scenario,
            health_tag=vital.status.value if vital.status else None,
        )
        return Result.ok(vital)

    async def wait_for_start(self) -> None:
        """Block until the session row reaches STARTED."""
        handle = self.store.subscribe_changes(
            SESSIONS_TABLE, {"id": self.session_id}, self._on_session_change
        )
        try:
            current = await self.store.select(SESSIONS_TABLE, {"id": self.session_id}, limit=1)
            for row in current.unwrap_or([]):
                self._check_started(row)
            await self._started.wait()
        finally:
            self.store.unsubscribe(handle)
        self.logger.info("device_start_signal_received")

    async def _on_session_change(self, change: RowChange) -> None:
        self._check_started(change.new)

    def _check_started(self, row: Mapping[str, Any]) -> None:
        try:
            state = SessionState(row.get("state"))
        except ValueError:
            return
        if state in (SessionState.STARTED, SessionState.MONITORING):
            self._started.set()

    async def _set_state(self, state: SessionState) -> Result[Any, SessionCoreError]:
        result = await self.store.update(
            SESSIONS_TABLE, {"id": self.session_id}, {"state": state.value}
        )
        if result.is_ok():
            self.logger.info("device_state_reported", state=state.value)
        return result  # type: ignore[return-value]

    async def _abort(self, error: SessionCoreError) -> Result[Vital, SessionCoreError]:
        self.logger.error("device_run_failed", error=error.message)
        marked = await self.store.update(
            SESSIONS_TABLE, {"id": self.session_id}, {"state": SessionState.ERROR.value}
        )
        if marked.is_err():
            self.logger.warning("device_error_state_not_saved", error=marked.unwrap_err().message)
        return Result.err(error)
