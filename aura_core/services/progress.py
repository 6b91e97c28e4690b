"""
Derived progress indicators for a session view.

Pure functions over SessionView data; the presentation layer decides how to
draw them.
"""

from collections.abc import Sequence
from enum import Enum

from aura_core.domain.models import SessionState, SessionView, StatusEvent

# Status messages the device emits, in the order it emits them
MONITORING_STEPS: tuple[str, ...] = (
    "System Initialised",
    "Measuring Skin Temperature",
    "Auscultation Started",
    "Measuring HR & SpO₂",
    "Final Analysis",
)


class ConnectionStatus(str, Enum):
    WAITING_FOR_DEVICE = "Waiting for Device"
    DEVICE_CONNECTED = "Device Connected"
    MONITORING_LIVE = "Monitoring Live"
    COMPLETED = "Completed"
    ERROR = "Error"


def current_step_index(status_history: Sequence[StatusEvent]) -> int:
    """Index of the step named by the latest status message, or -1."""
    if not status_history:
        return -1
    latest = status_history[-1].message.lower()
    for index, step in enumerate(MONITORING_STEPS):
        if step.lower() in latest:
            return index
    return -1


def connection_status(
    lifecycle_state: SessionState | None, status_message: str
) -> ConnectionStatus:
    if lifecycle_state is None or lifecycle_state == SessionState.CREATED:
        return ConnectionStatus.WAITING_FOR_DEVICE
    if lifecycle_state == SessionState.ERROR:
        return ConnectionStatus.ERROR
    if lifecycle_state == SessionState.COMPLETED:
        return ConnectionStatus.COMPLETED
    if status_message:
        return ConnectionStatus.MONITORING_LIVE
    if lifecycle_state == SessionState.STARTED:
        return ConnectionStatus.DEVICE_CONNECTED
    return ConnectionStatus.WAITING_FOR_DEVICE


def report_ready(view: SessionView) -> bool:
    """True once the session completed and its final vital has arrived."""
    return view.lifecycle_state == SessionState.COMPLETED and view.latest_vital is not None
