"""
Domain models for a patient monitoring session.

These models represent the core business concepts and are framework-agnostic.
Rows arriving from the data store are validated into these models at the
change-stream boundary, so everything past that point works with typed data.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle of a monitoring session."""

    CREATED = "CREATED"
    STARTED = "STARTED"
    MONITORING = "MONITORING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"

    @property
    def rank(self) -> int:
        """Position in the forward progression; ERROR sorts after everything."""
        return _STATE_ORDER.index(self)

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.COMPLETED, SessionState.ERROR)

    def can_transition_to(self, target: "SessionState") -> bool:
        """Forward-only moves, plus ERROR from any non-terminal state."""
        if self.is_terminal:
            return target == self
        if target == SessionState.ERROR:
            return True
        return target.rank >= self.rank


_STATE_ORDER = [
    SessionState.CREATED,
    SessionState.STARTED,
    SessionState.MONITORING,
    SessionState.COMPLETED,
    SessionState.ERROR,
]


class Gender(str, Enum):
    MALE = "Male"
    FEMALE = "Female"
    OTHER = "Other"


class SessionMode(str, Enum):
    """Who operates the device during the session."""

    SELF = "Self"
    ASSISTED = "Assisted"


class HealthStatus(str, Enum):
    """Coarse tag computed by the store, independent of the risk engine."""

    GREEN = "GREEN"
    YELLOW = "YELLOW"
    RED = "RED"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"


class FieldFlag(str, Enum):
    NORMAL = "Normal"
    ABNORMAL = "Abnormal"
    INFORMATIONAL = "Informational"


class DataQuality(str, Enum):
    """How many of the three scored vital fields were present."""

    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    POOR = "POOR"
    NO_DATA = "NO_DATA"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Session(BaseModel):
    """A monitoring session row as stored and pushed by the data store."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    user_name: str
    age: int = Field(ge=0)
    gender: Gender
    mode: SessionMode
    state: SessionState = SessionState.CREATED
    created_at: datetime = Field(default_factory=_utcnow)


class StatusEvent(BaseModel):
    """Free-text progress message emitted by the device for one session."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    session_id: str
    message: str
    created_at: datetime = Field(default_factory=_utcnow)


class Vital(BaseModel):
    """One snapshot of measured values plus the auxiliary audio scalar."""

    model_config = ConfigDict(frozen=True, extra="ignore", allow_inf_nan=False)

    id: str | None = None
    session_id: str | None = None
    temp: float | None = Field(default=None, description="Skin temperature in degrees Celsius")
    hr: float | None = Field(default=None, description="Heart rate in bpm")
    spo2: float | None = Field(default=None, description="Blood-oxygen saturation in percent")
    audio: float | None = Field(default=None, description="Audio-derived scalar, informational")
    status: HealthStatus | None = None
    created_at: datetime = Field(default_factory=_utcnow)


class SessionInput(BaseModel):
    """Details collected before a session is created."""

    user_name: str = Field(min_length=1, max_length=120)
    age: int = Field(ge=0, le=150)
    gender: Gender
    mode: SessionMode


class RiskFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    temp: FieldFlag = FieldFlag.NORMAL
    hr: FieldFlag = FieldFlag.NORMAL
    spo2: FieldFlag = FieldFlag.NORMAL
    audio: FieldFlag = FieldFlag.INFORMATIONAL


class RiskResult(BaseModel):
    """Clinical classification derived from a single vital snapshot."""

    model_config = ConfigDict(frozen=True)

    risk_level: RiskLevel
    risk_score: int = Field(ge=0, le=100)
    summary: str
    recommendations: list[str] = Field(default_factory=list)
    abnormal_fields: list[str] = Field(default_factory=list)
    flags: RiskFlags = Field(default_factory=RiskFlags)
    data_quality: DataQuality
    fields_present: int = Field(ge=0, le=3)


# Typed change events, one per kind of row change the stream can carry


class SessionChanged(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["session_changed"] = "session_changed"
    session: Session


class StatusInserted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["status_inserted"] = "status_inserted"
    status: StatusEvent


class VitalInserted(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["vital_inserted"] = "vital_inserted"
    vital: Vital


ChangeEvent = Annotated[
    SessionChanged | StatusInserted | VitalInserted, Field(discriminator="kind")
]


class SessionView(BaseModel):
    """Observable state bag handed to the presentation layer."""

    model_config = ConfigDict(frozen=True)

    session: Session | None = None
    lifecycle_state: SessionState | None = None
    status_message: str = ""
    status_history: tuple[StatusEvent, ...] = ()
    latest_vital: Vital | None = None
    error: str | None = None
