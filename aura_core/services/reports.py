"""
Read-only session reports built from point-in-time store reads.

These back the report and history views: each session is paired with its
most recent vital and, when a vital exists, the risk engine's result. The
store's own health tag is carried alongside untouched.
"""

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError

from aura_core.domain.errors import StoreReadFailed
from aura_core.domain.models import RiskResult, Session, Vital
from aura_core.services import risk_engine
from aura_core.services.store import SESSIONS_TABLE, VITALS_TABLE, DataStore, Result

logger = structlog.get_logger(__name__)


class SessionReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    session: Session
    vital: Vital | None = None
    risk: RiskResult | None = None


async def _latest_vitals(
    store: DataStore, session_id: str
) -> Result[list[Vital], StoreReadFailed]:
    """At most one vital, the most recent; empty when none has arrived."""
    result = await store.select(
        VITALS_TABLE,
        {"session_id": session_id},
        order_by="created_at",
        descending=True,
        limit=1,
    )
    if result.is_err():
        return Result.err(result.unwrap_err())
    try:
        return Result.ok([Vital.model_validate(row) for row in result.unwrap()])
    except ValidationError as e:
        return Result.err(
            StoreReadFailed(f"Invalid vital for session {session_id}: {e.error_count()} errors")
        )


def _build_report(session: Session, vitals: list[Vital]) -> SessionReport:
    vital = vitals[0] if vitals else None
    return SessionReport(
        session=session,
        vital=vital,
        risk=risk_engine.score(vital) if vital is not None else None,
    )


async def load_session_report(
    store: DataStore, session_id: str
) -> Result[SessionReport, StoreReadFailed]:
    """Session plus its latest vital and risk result."""
    session_result = await store.select(SESSIONS_TABLE, {"id": session_id}, limit=1)
    if session_result.is_err():
        logger.warning("session_report_read_failed", session_id=session_id)
        return Result.err(session_result.unwrap_err())

    rows = session_result.unwrap()
    if not rows:
        return Result.err(StoreReadFailed(f"Session {session_id} not found"))
    try:
        session = Session.model_validate(rows[0])
    except ValidationError as e:
        return Result.err(
            StoreReadFailed(f"Invalid session {session_id}: {e.error_count()} errors")
        )

    vital_result = await _latest_vitals(store, session_id)
    if vital_result.is_err():
        logger.warning("session_report_read_failed", session_id=session_id, table=VITALS_TABLE)
        return Result.err(vital_result.unwrap_err())

    return Result.ok(_build_report(session, vital_result.unwrap()))


async def list_user_sessions(
    store: DataStore, user_id: str
) -> Result[list[SessionReport], StoreReadFailed]:
    """All of a user's sessions, newest first, each with its latest vital."""
    sessions_result = await store.select(
        SESSIONS_TABLE, {"user_id": user_id}, order_by="created_at", descending=True
    )
    if sessions_result.is_err():
        logger.warning("session_history_read_failed", user_id=user_id)
        return Result.err(sessions_result.unwrap_err())

    reports: list[SessionReport] = []
    for row in sessions_result.unwrap():
        try:
            session = Session.model_validate(row)
        except ValidationError as e:
            logger.warning("session_row_skipped", row_id=row.get("id"), errors=e.error_count())
            continue

        vital_result = await _latest_vitals(store, session.id)
        if vital_result.is_err():
            return Result.err(vital_result.unwrap_err())
        reports.append(_build_report(session, vital_result.unwrap()))

    logger.info("session_history_loaded", user_id=user_id, sessions=len(reports))
    return Result.ok(reports)
