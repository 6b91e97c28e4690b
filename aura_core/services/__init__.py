"""
Core services for the session core.

This package contains the session controller, the realtime change stream,
the risk engine and the read-only report helpers.
"""

from .change_stream import ChangeStream, Subscription
from .reports import SessionReport, list_user_sessions, load_session_report
from .risk_engine import score
from .session_controller import SessionController, SessionControllerConfig
from .store import DataStore, IdentityProvider, Result, RowChange

__all__ = [
    "DataStore",
    "IdentityProvider",
    "Result",
    "RowChange",
    "ChangeStream",
    "Subscription",
    "SessionController",
    "SessionControllerConfig",
    "SessionReport",
    "load_session_report",
    "list_user_sessions",
    "score",
]
