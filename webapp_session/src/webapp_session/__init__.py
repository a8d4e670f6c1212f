# src/webapp_session/__init__.py

from .api import AuthAPI, SessionsAPI
from .auth_state import AuthState, FileUserStore
from .client import SessionClient
from .config import Settings
from .errors import FailureKind, ServerFailure, classify_failure
from .host import ActivityHub, Navigator, Notifier
from .log import configure_logging
from .monitor import SessionMonitor
from .session_data import SessionUser
from .singleflight import SingleFlight
from .token_cache import CsrfTokenCache

__all__ = [
    "ActivityHub",
    "AuthAPI",
    "AuthState",
    "CsrfTokenCache",
    "FailureKind",
    "FileUserStore",
    "Navigator",
    "Notifier",
    "ServerFailure",
    "SessionClient",
    "SessionMonitor",
    "SessionUser",
    "SessionsAPI",
    "Settings",
    "SingleFlight",
    "classify_failure",
    "configure_logging",
]
