# src/webapp_session/log.py

from __future__ import annotations

import logging
import re
import sys
from typing import Any, Optional

import structlog

from .config import settings as default_settings

_JWT_RE = re.compile(r"\beyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\b")
_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_KV_RE = re.compile(
    r"(?i)\b(x-csrf-token|csrf_token|csrftoken|access_token|refresh_token|token|password)\b\s*[=:]\s*([^\s,;]+)"
)

# Event keys whose values are always secrets, whatever they look like
_SECRET_KEYS = {"csrf_token", "token", "access_token", "refresh_token", "password"}


def redact(s: str) -> str:
    s = _JWT_RE.sub("***REDACTED***", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if k in _SECRET_KEYS and v is not None:
            event_dict[k] = "***REDACTED***"
        elif isinstance(v, str):
            event_dict[k] = redact(v)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def configure_logging(level: Optional[str] = None) -> None:
    """
    Route structlog through stdlib logging as JSON lines on stdout.
    Hosts call this once at startup; `level` defaults to the client's LOG_LEVEL.
    Safe to call more than once; only the level changes on later calls.
    """
    if level is None:
        level = default_settings.LOG_LEVEL
    root = logging.getLogger()
    root.setLevel(str(level).upper())

    if getattr(root, "_webapp_session_structlog_configured", False):
        return

    foreign_pre_chain = [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=foreign_pre_chain,
    )
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    root.handlers.clear()
    root.addHandler(stream_handler)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
            structlog.stdlib.add_log_level,
            redact_event,
            structlog.processors.format_exc_info,
            rename_event_to_msg,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    root._webapp_session_structlog_configured = True
