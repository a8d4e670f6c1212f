# src/webapp_session/errors.py

import enum
from typing import Optional

import httpx
from pydantic import BaseModel, ConfigDict

from .config import Settings


class FailureKind(enum.Enum):
    """Every server failure the interceptor chain distinguishes."""
    UNAUTHORIZED = "unauthorized"
    UNAUTHORIZED_IDLE_TIMEOUT = "unauthorized_idle_timeout"
    FORBIDDEN_PASSWORD_EXPIRED = "forbidden_password_expired"
    FORBIDDEN_CSRF_MISMATCH = "forbidden_csrf_mismatch"
    OTHER = "other"


class ServerFailure(BaseModel):
    """
    The machine-readable part of an error response.
    Servers send `{"message": ..., "code": ...}`; anything else is tolerated.
    """
    model_config = ConfigDict(extra="ignore")

    status_code: int
    code: Optional[str] = None
    message: Optional[str] = None
    kind: FailureKind = FailureKind.OTHER

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ServerFailure":
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        code = body.get("code")
        message = body.get("message")
        return cls(
            status_code=response.status_code,
            code=str(code) if code is not None else None,
            message=str(message) if message is not None else None,
        )


def classify_failure(response: httpx.Response, settings: Settings) -> ServerFailure:
    """Single place where error response shapes are turned into a FailureKind."""
    failure = ServerFailure.from_response(response)
    status = failure.status_code

    if status == httpx.codes.UNAUTHORIZED:
        if failure.code == settings.IDLE_TIMEOUT_CODE:
            failure.kind = FailureKind.UNAUTHORIZED_IDLE_TIMEOUT
        else:
            failure.kind = FailureKind.UNAUTHORIZED
    elif status == httpx.codes.FORBIDDEN:
        if failure.code == settings.PASSWORD_EXPIRED_CODE:
            failure.kind = FailureKind.FORBIDDEN_PASSWORD_EXPIRED
        elif failure.message and settings.CSRF_ERROR_MARKER.lower() in failure.message.lower():
            failure.kind = FailureKind.FORBIDDEN_CSRF_MISMATCH
    return failure
