# src/auth_service/auth_utils.py

import secrets
import time
from typing import Optional

from fastapi import HTTPException, status
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from .config import Settings


class AccessTokenData(BaseModel):
    sub: str
    sid: str
    role: Optional[str] = None
    exp: int


def api_error(status_code: int, message: str, code: Optional[str] = None) -> HTTPException:
    """Errors carry `{"message", "code"}` so clients can classify them."""
    detail = {"message": message}
    if code:
        detail["code"] = code
    return HTTPException(status_code=status_code, detail=detail)


def issue_access_token(email: str, session_id: str, role: str, settings: Settings) -> str:
    claims = {
        "sub": email,
        "sid": session_id,
        "role": role,
        "exp": int(time.time()) + settings.ACCESS_TOKEN_TTL_SECONDS,
    }
    return jwt.encode(claims, settings.AUTH_JWT_SECRET, algorithm=settings.AUTH_JWT_ALGORITHM)


def decode_access_token(token: Optional[str], settings: Settings) -> AccessTokenData:
    if not token:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
    try:
        payload = jwt.decode(token, settings.AUTH_JWT_SECRET, algorithms=[settings.AUTH_JWT_ALGORITHM])
    except ExpiredSignatureError:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Access token expired")
    except JWTError as e:
        raise api_error(status.HTTP_401_UNAUTHORIZED, f"Invalid access token: {str(e)}")
    return AccessTokenData(**payload)


def new_opaque_token() -> str:
    return secrets.token_urlsafe(32)


def tokens_match(given: Optional[str], expected: Optional[str]) -> bool:
    if not given or not expected:
        return False
    return secrets.compare_digest(given, expected)
