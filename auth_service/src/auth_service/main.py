# src/auth_service/main.py

import time
import typing
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

from webapp_session.log import configure_logging

from . import auth_utils
from .auth_utils import api_error
from .config import DEV_JWT_SECRET, Settings, settings as default_settings

logger = structlog.get_logger(__name__)

IDLE_TIMEOUT_CODE = "SESSION_IDLE_TIMEOUT"
PASSWORD_EXPIRED_CODE = "PASSWORD_EXPIRED"
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


# --- Server-side session store ---
# One record per browser, keyed by the session cookie. Records live on
# app.state so separate apps (and tests) never share them.

class SessionMiddlewareCustom(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        settings: Settings = request.app.state.settings
        sessions: typing.Dict[str, dict] = request.app.state.sessions
        session_id = request.cookies.get(settings.SESSION_COOKIE_NAME)
        if not session_id or session_id not in sessions:
            session_id = str(uuid.uuid4())
            sessions[session_id] = {"created_at": request.app.state.clock()}
        request.state.session_id = session_id
        request.state.session = sessions[session_id]
        response: StarletteResponse = await call_next(request)
        response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            session_id,
            max_age=settings.SESSION_COOKIE_MAX_AGE,
            httponly=True,
            secure=settings.COOKIE_SECURE,
            samesite="lax",
        )
        return response


class CurrentUser(BaseModel):
    email: str
    role: str
    name: str
    session_id: str


class LoginRequest(BaseModel):
    email: str
    password: str
    captchaToken: Optional[str] = None


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _public_user(email: str, settings: Settings) -> Dict[str, Any]:
    account = settings.ACCOUNTS_BY_EMAIL[email.lower()]
    return {"id": account.email, "email": account.email, "name": account.name, "role": account.role}


def _set_auth_cookies(response: Response, request: Request, email: str, role: str) -> None:
    settings = _settings(request)
    session = request.state.session
    session["refresh_token"] = auth_utils.new_opaque_token()
    access_token = auth_utils.issue_access_token(email, request.state.session_id, role, settings)
    for name, value in (
        (settings.ACCESS_COOKIE_NAME, access_token),
        (settings.REFRESH_COOKIE_NAME, session["refresh_token"]),
    ):
        response.set_cookie(name, value, httponly=True, secure=settings.COOKIE_SECURE, samesite="lax", path="/")


def _revoke(session: dict) -> None:
    session.pop("user", None)
    session.pop("refresh_token", None)


# --- Dependencies ---

async def verify_csrf(request: Request) -> None:
    if request.method in SAFE_METHODS:
        return
    settings = _settings(request)
    given = request.headers.get(settings.CSRF_HEADER_NAME)
    if not auth_utils.tokens_match(given, request.state.session.get("csrf_token")):
        logger.info("csrf_rejected", path=request.url.path, header_present=bool(given))
        raise api_error(status.HTTP_403_FORBIDDEN, "Invalid CSRF token")


def _check_idle(request: Request) -> None:
    settings = _settings(request)
    session = request.state.session
    last_activity = session.get("last_activity")
    if last_activity is None:
        return
    if request.app.state.clock() - last_activity > settings.IDLE_TIMEOUT_SECONDS:
        logger.info("session_idle_expired", session_id=request.state.session_id)
        _revoke(session)
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Session expired due to inactivity.", IDLE_TIMEOUT_CODE)


async def get_authenticated_user(request: Request) -> CurrentUser:
    settings = _settings(request)
    session = request.state.session
    email = session.get("user")
    if not email:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Not authenticated")
    _check_idle(request)

    token = auth_utils.decode_access_token(request.cookies.get(settings.ACCESS_COOKIE_NAME), settings)
    if token.sid != request.state.session_id or token.sub != email:
        raise api_error(status.HTTP_401_UNAUTHORIZED, "Access token does not belong to this session")

    session["last_activity"] = request.app.state.clock()
    account = settings.ACCOUNTS_BY_EMAIL[email.lower()]
    return CurrentUser(email=account.email, role=account.role, name=account.name, session_id=request.state.session_id)


async def require_current_password(request: Request, user: CurrentUser = Depends(get_authenticated_user)) -> CurrentUser:
    if user.email.lower() in _settings(request).AUTH_PASSWORD_EXPIRED:
        raise api_error(status.HTTP_403_FORBIDDEN, "Password expired", PASSWORD_EXPIRED_CODE)
    return user


# --- Routes ---

def build_router(prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix)

    @router.get("/health")
    async def health():
        return {"status": "ok"}

    @router.get("/csrf-token")
    async def csrf_token(request: Request):
        session = request.state.session
        session["csrf_token"] = auth_utils.new_opaque_token()
        return {"csrfToken": session["csrf_token"]}

    @router.post("/auth/login", dependencies=[Depends(verify_csrf)])
    async def login(body: LoginRequest, request: Request, response: Response):
        settings = _settings(request)
        account = settings.ACCOUNTS_BY_EMAIL.get(body.email.lower())
        if account is None or not auth_utils.tokens_match(body.password, account.password):
            logger.info("login_failed", email=body.email)
            raise api_error(status.HTTP_401_UNAUTHORIZED, "Invalid email or password")
        session = request.state.session
        session["user"] = account.email
        session["last_activity"] = request.app.state.clock()
        _set_auth_cookies(response, request, account.email, account.role)
        logger.info("login_succeeded", email=account.email, session_id=request.state.session_id)
        return {"user": _public_user(account.email, settings)}

    @router.post("/auth/refresh", dependencies=[Depends(verify_csrf)])
    async def refresh(request: Request, response: Response):
        settings = _settings(request)
        session = request.state.session
        email = session.get("user")
        given = request.cookies.get(settings.REFRESH_COOKIE_NAME)
        if not email or not auth_utils.tokens_match(given, session.get("refresh_token")):
            raise api_error(status.HTTP_401_UNAUTHORIZED, "Refresh token invalid or revoked")
        _check_idle(request)
        account = settings.ACCOUNTS_BY_EMAIL[email.lower()]
        _set_auth_cookies(response, request, account.email, account.role)
        logger.info("access_token_refreshed", session_id=request.state.session_id)
        return {"refreshed": True}

    @router.post("/auth/logout", dependencies=[Depends(verify_csrf)])
    async def logout(request: Request, response: Response):
        settings = _settings(request)
        request.state.session.clear()
        response.delete_cookie(settings.ACCESS_COOKIE_NAME, path="/")
        response.delete_cookie(settings.REFRESH_COOKIE_NAME, path="/")
        return {"loggedOut": True}

    @router.get("/auth/me")
    async def me(request: Request, user: CurrentUser = Depends(get_authenticated_user)):
        return {"user": _public_user(user.email, _settings(request)), "sessionId": user.session_id}

    @router.get("/sessions")
    async def list_sessions(request: Request, user: CurrentUser = Depends(require_current_password)) -> List[dict]:
        out = []
        for sid, record in request.app.state.sessions.items():
            if record.get("user") != user.email:
                continue
            out.append({
                "id": sid,
                "current": sid == user.session_id,
                "trusted": bool(record.get("trusted")),
                "lastActivity": record.get("last_activity"),
            })
        return out

    @router.delete("/sessions/{session_id}")
    async def revoke_session(
        session_id: str,
        request: Request,
        user: CurrentUser = Depends(require_current_password),
        _csrf: None = Depends(verify_csrf),
    ):
        record = request.app.state.sessions.get(session_id)
        if record is None or record.get("user") != user.email:
            raise api_error(status.HTTP_404_NOT_FOUND, "Session not found")
        _revoke(record)
        logger.info("session_revoked", session_id=session_id, by=user.session_id)
        return {"revoked": session_id}

    @router.post("/sessions/revoke-all")
    async def revoke_all_sessions(
        request: Request,
        user: CurrentUser = Depends(require_current_password),
        _csrf: None = Depends(verify_csrf),
    ):
        revoked = []
        for sid, record in request.app.state.sessions.items():
            if sid != user.session_id and record.get("user") == user.email:
                _revoke(record)
                revoked.append(sid)
        return {"revoked": revoked}

    @router.post("/sessions/{session_id}/trust")
    async def trust_session(
        session_id: str,
        request: Request,
        user: CurrentUser = Depends(require_current_password),
        _csrf: None = Depends(verify_csrf),
    ):
        record = request.app.state.sessions.get(session_id)
        if record is None or record.get("user") != user.email:
            raise api_error(status.HTTP_404_NOT_FOUND, "Session not found")
        record["trusted"] = True
        return {"trusted": session_id}

    return router


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if isinstance(exc.detail, dict):
        body = exc.detail
    else:
        body = {"message": str(exc.detail)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


# --- FastAPI App Setup ---
def create_app(settings: Optional[Settings] = None, clock: typing.Callable[[], float] = time.time) -> FastAPI:
    settings = settings or default_settings
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Auth Service API",
        description="Reference server for the session layer: CSRF tokens, refreshable access cookies, idle timeout.",
        version="0.1.0"
    )
    app.state.settings = settings
    app.state.sessions = {}
    app.state.clock = clock

    app.add_middleware(SessionMiddlewareCustom)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.include_router(build_router(settings.API_PREFIX))

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "auth_service_starting",
            accounts=len(settings.AUTH_ACCOUNTS),
            access_ttl=settings.ACCESS_TOKEN_TTL_SECONDS,
            idle_timeout=settings.IDLE_TIMEOUT_SECONDS,
        )
        if settings.AUTH_JWT_SECRET == DEV_JWT_SECRET:
            logger.warning("auth_jwt_secret_is_dev_default")

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("auth_service.main:app", host="127.0.0.1", port=5000)
