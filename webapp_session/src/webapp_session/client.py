# src/webapp_session/client.py

import dataclasses
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog

from .auth_state import AuthState, FileUserStore
from .config import Settings, settings as default_settings
from .errors import FailureKind, classify_failure
from .host import Navigator, Notifier
from .singleflight import SingleFlight
from .token_cache import CsrfTokenCache

logger = structlog.get_logger(__name__)

ResponseListener = Callable[[httpx.Response], None]

PASSWORD_EXPIRED_NOTICE = "Your password has expired. Please change your password to continue."
IDLE_TIMEOUT_FALLBACK_MESSAGE = "Session expired due to inactivity."


@dataclasses.dataclass
class _Call:
    """One logical request, kept across its resend."""
    method: str
    url: str
    kwargs: Dict[str, Any]
    headers: Dict[str, str] = dataclasses.field(default_factory=dict)
    # Set before any resend and never reset: at most one automatic recovery per call
    retried: bool = False


class SessionClient:
    """
    HTTP client for the host application's API that keeps the session alive.

    Outbound, state-mutating requests get the CSRF token attached (fetched first
    if the cache is empty). Inbound, failures are classified and recovered at
    most once per call: expired access credentials are refreshed through a
    single shared refresh, stale CSRF tokens are re-fetched, idle timeouts and
    failed refreshes end the session. Anything else reaches the caller as the
    original `httpx.HTTPStatusError`.

    Without an explicit `auth_state`, the current user is kept in
    `SESSION_USER_STORE_PATH` when that setting is present.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        auth_state: Optional[AuthState] = None,
        navigator: Optional[Navigator] = None,
        notifier: Optional[Notifier] = None,
        token_cache: Optional[CsrfTokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or default_settings
        if auth_state is None:
            store_path = self.settings.SESSION_USER_STORE_PATH
            auth_state = AuthState(FileUserStore(store_path) if store_path else None)
        self.auth_state = auth_state
        self.navigator = navigator or Navigator()
        self.notifier = notifier or Notifier()
        self.token_cache = token_cache or CsrfTokenCache()
        self._refresh: SingleFlight[None] = SingleFlight("refresh")
        self._csrf_fetch: SingleFlight[Optional[str]] = SingleFlight("csrf-token")
        self._response_listeners: List[ResponseListener] = []
        self._http = httpx.AsyncClient(
            base_url=str(self.settings.API_BASE_URL),
            timeout=self.settings.REQUEST_TIMEOUT_SECONDS,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    async def __aenter__(self) -> "SessionClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def refresh_count(self) -> int:
        return self._refresh.started

    @property
    def csrf_fetch_count(self) -> int:
        return self._csrf_fetch.started

    def add_response_listener(self, listener: ResponseListener) -> Callable[[], None]:
        """`listener` is called with every successful response."""
        self._response_listeners.append(listener)

        def remove() -> None:
            if listener in self._response_listeners:
                self._response_listeners.remove(listener)

        return remove

    # --- Public request API ---

    async def request(self, method: str, url: Any, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        return await self._dispatch(_Call(method=method.upper(), url=str(url), kwargs=kwargs, headers=headers))

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)

    # --- Session operations shared by all callers ---

    async def fetch_csrf_token(self) -> Optional[str]:
        """Fetch a new CSRF token into the cache. Concurrent callers share one fetch."""
        return await self._csrf_fetch.run(self._fetch_csrf_token)

    async def refresh_session(self) -> None:
        """
        Refresh the access credential. Concurrent callers share one refresh call.
        On failure the session is ended before the error reaches any caller.
        """
        await self._refresh.run(self._perform_refresh)

    async def _fetch_csrf_token(self) -> Optional[str]:
        response = await self.get(self.settings.CSRF_TOKEN_PATH)
        try:
            data = response.json()
        except ValueError:
            # e.g. a maintenance page served with 200
            data = None
        token = data.get(self.settings.CSRF_TOKEN_FIELD) if isinstance(data, dict) else None
        if token:
            self.token_cache.set(str(token))
        else:
            logger.warning("csrf_token_missing_in_response", field=self.settings.CSRF_TOKEN_FIELD)
        return self.token_cache.get()

    async def _perform_refresh(self) -> None:
        try:
            await self.post(self.settings.REFRESH_PATH)
        except httpx.HTTPError as e:
            logger.warning("session_refresh_failed", error=str(e))
            self._end_session()
            raise
        logger.info("session_refreshed")

    # --- Interceptor chain ---

    async def _dispatch(self, call: _Call) -> httpx.Response:
        headers = await self._outbound(call)
        try:
            response = await self._http.request(call.method, call.url, headers=headers, **call.kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            return await self._inbound(call, e)

        for listener in list(self._response_listeners):
            listener(response)
        return response

    async def _outbound(self, call: _Call) -> Dict[str, str]:
        # Rebuilt from the caller headers on every send, so a resend gets the current token
        headers = dict(call.headers)
        if call.method in self.settings.SAFE_METHODS:
            return headers

        token = self.token_cache.get()
        if token is None and not self._is_meta_route(call.url):
            try:
                token = await self.fetch_csrf_token()
            except httpx.HTTPError as e:
                # Sent without a token; the server's CSRF rejection is recovered inbound
                logger.warning("csrf_token_bootstrap_failed", url=call.url, error=str(e))
        if token:
            headers[self.settings.CSRF_HEADER_NAME] = token
        return headers

    async def _inbound(self, call: _Call, error: httpx.HTTPStatusError) -> httpx.Response:
        if call.retried:
            raise error

        failure = classify_failure(error.response, self.settings)
        log = logger.bind(method=call.method, url=call.url, status=failure.status_code, kind=failure.kind.value)

        if failure.kind is FailureKind.UNAUTHORIZED_IDLE_TIMEOUT:
            log.warning("session_idle_timeout")
            self._end_session(message=failure.message or IDLE_TIMEOUT_FALLBACK_MESSAGE)
            raise error

        if failure.kind is FailureKind.UNAUTHORIZED:
            if self._is_auth_route(call.url):
                raise error
            call.retried = True
            log.info("session_refresh_needed")
            try:
                await self.refresh_session()
            except httpx.HTTPError as refresh_error:
                raise error from refresh_error
            return await self._dispatch(call)

        if failure.kind is FailureKind.FORBIDDEN_PASSWORD_EXPIRED:
            call.retried = True
            log.warning("password_expired")
            self._require_password_change()
            raise error

        if failure.kind is FailureKind.FORBIDDEN_CSRF_MISMATCH and not self._is_csrf_route(call.url):
            call.retried = True
            log.info("csrf_token_rejected")
            try:
                await self.fetch_csrf_token()
            except httpx.HTTPError as fetch_error:
                raise error from fetch_error
            return await self._dispatch(call)

        raise error

    # --- Session-terminal side effects ---

    def _end_session(self, message: Optional[str] = None) -> None:
        """
        Clear the current user and send the host to the login route.
        Several failing requests may get here for the same session; only the
        one that actually clears the user reaches the log, and the redirect is
        skipped once the host is already on an auth entry page.
        """
        if self.auth_state.clear_user():
            logger.warning("session_ended", reason=message or "refresh_failed")
        entry_routes = (self.settings.LOGIN_ROUTE, self.settings.REGISTER_ROUTE)
        if self.navigator.current_path not in entry_routes:
            self.navigator.redirect(self.settings.LOGIN_ROUTE, {"message": message} if message else None)

    def _require_password_change(self) -> None:
        if self.navigator.current_path == self.settings.CHANGE_PASSWORD_ROUTE:
            return
        self.notifier.notify(PASSWORD_EXPIRED_NOTICE, level="warning")
        self.navigator.redirect(self.settings.CHANGE_PASSWORD_ROUTE)

    # --- Route matching ---

    def _is_meta_route(self, url: str) -> bool:
        return any(route in url for route in self.settings.META_ROUTES)

    def _is_auth_route(self, url: str) -> bool:
        return self.settings.REFRESH_PATH in url or self.settings.LOGIN_PATH in url

    def _is_csrf_route(self, url: str) -> bool:
        return self.settings.CSRF_TOKEN_PATH in url
