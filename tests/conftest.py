from __future__ import annotations

import inspect
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio

from webapp_session.auth_state import AuthState
from webapp_session.client import SessionClient
from webapp_session.config import Settings
from webapp_session.host import Navigator, Notifier

BASE_URL = "http://testserver/api"


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def reply(status_code: int, body: Optional[Dict[str, Any]] = None) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status_code, json=body if body is not None else {})


class FakeApi:
    """
    Scriptable API behind httpx.MockTransport.
    Routes are keyed by (method, path without the /api prefix); handlers may be async.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], Any]] = {}
        self._tokens = (f"csrf-{n}" for n in itertools.count(1))
        self.route("GET", "/csrf-token", lambda request: httpx.Response(200, json={"csrfToken": next(self._tokens)}))

    def route(self, method: str, path: str, handler: Callable[[httpx.Request], Any]) -> None:
        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and self._path(r) == path]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        path = request.url.path
        return path[len("/api"):] if path.startswith("/api") else path

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, self._path(request)))
        if handler is None:
            return httpx.Response(404, json={"message": "Not found"})
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def settings() -> Settings:
    return Settings(API_BASE_URL=BASE_URL)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest_asyncio.fixture
async def client(settings: Settings, api: FakeApi):
    c = SessionClient(
        settings,
        auth_state=AuthState(),
        navigator=Navigator("/dashboard"),
        notifier=Notifier(),
        transport=httpx.MockTransport(api),
    )
    c.auth_state.set_user({"id": "u1", "email": "alice@example.com", "name": "Alice"})
    yield c
    await c.aclose()
