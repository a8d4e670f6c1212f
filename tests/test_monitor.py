from __future__ import annotations

import asyncio

import httpx
import pytest
import pytest_asyncio

from conftest import BASE_URL, FakeApi, FakeClock, reply
from webapp_session.auth_state import AuthState
from webapp_session.client import SessionClient
from webapp_session.config import Settings
from webapp_session.host import ActivityHub, Navigator, Notifier
from webapp_session.monitor import IDLE_LOGOUT_MESSAGE, IDLE_LOGOUT_NOTICE, SessionMonitor

USER = {"id": "u1", "email": "alice@example.com"}


@pytest_asyncio.fixture
async def monitored(settings: Settings, api: FakeApi, clock: FakeClock):
    api.route("GET", "/auth/me", reply(200, {"user": USER}))
    client = SessionClient(
        settings,
        auth_state=AuthState(),
        navigator=Navigator("/orders"),
        notifier=Notifier(),
        transport=httpx.MockTransport(api),
    )
    activity = ActivityHub()
    monitor = SessionMonitor(client, activity, clock=clock)
    monitor.attach()
    client.auth_state.set_user(USER)
    yield client, activity, monitor
    await monitor.aclose()
    await client.aclose()


async def _tick_at(monitor: SessionMonitor, clock: FakeClock, t: float) -> None:
    clock.now = t
    await monitor.tick()
    await asyncio.gather(*monitor.pending_probes)


@pytest.mark.asyncio
async def test_idle_logout_on_first_tick_past_timeout(monitored, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    clock.now = 5
    activity.emit("mousedown")

    t = 5
    while client.auth_state.is_authenticated and t < 2000:
        t += 5
        await _tick_at(monitor, clock, t)

    assert t == 905
    assert client.auth_state.current_user is None
    assert client.navigator.history == [("/login", {"from": "/orders", "message": IDLE_LOGOUT_MESSAGE})]
    assert client.notifier.messages == [("error", IDLE_LOGOUT_NOTICE)]
    assert not monitor.running


@pytest.mark.asyncio
async def test_activity_keeps_session_alive(monitored, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    for t in range(5, 3000, 5):
        clock.now = t
        if t % 600 == 0:
            activity.emit("keypress")
        await monitor.tick()
        for probe in monitor.pending_probes:
            await probe

    assert client.auth_state.is_authenticated
    assert client.navigator.history == []


@pytest.mark.asyncio
async def test_heartbeat_probes_without_any_activity(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    await _tick_at(monitor, clock, 10)
    await _tick_at(monitor, clock, 15)
    assert api.calls("GET", "/auth/me") == []

    await _tick_at(monitor, clock, 20)
    assert len(api.calls("GET", "/auth/me")) == 1

    await _tick_at(monitor, clock, 25)
    await _tick_at(monitor, clock, 30)
    assert len(api.calls("GET", "/auth/me")) == 1
    await _tick_at(monitor, clock, 40)
    assert len(api.calls("GET", "/auth/me")) == 2
    assert client.auth_state.is_authenticated


@pytest.mark.asyncio
async def test_activity_after_quiet_period_probes_immediately(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    clock.now = 10
    activity.emit("scroll")
    assert monitor.pending_probes == set()

    clock.now = 16
    activity.emit("scroll")
    activity.emit("mousemove")
    probes = monitor.pending_probes
    assert len(probes) == 1
    await asyncio.gather(*probes)

    assert len(api.calls("GET", "/auth/me")) == 1
    assert monitor.last_activity == 16


@pytest.mark.asyncio
async def test_unknown_activity_kinds_are_ignored(monitored, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    clock.now = 100
    activity.emit("resize")

    assert monitor.last_activity == 0


@pytest.mark.asyncio
async def test_idle_check_comes_before_heartbeat(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored

    await _tick_at(monitor, clock, 1000)

    assert api.calls("GET", "/auth/me") == []
    assert client.auth_state.current_user is None


@pytest.mark.asyncio
async def test_successful_requests_count_as_server_contact(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    api.route("GET", "/products", reply(200, {"items": []}))

    clock.now = 14
    await client.get("/products")
    await _tick_at(monitor, clock, 25)

    assert monitor.last_heartbeat == 14
    assert api.calls("GET", "/auth/me") == []


@pytest.mark.asyncio
async def test_clearing_the_user_tears_the_monitor_down(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    assert activity.subscriber_count == 1

    client.auth_state.clear_user()

    assert not monitor.running
    assert activity.subscriber_count == 0
    clock.now = 5000
    activity.emit("click")
    await monitor.tick()
    assert monitor.pending_probes == set()
    assert api.calls("GET", "/auth/me") == []
    assert client.navigator.history == []


@pytest.mark.asyncio
async def test_teardown_cancels_in_flight_probes(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    gate = asyncio.Event()

    async def slow_me(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return httpx.Response(200, json={"user": USER})

    api.route("GET", "/auth/me", slow_me)
    clock.now = 20
    activity.emit("click")
    (probe,) = monitor.pending_probes
    await asyncio.sleep(0)

    client.auth_state.clear_user()
    await asyncio.gather(probe, return_exceptions=True)

    assert probe.cancelled()
    assert monitor.pending_probes == set()


@pytest.mark.asyncio
async def test_login_rearms_with_fresh_timestamps(monitored, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    client.auth_state.clear_user()

    clock.now = 4000
    client.auth_state.set_user(USER)

    assert monitor.running
    assert activity.subscriber_count == 1
    assert monitor.last_activity == monitor.last_heartbeat == 4000
    await _tick_at(monitor, clock, 4005)
    assert client.auth_state.is_authenticated


@pytest.mark.asyncio
async def test_probe_failures_are_swallowed(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    api.route("GET", "/auth/me", reply(500, {"message": "boom"}))

    await _tick_at(monitor, clock, 20)

    assert len(api.calls("GET", "/auth/me")) == 1
    assert client.auth_state.is_authenticated
    assert monitor.running


@pytest.mark.asyncio
async def test_revoked_session_detected_by_probe_logs_out(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    api.route("GET", "/auth/me", reply(401, {"message": "Not authenticated"}))
    api.route("POST", "/auth/refresh", reply(401, {"message": "Refresh token invalid or revoked"}))

    clock.now = 20
    await monitor.probe()

    assert len(api.calls("POST", "/auth/refresh")) == 1
    assert client.auth_state.current_user is None
    assert client.navigator.history == [("/login", None)]
    assert not monitor.running


@pytest.mark.asyncio
async def test_background_loop_logs_out_idle_session(api: FakeApi) -> None:
    settings = Settings(
        API_BASE_URL=BASE_URL,
        SESSION_IDLE_TIMEOUT_SECONDS=0.05,
        SESSION_HEARTBEAT_SECONDS=0.02,
        SESSION_TICK_SECONDS=0.01,
    )
    api.route("GET", "/auth/me", reply(200, {"user": USER}))
    async with SessionClient(settings, transport=httpx.MockTransport(api)) as client:
        monitor = SessionMonitor(client, ActivityHub())
        client.auth_state.set_user(USER)
        monitor.attach()
        assert monitor.running

        for _ in range(100):
            if not client.auth_state.is_authenticated:
                break
            await asyncio.sleep(0.01)

        assert client.auth_state.current_user is None
        assert not monitor.running
        assert len(client.navigator.history) == 1
        await monitor.aclose()


@pytest.mark.asyncio
async def test_slow_heartbeat_does_not_hold_up_idle_check(monitored, api: FakeApi, clock: FakeClock) -> None:
    client, activity, monitor = monitored
    gate = asyncio.Event()

    async def slow_me(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return httpx.Response(200, json={"user": USER})

    api.route("GET", "/auth/me", slow_me)
    clock.now = 20
    await monitor.tick()
    (probe,) = monitor.pending_probes

    clock.now = 40
    await monitor.tick()
    assert monitor.pending_probes == {probe}

    clock.now = 900
    await monitor.tick()
    assert client.auth_state.current_user is None
    await asyncio.gather(probe, return_exceptions=True)
    assert probe.cancelled()


def test_user_set_outside_event_loop_arms_on_next_login(settings: Settings, api: FakeApi, clock: FakeClock) -> None:
    client = SessionClient(settings, transport=httpx.MockTransport(api))
    activity = ActivityHub()
    monitor = SessionMonitor(client, activity, clock=clock)
    monitor.attach()

    client.auth_state.set_user(USER)

    assert not monitor.running
    assert activity.subscriber_count == 0

    async def login_inside_loop() -> None:
        client.auth_state.set_user(USER)
        assert monitor.running
        assert activity.subscriber_count == 1
        await monitor.aclose()
        await client.aclose()

    asyncio.run(login_inside_loop())
