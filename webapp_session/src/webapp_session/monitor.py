# src/webapp_session/monitor.py

import asyncio
import time
from typing import Callable, Optional, Set

import httpx
import structlog

from .api import AuthAPI
from .client import SessionClient
from .host import ActivityHub
from .session_data import SessionUser

logger = structlog.get_logger(__name__)

IDLE_LOGOUT_NOTICE = "Session expired. Please log in again."
IDLE_LOGOUT_MESSAGE = "Your session has expired."


class SessionMonitor:
    """
    Estimates session liveness locally and reconciles it with the server.

    Runs only while there is a current user: it starts when one is set and is
    torn down (activity listener removed, tick loop and probes cancelled) as
    soon as the user is cleared. Each tick first checks for idle logout, then
    sends a liveness probe if the server has not been heard from for a
    heartbeat interval. Probe failures are left to the client's interceptor
    chain; the monitor only schedules probes.
    """

    def __init__(
        self,
        client: SessionClient,
        activity: ActivityHub,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.settings = client.settings
        self.auth_state = client.auth_state
        self.activity = activity
        self.clock = clock
        self.auth_api = AuthAPI(client)

        self.last_activity = clock()
        self.last_heartbeat = clock()

        self._tick_task: Optional[asyncio.Task] = None
        self._probes: Set[asyncio.Task] = set()
        self._unsubscribe_activity: Optional[Callable[[], None]] = None
        self._unsubscribe_auth: Optional[Callable[[], None]] = None
        self._remove_response_listener: Optional[Callable[[], None]] = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None

    @property
    def pending_probes(self) -> Set[asyncio.Task]:
        return set(self._probes)

    # --- Lifecycle ---

    def attach(self) -> None:
        """Follow the auth state from now on. Must be called from the running event loop."""
        if self._unsubscribe_auth is None:
            self._unsubscribe_auth = self.auth_state.subscribe(self._on_auth_change)
        if self.auth_state.is_authenticated:
            self.start()

    def detach(self) -> None:
        if self._unsubscribe_auth is not None:
            self._unsubscribe_auth()
            self._unsubscribe_auth = None
        self.stop()

    def start(self) -> None:
        if self.running:
            return
        # Raises outside a running loop, before anything is armed
        loop = asyncio.get_running_loop()
        now = self.clock()
        self.last_activity = now
        self.last_heartbeat = now
        self._tick_task = loop.create_task(self._run())
        self._unsubscribe_activity = self.activity.subscribe(self.on_activity)
        self._remove_response_listener = self.client.add_response_listener(self._on_server_contact)
        logger.info(
            "session_monitor_started",
            idle_timeout=self.settings.SESSION_IDLE_TIMEOUT_SECONDS,
            heartbeat=self.settings.SESSION_HEARTBEAT_SECONDS,
        )

    def stop(self) -> None:
        """Cancel everything the monitor armed. Safe to call from inside a tick."""
        if self._unsubscribe_activity is not None:
            self._unsubscribe_activity()
            self._unsubscribe_activity = None
        if self._remove_response_listener is not None:
            self._remove_response_listener()
            self._remove_response_listener = None
        if self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = None
        for probe in list(self._probes):
            probe.cancel()
        self._probes.clear()
        logger.info("session_monitor_stopped")

    async def aclose(self) -> None:
        tasks = [t for t in (self._tick_task, *self._probes) if t is not None]
        self.detach()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _on_auth_change(self, user: Optional[SessionUser]) -> None:
        if user is None:
            self.stop()
        else:
            self.start()

    # --- Signals ---

    def on_activity(self, kind: str) -> None:
        if not self.running or kind not in self.settings.SESSION_ACTIVITY_EVENTS:
            return
        now = self.clock()
        self.last_activity = now
        if now - self.last_heartbeat > self.settings.SESSION_HEARTBEAT_SECONDS:
            self._schedule_probe()

    def _on_server_contact(self, response: httpx.Response) -> None:
        self.last_heartbeat = self.clock()

    # --- Tick ---

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.settings.SESSION_TICK_SECONDS)
            await self.tick()

    async def tick(self) -> None:
        if not self.running:
            return
        now = self.clock()

        if now - self.last_activity >= self.settings.SESSION_IDLE_TIMEOUT_SECONDS:
            self._idle_logout(now)
            return

        if now - self.last_heartbeat > self.settings.SESSION_HEARTBEAT_SECONDS and not self._probes:
            # The tick never waits on a probe
            self._schedule_probe()

    def _idle_logout(self, now: float) -> None:
        logger.warning("session_idle_logout", idle_for=now - self.last_activity)
        came_from = self.client.navigator.current_path
        if not self.auth_state.clear_user():
            return
        self.client.notifier.notify(IDLE_LOGOUT_NOTICE, level="error")
        self.client.navigator.redirect(
            self.settings.LOGIN_ROUTE,
            {"from": came_from, "message": IDLE_LOGOUT_MESSAGE},
        )

    # --- Liveness probe ---

    async def probe(self) -> None:
        """Ask the server who we are. Never raises; the client already handled the failure."""
        self.last_heartbeat = self.clock()
        try:
            await self.auth_api.get_current_user()
        except httpx.HTTPError as e:
            logger.info("session_probe_failed", error=str(e))
        except Exception as e:
            logger.error("session_probe_error", error=str(e))

    def _schedule_probe(self) -> None:
        # Marked now so a burst of activity schedules a single probe
        self.last_heartbeat = self.clock()
        task = asyncio.ensure_future(self.probe())
        self._probes.add(task)
        task.add_done_callback(self._probes.discard)
