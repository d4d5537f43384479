"""App-window session: one browser process, one tab, one close notification.

Architecture:
- launch(): process-wide guard; returns the active session when one exists
- ShellSession.start(): spawn browser, take the first tab, arm interception
  (static mode) before navigating home
- ShellSession.notify_closed(): one-shot latch shared by every close source
  (tab destroyed, connection lost, close()); tears down, then calls back
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
import threading
from collections.abc import Callable
from typing import Any

from .cdp import CdpConnection
from .config import ShellOptions
from .errors import CdpError, ShellError
from .interceptor import StaticRequestHandler
from .launch_args import build_args
from .launcher import BrowserLauncher
from .target import ResolvedTarget, resolve_target

_LOGGER = logging.getLogger("chrome_shell.session")

CloseCallback = Callable[[], None]
ConnectionFactory = Callable[..., CdpConnection]

_active_lock = threading.RLock()
_active_session: ShellSession | None = None


class ShellSession:
    """A live app window.

    Create through launch(); the session owns the browser process, the
    browser-level and tab-level CDP connections and the single tab id, and
    releases all of them together.
    """

    def __init__(
        self,
        options: ShellOptions,
        on_closed: CloseCallback | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        connect: ConnectionFactory = CdpConnection,
    ) -> None:
        self.options = options
        self.target: ResolvedTarget = resolve_target(options)
        self.launcher = launcher if launcher is not None else BrowserLauncher(options)
        self._connect = connect
        self._on_closed = on_closed

        self.process: subprocess.Popen | None = None
        self.browser_conn: CdpConnection | None = None
        self.tab_conn: CdpConnection | None = None
        self.tab_id: str | None = None
        self.request_handler: StaticRequestHandler | None = None

        self._close_lock = threading.Lock()
        self._started = False
        self._closing = threading.Event()
        self._closed = threading.Event()

    def __enter__(self) -> ShellSession:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def home_url(self) -> str:
        return self.target.home_url

    @property
    def is_started(self) -> bool:
        return self._started and not self._closing.is_set()

    @property
    def is_closed(self) -> bool:
        return self._closing.is_set()

    # ─────────────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        args = build_args(self.options, self.target)
        self.process = self.launcher.start(args)

        page = self.launcher.first_page()
        self.tab_id = str(page.get("id") or "")

        self.browser_conn = self._connect(self.launcher.browser_ws_url(), name="browser")
        self.browser_conn.on_disconnect(lambda: self.notify_closed("browser_disconnected"))
        self.browser_conn.subscribe("Target.targetDestroyed", self._on_target_destroyed)
        self.browser_conn.send("Target.setDiscoverTargets", {"discover": True})

        self.tab_conn = self._connect(str(page["webSocketDebuggerUrl"]), name="tab")
        self.tab_conn.on_disconnect(lambda: self.notify_closed("tab_disconnected"))
        self.tab_conn.send("Page.enable")

        if self.target.is_static:
            self._arm_interception(self.tab_conn)
            self.navigate(self.target.home_url)

        with self._close_lock:
            if self._closing.is_set():
                raise ShellError("Session closed during startup")
            self._started = True
        _LOGGER.info("session_started mode=%s home=%s", "static" if self.target.is_static else "hosted", self.home_url)

    def _arm_interception(self, conn: CdpConnection) -> None:
        handler = StaticRequestHandler(conn, self.target, missing_file_policy=self.options.missing_file_policy)
        conn.subscribe("Fetch.requestPaused", handler)
        conn.send("Fetch.enable", {"patterns": [{"urlPattern": "*", "requestStage": "Request"}]})
        self.request_handler = handler

    def navigate(self, url: str, *, wait: bool = True, timeout: float | None = None) -> str:
        """Navigate the tab, waiting for DOMContentLoaded unless wait=False."""
        conn = self._require_tab()
        limit = self.options.navigation_timeout if timeout is None else timeout
        try:
            loaded = conn.expect("Page.domContentEventFired") if wait else None
            result = conn.send("Page.navigate", {"url": url})
            if result.get("errorText"):
                raise CdpError(f"Navigation to {url} failed: {result['errorText']}")
            arrived = conn.wait(loaded, limit) if loaded is not None else {}
        except CdpError:
            if self._closing.is_set():
                raise ShellError("Session closed during navigation") from None
            raise
        if arrived is None:
            if self._closing.is_set():
                raise ShellError("Session closed during navigation")
            raise CdpError(f"Navigation to {url} timed out after {limit}s")
        return url

    def _require_tab(self) -> CdpConnection:
        conn = self.tab_conn
        if conn is None or self._closing.is_set():
            raise ShellError("Session is not active")
        return conn

    # ─────────────────────────────────────────────────────────────────────────
    # Close / teardown
    # ─────────────────────────────────────────────────────────────────────────

    def _on_target_destroyed(self, params: dict[str, Any]) -> None:
        if self.tab_id and params.get("targetId") == self.tab_id:
            self.notify_closed("tab_closed")

    def notify_closed(self, reason: str = "tab_closed") -> bool:
        """Handle a close notification. Only the first one has any effect.

        The callback fires only for a session that finished starting.
        """
        return self._shutdown(reason, fire_callback=True)

    def close(self) -> None:
        """Close the window from the host side; the close callback still fires once."""
        self.notify_closed("closed_by_host")

    def abort(self) -> None:
        """Tear down after a failed start without calling back."""
        self._shutdown("launch_failed", fire_callback=False)

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the session is fully torn down."""
        return self._closed.wait(timeout)

    async def wait_closed_async(self) -> None:
        await asyncio.to_thread(self._closed.wait)

    def _shutdown(self, reason: str, *, fire_callback: bool) -> bool:
        with self._close_lock:
            if self._closing.is_set():
                return False
            self._closing.set()
            callback, self._on_closed = self._on_closed, None
            # Before start() completes, launch() reports the failure instead.
            fire_callback = fire_callback and self._started

        _LOGGER.info("session_closed reason=%s", reason)
        try:
            self._teardown()
        finally:
            self._closed.set()
        if fire_callback and callback is not None:
            callback()
        return True

    def _teardown(self) -> None:
        tab_conn, self.tab_conn = self.tab_conn, None
        browser_conn, self.browser_conn = self.browser_conn, None
        self.tab_id = None
        self.request_handler = None
        for conn in (tab_conn, browser_conn):
            if conn is not None:
                conn.close()
        try:
            self.launcher.stop()
        finally:
            self.process = None
            self.launcher.cleanup()
            _release(self)


def _release(session: ShellSession) -> None:
    global _active_session
    with _active_lock:
        if _active_session is session:
            _active_session = None


def active_session() -> ShellSession | None:
    with _active_lock:
        return _active_session


def launch(options: ShellOptions | None = None, on_closed: CloseCallback | None = None, **kwargs: Any) -> ShellSession:
    """Open the app window, or return the already-active session unchanged.

    Blocks until the browser is up and, in static mode, until the home page
    has fired DOMContentLoaded. Startup errors propagate after cleanup.
    """
    global _active_session
    with _active_lock:
        current = _active_session
        if current is not None and not current.is_closed:
            _LOGGER.info("launch_ignored reason=session_active")
            return current

        session = ShellSession(options or ShellOptions.from_env(), on_closed, **kwargs)
        _active_session = session
        try:
            session.start()
        except BaseException:
            session.abort()
            raise
        return session


async def launch_async(
    options: ShellOptions | None = None, on_closed: CloseCallback | None = None, **kwargs: Any
) -> ShellSession:
    return await asyncio.to_thread(launch, options, on_closed, **kwargs)


__all__ = ["ShellSession", "active_session", "launch", "launch_async"]
