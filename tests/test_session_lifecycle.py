from __future__ import annotations

import asyncio
import base64
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any

import pytest


class FakeLauncher:
    def __init__(self, *, fail_start: Exception | None = None, fail_first_page: Exception | None = None) -> None:
        self.process = object()
        self.started_with: list[str] | None = None
        self.start_calls = 0
        self.stop_calls = 0
        self.cleanup_calls = 0
        self._fail_start = fail_start
        self._fail_first_page = fail_first_page

    def start(self, args: list[str]) -> object:
        self.start_calls += 1
        self.started_with = list(args)
        if self._fail_start is not None:
            raise self._fail_start
        return self.process

    def first_page(self) -> dict[str, Any]:
        if self._fail_first_page is not None:
            raise self._fail_first_page
        return {"id": "tab-1", "type": "page", "webSocketDebuggerUrl": "ws://127.0.0.1/devtools/page/tab-1"}

    def browser_ws_url(self) -> str:
        return "ws://127.0.0.1/devtools/browser/b"

    def stop(self) -> bool:
        self.stop_calls += 1
        return True

    def cleanup(self) -> None:
        self.cleanup_calls += 1


class FakeConnection:
    """Synchronous CDP stand-in. Page.navigate issues the document request and fires DOMContentLoaded."""

    def __init__(
        self,
        ws_url: str,
        timeout: float = 5.0,
        *,
        name: str = "cdp",
        fire_dom_loaded: bool = True,
        drop_on_navigate: bool = False,
    ) -> None:
        self.ws_url = ws_url
        self.name = name
        self.sent: list[tuple[str, dict[str, Any] | None]] = []
        self.handlers: dict[str, list[Any]] = {}
        self.disconnect_handlers: list[Any] = []
        self.waiters: list[tuple[str, Future]] = []
        self.closed = False
        self.fire_dom_loaded = fire_dom_loaded
        self.drop_on_navigate = drop_on_navigate

    def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        self.sent.append((method, params))
        if method == "Page.navigate":
            url = (params or {}).get("url", "")
            self.emit("Fetch.requestPaused", {"requestId": "nav-1", "request": {"url": url}, "resourceType": "Document"})
            if self.drop_on_navigate:
                self.drop()
            elif self.fire_dom_loaded:
                self.emit("Page.domContentEventFired", {"timestamp": 1.0})
            return {"frameId": "f1"}
        return {}

    def subscribe(self, event_name: str, handler: Any) -> Any:
        self.handlers.setdefault(event_name, []).append(handler)
        return lambda: self.handlers[event_name].remove(handler)

    def on_disconnect(self, handler: Any) -> None:
        self.disconnect_handlers.append(handler)

    def expect(self, event_name: str, predicate: Any = None) -> Future:
        fut: Future = Future()
        self.waiters.append((event_name, fut))
        return fut

    def wait(self, fut: Future, timeout: float) -> dict[str, Any] | None:
        return fut.result(timeout=0) if fut.done() else None

    def emit(self, event_name: str, params: dict[str, Any]) -> None:
        for name, fut in list(self.waiters):
            if name == event_name and not fut.done():
                fut.set_result(params)
                self.waiters.remove((name, fut))
        for handler in list(self.handlers.get(event_name, [])):
            handler(params)

    def drop(self) -> None:
        for handler in list(self.disconnect_handlers):
            handler()

    def close(self) -> None:
        self.closed = True

    def methods(self) -> list[str]:
        return [m for m, _ in self.sent]


class Connector:
    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.by_name: dict[str, FakeConnection] = {}

    def __call__(self, ws_url: str, timeout: float = 5.0, *, name: str = "cdp") -> FakeConnection:
        conn = FakeConnection(ws_url, timeout, name=name, **self.kwargs)
        self.by_name[name] = conn
        return conn


@pytest.fixture(autouse=True)
def _no_active_session(monkeypatch: pytest.MonkeyPatch) -> None:
    import chrome_shell.session as session_mod

    monkeypatch.setattr(session_mod, "_active_session", None)


@pytest.fixture()
def site(tmp_path: Path) -> Path:
    (tmp_path / "Index.html").write_text("<h1>home</h1>", encoding="utf-8")
    return tmp_path


def _static_options(root: Path, **kwargs: Any):  # noqa: ANN202
    from chrome_shell.config import ShellOptions

    return ShellOptions(home_url="Index.html", content_folder=str(root), **kwargs)


def test_static_launch_arms_interception_before_navigation(site: Path) -> None:
    from chrome_shell.launch_args import STATIC_PLACEHOLDER
    from chrome_shell.session import launch

    launcher = FakeLauncher()
    connector = Connector()
    session = launch(_static_options(site), launcher=launcher, connect=connector)

    tab = connector.by_name["tab"]
    methods = tab.methods()
    assert methods.index("Fetch.enable") < methods.index("Page.navigate")
    assert "Fetch.requestPaused" in tab.handlers
    assert ("Page.navigate", {"url": "http://staticapp/Index.html"}) in tab.sent

    fulfilled = [p for m, p in tab.sent if m == "Fetch.fulfillRequest"]
    assert len(fulfilled) == 1
    assert base64.b64decode(fulfilled[0]["body"]) == b"<h1>home</h1>"

    browser = connector.by_name["browser"]
    assert ("Target.setDiscoverTargets", {"discover": True}) in browser.sent
    assert f"--app={STATIC_PLACEHOLDER}" in (launcher.started_with or [])
    assert session.is_started
    assert session.tab_id == "tab-1"


def test_hosted_launch_installs_no_interception() -> None:
    from chrome_shell.config import ShellOptions
    from chrome_shell.session import launch

    launcher = FakeLauncher()
    connector = Connector()
    session = launch(ShellOptions(home_url="Home/Index", port=5000), launcher=launcher, connect=connector)

    tab = connector.by_name["tab"]
    assert session.home_url == "http://localhost:5000/Home/Index"
    assert "Fetch.enable" not in tab.methods()
    assert "Page.navigate" not in tab.methods()
    assert "Fetch.requestPaused" not in tab.handlers
    assert session.request_handler is None
    assert "--app=http://localhost:5000/Home/Index" in (launcher.started_with or [])


def test_second_launch_returns_active_session_unchanged(site: Path) -> None:
    from chrome_shell.session import active_session, launch

    first_launcher = FakeLauncher()
    session = launch(_static_options(site), launcher=first_launcher, connect=Connector())
    process, tab_id = session.process, session.tab_id

    second_launcher = FakeLauncher()
    again = launch(_static_options(site), launcher=second_launcher, connect=Connector())

    assert again is session
    assert active_session() is session
    assert session.process is process
    assert session.tab_id == tab_id
    assert second_launcher.start_calls == 0


def test_double_close_notification_fires_callback_once(site: Path) -> None:
    from chrome_shell.session import launch

    calls: list[int] = []
    launcher = FakeLauncher()
    connector = Connector()
    session = launch(_static_options(site), lambda: calls.append(1), launcher=launcher, connect=connector)

    browser = connector.by_name["browser"]
    browser.emit("Target.targetDestroyed", {"targetId": "tab-1"})
    browser.emit("Target.targetDestroyed", {"targetId": "tab-1"})
    connector.by_name["tab"].drop()

    assert calls == [1]
    assert launcher.stop_calls == 1
    assert session.is_closed
    assert session.wait_closed(0)


def test_concurrent_close_notifications_fire_callback_once(site: Path) -> None:
    from chrome_shell.session import launch

    calls: list[int] = []
    lock = threading.Lock()

    def on_closed() -> None:
        with lock:
            calls.append(1)

    launcher = FakeLauncher()
    session = launch(_static_options(site), on_closed, launcher=launcher, connect=Connector())

    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        session.notify_closed("tab_closed")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5.0)

    assert calls == [1]
    assert launcher.stop_calls == 1


def test_other_target_destroyed_is_ignored(site: Path) -> None:
    from chrome_shell.session import launch

    calls: list[int] = []
    connector = Connector()
    session = launch(_static_options(site), lambda: calls.append(1), launcher=FakeLauncher(), connect=connector)

    connector.by_name["browser"].emit("Target.targetDestroyed", {"targetId": "some-worker"})

    assert calls == []
    assert session.is_started


def test_callback_sees_fully_torn_down_session(site: Path) -> None:
    from chrome_shell.session import active_session, launch

    observed: dict[str, Any] = {}
    launcher = FakeLauncher()
    connector = Connector()
    holder: dict[str, Any] = {}

    def on_closed() -> None:
        sess = holder["session"]
        observed["tab_id"] = sess.tab_id
        observed["process"] = sess.process
        observed["tab_conn"] = sess.tab_conn
        observed["active"] = active_session()
        observed["stopped"] = launcher.stop_calls

    holder["session"] = launch(_static_options(site), on_closed, launcher=launcher, connect=connector)
    holder["session"].close()

    assert observed == {"tab_id": None, "process": None, "tab_conn": None, "active": None, "stopped": 1}
    assert connector.by_name["tab"].closed
    assert connector.by_name["browser"].closed
    assert launcher.cleanup_calls == 1


def test_launch_after_close_starts_new_session(site: Path) -> None:
    from chrome_shell.session import launch

    first = launch(_static_options(site), launcher=FakeLauncher(), connect=Connector())
    first.close()
    second = launch(_static_options(site), launcher=FakeLauncher(), connect=Connector())

    assert second is not first
    assert second.is_started


def test_launch_failure_propagates_and_cleans_up(site: Path) -> None:
    from chrome_shell.errors import LaunchError
    from chrome_shell.session import active_session, launch

    calls: list[int] = []
    launcher = FakeLauncher(fail_first_page=LaunchError("Browser has no open tabs"))

    with pytest.raises(LaunchError, match="no open tabs"):
        launch(_static_options(site), lambda: calls.append(1), launcher=launcher, connect=Connector())

    assert calls == []
    assert active_session() is None
    assert launcher.stop_calls == 1
    assert launcher.cleanup_calls == 1


def test_process_start_failure_propagates(site: Path) -> None:
    from chrome_shell.errors import LaunchError
    from chrome_shell.session import active_session, launch

    launcher = FakeLauncher(fail_start=LaunchError("Failed to start browser"))

    with pytest.raises(LaunchError):
        launch(_static_options(site), launcher=launcher, connect=Connector())
    assert active_session() is None


def test_navigation_timeout_fails_launch(site: Path) -> None:
    from chrome_shell.errors import CdpError
    from chrome_shell.session import active_session, launch

    launcher = FakeLauncher()
    with pytest.raises(CdpError, match="timed out"):
        launch(
            _static_options(site, navigation_timeout=0.1),
            launcher=launcher,
            connect=Connector(fire_dom_loaded=False),
        )
    assert active_session() is None
    assert launcher.stop_calls == 1


def test_window_closed_during_startup_raises_without_callback(site: Path) -> None:
    from chrome_shell.errors import ShellError
    from chrome_shell.session import active_session, launch

    calls: list[int] = []
    launcher = FakeLauncher()
    connector = Connector(drop_on_navigate=True)

    with pytest.raises(ShellError, match="closed during navigation"):
        launch(
            _static_options(site, navigation_timeout=0.1),
            lambda: calls.append(1),
            launcher=launcher,
            connect=connector,
        )

    assert calls == []
    assert active_session() is None
    assert launcher.stop_calls == 1
    assert launcher.cleanup_calls == 1
    assert connector.by_name["tab"].closed


def test_navigate_after_close_is_rejected(site: Path) -> None:
    from chrome_shell.errors import ShellError
    from chrome_shell.session import launch

    session = launch(_static_options(site), launcher=FakeLauncher(), connect=Connector())
    session.close()

    with pytest.raises(ShellError):
        session.navigate("http://staticapp/Other.html")


def test_launch_async_returns_session(site: Path) -> None:
    from chrome_shell.session import launch_async

    session = asyncio.run(launch_async(_static_options(site), launcher=FakeLauncher(), connect=Connector()))

    assert session.is_started
    session.close()
    assert session.is_closed
