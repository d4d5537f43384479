"""Chrome DevTools Protocol transport.

One WebSocket per connection, drained by a daemon reader thread:
- command responses resolve the Future registered by ``send``;
- events resolve one-shot waiters (``expect``) inline on the reader thread and
  are handed to subscribers on a small worker pool, so a subscriber may itself
  issue commands without blocking the reader.
"""

from __future__ import annotations

import json
import logging
import socket
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import suppress
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

import websocket

from .errors import CdpError

_LOGGER = logging.getLogger("chrome_shell.cdp")

EventHandler = Callable[[dict[str, Any]], None]
EventPredicate = Callable[[dict[str, Any]], bool]


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from a DevTools HTTP endpoint (/json/version, /json/list)."""
    try:
        req = Request(url, headers={"User-Agent": "chrome-shell"})
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (OSError, URLError, ValueError) as exc:
        raise CdpError(str(exc)) from exc


class CdpConnection:
    """CDP WebSocket connection with a background reader."""

    def __init__(self, ws_url: str, timeout: float = 5.0, *, name: str = "cdp", max_workers: int = 4) -> None:
        try:
            self.ws = websocket.create_connection(ws_url, timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise CdpError(f"Failed to connect to {ws_url}: {exc}") from exc
        self.ws_url = ws_url
        self.timeout = timeout
        self.name = name

        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._next_id = 1
        self._pending: dict[int, Future] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._waiters: list[tuple[str, EventPredicate | None, Future]] = []
        self._disconnect_handlers: list[Callable[[], None]] = []
        self._closing = threading.Event()
        self._disconnected = threading.Event()

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-handler")
        self._reader = threading.Thread(target=self._run, name=f"{name}-reader", daemon=True)
        # Short socket timeout so the reader notices close() promptly.
        self.ws.settimeout(0.5)
        self._reader.start()

    @property
    def connected(self) -> bool:
        return not self._disconnected.is_set()

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    def send(self, method: str, params: dict[str, Any] | None = None, *, timeout: float | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its result."""
        fut: Future = Future()
        with self._lock:
            if self._disconnected.is_set():
                raise CdpError(f"CDP connection closed ({method})")
            msg_id = self._next_id
            self._next_id += 1
            self._pending[msg_id] = fut

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        try:
            with self._send_lock:
                self.ws.send(json.dumps(msg))
            return fut.result(timeout=self.timeout if timeout is None else timeout)
        except FutureTimeoutError as exc:
            raise CdpError(f"CDP response timed out ({method})") from exc
        except CdpError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CdpError(str(exc)) from exc
        finally:
            with self._lock:
                self._pending.pop(msg_id, None)

    # ─────────────────────────────────────────────────────────────────────────
    # Events
    # ─────────────────────────────────────────────────────────────────────────

    def subscribe(self, event_name: str, handler: EventHandler) -> Callable[[], None]:
        """Call handler(params) for every event_name; returns an unsubscribe function."""
        with self._lock:
            self._handlers.setdefault(event_name, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_name) or []
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def on_disconnect(self, handler: Callable[[], None]) -> None:
        """Call handler() once if the connection drops (not on close())."""
        with self._lock:
            self._disconnect_handlers.append(handler)

    def expect(self, event_name: str, predicate: EventPredicate | None = None) -> Future:
        """Register a one-shot waiter. Register before the command that triggers the event."""
        fut: Future = Future()
        with self._lock:
            if self._disconnected.is_set():
                fut.set_exception(CdpError(f"CDP connection closed ({event_name})"))
                return fut
            self._waiters.append((event_name, predicate, fut))
        return fut

    def wait(self, fut: Future, timeout: float) -> dict[str, Any] | None:
        """Wait for a Future from expect(); None on timeout."""
        try:
            return fut.result(timeout=timeout)
        except FutureTimeoutError:
            fut.cancel()
            with self._lock:
                self._waiters = [w for w in self._waiters if w[2] is not fut]
            return None

    def wait_for_event(
        self, event_name: str, timeout: float = 10.0, predicate: EventPredicate | None = None
    ) -> dict[str, Any] | None:
        return self.wait(self.expect(event_name, predicate), timeout)

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def abort(self) -> None:
        """Hard break of the underlying socket.

        websocket-client close() takes internal locks and can hang while a recv()
        is in flight; shutting down the raw socket is the reliable breaker.
        """
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(OSError):
                sock.close()

    def close(self) -> None:
        if self._closing.is_set():
            return
        self._closing.set()
        self.abort()
        self._executor.shutdown(wait=False)
        if threading.current_thread() is not self._reader:
            self._reader.join(timeout=1.0)

    # ─────────────────────────────────────────────────────────────────────────
    # Reader
    # ─────────────────────────────────────────────────────────────────────────

    def _run(self) -> None:
        try:
            while not self._closing.is_set():
                try:
                    raw = self.ws.recv()
                except websocket.WebSocketTimeoutException:
                    continue
                except Exception as exc:  # noqa: BLE001
                    msg = str(exc).lower()
                    if isinstance(exc, TimeoutError) or "timed out" in msg:
                        continue
                    if not self._closing.is_set():
                        _LOGGER.debug("cdp_disconnected name=%s reason=%s", self.name, exc)
                    break

                if not raw:
                    if not getattr(self.ws, "connected", True):
                        break
                    continue

                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(data, dict):
                    self._dispatch(data)
        finally:
            self._on_lost()

    def _dispatch(self, data: dict[str, Any]) -> None:
        if "id" in data:
            with self._lock:
                fut = self._pending.pop(data.get("id"), None)
            if fut is None or fut.done():
                return
            if "error" in data:
                fut.set_exception(CdpError(str(data["error"])))
            else:
                result = data.get("result")
                fut.set_result(result if isinstance(result, dict) else {})
            return

        method = data.get("method")
        if not isinstance(method, str):
            return
        params = data.get("params")
        if not isinstance(params, dict):
            params = {}

        matched: list[Future] = []
        with self._lock:
            keep: list[tuple[str, EventPredicate | None, Future]] = []
            for name, predicate, fut in self._waiters:
                if fut.done():
                    continue
                if name == method and self._matches(predicate, params):
                    matched.append(fut)
                else:
                    keep.append((name, predicate, fut))
            self._waiters = keep
            handlers = list(self._handlers.get(method) or ())

        for fut in matched:
            with suppress(Exception):
                fut.set_result(params)
        for handler in handlers:
            self._submit(handler, params)

    @staticmethod
    def _matches(predicate: EventPredicate | None, params: dict[str, Any]) -> bool:
        if predicate is None:
            return True
        try:
            return bool(predicate(params))
        except Exception:  # noqa: BLE001
            _LOGGER.exception("cdp_predicate_failed")
            return False

    def _submit(self, fn: Callable[..., None], *args: Any) -> None:
        def _invoke() -> None:
            try:
                fn(*args)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("cdp_handler_failed name=%s", self.name)

        try:
            self._executor.submit(_invoke)
        except RuntimeError:
            # Executor already shut down by close().
            _LOGGER.debug("cdp_handler_dropped name=%s", self.name)

    def _on_lost(self) -> None:
        with self._lock:
            self._disconnected.set()
            pending = list(self._pending.values())
            self._pending.clear()
            waiters = [fut for _, _, fut in self._waiters]
            self._waiters = []
            handlers = [] if self._closing.is_set() else list(self._disconnect_handlers)

        err = CdpError("CDP connection closed")
        for fut in [*pending, *waiters]:
            if not fut.done():
                with suppress(Exception):
                    fut.set_exception(err)
        for handler in handlers:
            self._submit(handler)


__all__ = ["CdpConnection", "EventHandler", "http_get_json"]
