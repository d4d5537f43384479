from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any
from urllib.error import URLError
from urllib.request import urlopen

from .cdp import http_get_json
from .config import ShellOptions, expand_path
from .errors import CdpError, LaunchError
from .ports import allocate_port

_LOGGER = logging.getLogger("chrome_shell.launcher")

DEFAULT_CDP_PORT_START = 9222


def _tail_text(path: str | None, max_chars: int = 4000) -> str | None:
    if not path:
        return None
    try:
        p = Path(path)
        if not p.exists():
            return None
        raw = p.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    return raw if len(raw) <= max_chars else raw[-max_chars:]


class BrowserLauncher:
    """Owns the external browser process and its DevTools HTTP endpoint."""

    def __init__(self, options: ShellOptions) -> None:
        self.options = options
        self.process: subprocess.Popen | None = None
        self.cdp_port: int | None = None
        self.profile_path: str | None = None
        self.log_path: str | None = None
        self._work_dir: str | None = None

    @property
    def is_running(self) -> bool:
        proc = self.process
        return proc is not None and proc.poll() is None

    def build_command(self, args: list[str], *, cdp_port: int, profile_path: str) -> list[str]:
        flags = [
            f"--remote-debugging-port={cdp_port}",
            f"--user-data-dir={profile_path}",
            "--remote-allow-origins=*",
            *args,
            *self.options.extra_flags,
        ]
        return [self.options.resolve_executable(), *flags]

    def _prepare_dirs(self) -> str:
        self._work_dir = tempfile.mkdtemp(prefix="chrome-shell-")
        self.log_path = str(Path(self._work_dir) / "browser.log")
        if self.options.profile_path.strip():
            profile = expand_path(self.options.profile_path.strip())
            Path(profile).mkdir(parents=True, exist_ok=True)
            return profile
        return str(Path(self._work_dir) / "profile")

    def start(self, args: list[str]) -> subprocess.Popen:
        """Spawn the browser and wait until its DevTools endpoint answers."""
        if self.is_running:
            return self.process  # type: ignore[return-value]

        self.cdp_port = allocate_port(DEFAULT_CDP_PORT_START)
        self.profile_path = self._prepare_dirs()
        cmd = self.build_command(args, cdp_port=self.cdp_port, profile_path=self.profile_path)
        _LOGGER.info("browser_launch cdp_port=%s binary=%s", self.cdp_port, cmd[0])

        try:
            with open(self.log_path, "ab", buffering=0) as log_fh:  # type: ignore[arg-type]
                self.process = subprocess.Popen(
                    cmd,
                    stdout=log_fh,
                    stderr=log_fh,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except OSError as exc:
            self.cleanup()
            raise LaunchError(f"Failed to start browser {cmd[0]!r}: {exc}", command=cmd) from exc

        deadline = time.time() + max(0.5, float(self.options.launch_timeout))
        while time.time() < deadline:
            code = self.process.poll()
            if code is not None:
                tail = _tail_text(self.log_path)
                self.cleanup()
                raise LaunchError(f"Browser exited during startup (code {code})", command=cmd, log_tail=tail)
            if self.cdp_ready():
                _LOGGER.info("browser_ready pid=%s cdp_port=%s", self.process.pid, self.cdp_port)
                return self.process
            time.sleep(0.1)

        tail = _tail_text(self.log_path)
        self.stop()
        self.cleanup()
        raise LaunchError("Browser DevTools endpoint timed out", command=cmd, log_tail=tail)

    def cdp_ready(self, timeout: float = 0.4) -> bool:
        """Return True if the CDP HTTP endpoint responds."""
        if self.cdp_port is None:
            return False
        endpoint = f"http://127.0.0.1:{self.cdp_port}/json/version"
        try:
            with urlopen(endpoint, timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    def browser_ws_url(self) -> str:
        version = http_get_json(f"http://127.0.0.1:{self.cdp_port}/json/version")
        ws_url = version.get("webSocketDebuggerUrl") if isinstance(version, dict) else None
        if not ws_url:
            raise CdpError("CDP browser WebSocket URL not found")
        return str(ws_url)

    def list_targets(self) -> list[dict[str, Any]]:
        try:
            targets = http_get_json(f"http://127.0.0.1:{self.cdp_port}/json/list")
        except CdpError:
            return []
        return [t for t in targets if isinstance(t, dict)] if isinstance(targets, list) else []

    def first_page(self, timeout: float = 5.0) -> dict[str, Any]:
        """Return the first open page target; the app window may need a moment to register."""
        deadline = time.time() + max(0.1, float(timeout))
        while True:
            pages = [t for t in self.list_targets() if t.get("type") == "page" and t.get("webSocketDebuggerUrl")]
            if pages:
                return pages[0]
            if time.time() >= deadline:
                raise LaunchError("Browser has no open tabs", log_tail=_tail_text(self.log_path))
            time.sleep(0.1)

    def stop(self, *, timeout: float = 2.0) -> bool:
        """Terminate the process if still running. Returns True if a termination was requested."""
        proc = self.process
        if proc is None:
            return False
        if proc.poll() is not None:
            return False

        with contextlib.suppress(OSError):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
        except subprocess.TimeoutExpired:
            # Escalate to kill.
            with contextlib.suppress(OSError):
                proc.kill()
            # Reap before cleanup() removes the profile.
            with contextlib.suppress(OSError, subprocess.TimeoutExpired):
                proc.wait(timeout=max(0.1, float(timeout)))
        _LOGGER.info("browser_stopped pid=%s", proc.pid)
        return True

    def cleanup(self) -> None:
        """Remove the temporary profile and log directory."""
        work_dir, self._work_dir = self._work_dir, None
        if work_dir:
            shutil.rmtree(work_dir, ignore_errors=True)
