from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BINARY_CANDIDATES: list[str] = [
    "/usr/bin/google-chrome",
    "/usr/bin/google-chrome-stable",
    "/opt/google/chrome/chrome",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir outside $HOME; keep them last.
    "/snap/bin/chromium",
]

MISSING_FILE_POLICIES = ("not_found", "ignore")


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    return int(raw)


@dataclass(frozen=True)
class ShellOptions:
    """Launch options for a single app window.

    ``port == 0`` selects static mode: files under ``content_folder`` are served
    by request interception. Any other port selects hosted mode, where the
    window simply opens ``http://localhost:<port>/<home_url>``.
    """

    executable_path: str = ""
    home_url: str = "Index.html"
    content_folder: str = "wwwroot"
    left: int = 300
    top: int = 150
    width: int = 1024
    height: int = 768
    port: int = 0
    missing_file_policy: str = "not_found"
    launch_timeout: float = 10.0
    navigation_timeout: float = 30.0
    profile_path: str = ""
    extra_flags: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.missing_file_policy not in MISSING_FILE_POLICIES:
            raise ValueError(
                f"missing_file_policy must be one of {', '.join(MISSING_FILE_POLICIES)}, "
                f"got {self.missing_file_policy!r}"
            )
        if self.port < 0 or self.port > 65535:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def is_static(self) -> bool:
        return self.port == 0

    @staticmethod
    def detect_binary() -> str:
        env_path = os.environ.get("CHROME_SHELL_BINARY")
        if env_path:
            return expand_path(env_path)
        for candidate in DEFAULT_BINARY_CANDIDATES:
            path = Path(candidate)
            if path.exists() and os.access(str(path), os.X_OK):
                return str(path)
        # Last resort: rely on PATH lookup
        return "google-chrome"

    def resolve_executable(self) -> str:
        if self.executable_path.strip():
            return expand_path(self.executable_path.strip())
        return self.detect_binary()

    @classmethod
    def from_env(cls) -> ShellOptions:
        port = _env_int("CHROME_SHELL_PORT", 0)
        flags_raw = os.environ.get("CHROME_SHELL_FLAGS", "")
        extra_flags = tuple(flag.strip() for flag in flags_raw.split(",") if flag.strip())
        return cls(
            executable_path=os.environ.get("CHROME_SHELL_BINARY", ""),
            home_url=os.environ.get("CHROME_SHELL_HOME") or "Index.html",
            content_folder=os.environ.get("CHROME_SHELL_CONTENT") or "wwwroot",
            left=_env_int("CHROME_SHELL_LEFT", 300),
            top=_env_int("CHROME_SHELL_TOP", 150),
            width=_env_int("CHROME_SHELL_WIDTH", 1024),
            height=_env_int("CHROME_SHELL_HEIGHT", 768),
            port=port,
            missing_file_policy=(os.environ.get("CHROME_SHELL_MISSING") or "not_found").strip().lower(),
            launch_timeout=float(os.environ.get("CHROME_SHELL_LAUNCH_TIMEOUT") or 10.0),
            profile_path=os.environ.get("CHROME_SHELL_PROFILE", ""),
            extra_flags=extra_flags,
        )
