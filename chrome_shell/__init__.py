"""Show a web app in a chrome-less window of the installed Chrome/Chromium.

Two modes:
- static: files under a content folder are served through CDP request
  interception (no HTTP server)
- hosted: the window opens http://localhost:<port>/<home> of a running server

`chrome_shell` is the stable import surface (re-exports).
"""

from __future__ import annotations

from .config import ShellOptions
from .errors import CdpError, LaunchError, PortAllocationError, ShellError
from .ports import allocate_port, next_free_port
from .session import ShellSession, active_session, launch, launch_async

__all__ = [
    "CdpError",
    "LaunchError",
    "PortAllocationError",
    "ShellError",
    "ShellOptions",
    "ShellSession",
    "active_session",
    "allocate_port",
    "launch",
    "launch_async",
    "next_free_port",
]
