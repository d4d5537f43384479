from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

from .config import ShellOptions, expand_path

# Pseudo-host for static mode. Requests to it never reach the network.
STATIC_HOST = "staticapp"


@dataclass(frozen=True, slots=True)
class ResolvedTarget:
    home_url: str
    home_path: str
    content_root: Path
    is_static: bool
    port: int = 0


def resolve_target(options: ShellOptions) -> ResolvedTarget:
    home = (options.home_url or "").strip().lstrip("/")
    if options.is_static:
        home_url = f"http://{STATIC_HOST}/{home}"
    else:
        home_url = f"http://localhost:{options.port}/{home}"
    content_root = Path(expand_path(options.content_folder or ".")).resolve()
    return ResolvedTarget(
        home_url=home_url,
        home_path=urlsplit(home_url).path or "/",
        content_root=content_root,
        is_static=options.is_static,
        port=options.port,
    )
