from __future__ import annotations

from .config import ShellOptions
from .target import ResolvedTarget

# From https://peter.sh/experiments/chromium-command-line-switches/
DEFAULT_ARGS: tuple[str, ...] = (
    "--disable-background-networking",
    "--disable-background-timer-throttling",
    "--disable-client-side-phishing-detection",
    "--disable-default-apps",
    "--disable-extensions",
    "--disable-hang-monitor",
    "--disable-popup-blocking",
    "--disable-prompt-on-repost",
    "--disable-sync",
    "--disable-translate",
    "--metrics-recording-only",
    "--no-first-run",
    "--safebrowsing-disable-auto-update",
    "--force-app-mode",
    # Never serve stale content cached by a previous run.
    "--aggressive-cache-discard",
    "--disable-cache",
    "--disable-application-cache",
    "--disable-offline-load-stale-cache",
    "--disk-cache-size=0",
)

# Shown in static mode until interception navigates to the home page.
STATIC_PLACEHOLDER = "data:text/html, loading..."


def build_args(options: ShellOptions, target: ResolvedTarget) -> list[str]:
    """Return the browser switches for an app-mode window.

    Values are interpolated as-is; they must not contain characters that are
    meaningful to a shell.
    """
    app_value = STATIC_PLACEHOLDER if target.is_static else target.home_url
    args = list(DEFAULT_ARGS)
    # --app opens a window without url bar or tabs.
    args.append(f"--app={app_value}")
    args.append(f"--window-size={options.width},{options.height}")
    args.append(f"--window-position={options.left},{options.top}")
    return args
