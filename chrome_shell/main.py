"""
Command-line entry point: open one app window and block until it is closed.

Options default to the CHROME_SHELL_* environment (see ShellOptions.from_env);
command-line flags override them.
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys

from .config import MISSING_FILE_POLICIES, ShellOptions
from .errors import ShellError
from .session import launch

logger = logging.getLogger("chrome_shell")

__all__ = ["build_parser", "configure_logging", "main", "options_from_args"]


def configure_logging(*, verbose: bool = False, log_file: str | None = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    path = log_file or os.environ.get("CHROME_SHELL_LOG_FILE")
    if path:
        handler = logging.FileHandler(path, encoding="utf-8")
        handler.setFormatter(logging.Formatter("%(asctime)s ==> %(message)s", "%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chrome-shell",
        description="Show a web app in a chrome-less window of the installed browser.",
    )
    parser.add_argument("--home", help="Home document (static) or route (hosted), e.g. Index.html")
    parser.add_argument("--content", help="Static content folder (default: wwwroot)")
    parser.add_argument("--port", type=int, help="0 for static mode, or the port of a running server (hosted mode)")
    parser.add_argument("--browser", help="Browser executable (default: auto-detect)")
    parser.add_argument("--left", type=int)
    parser.add_argument("--top", type=int)
    parser.add_argument("--width", type=int)
    parser.add_argument("--height", type=int)
    parser.add_argument("--missing", choices=MISSING_FILE_POLICIES, help="Policy for missing static files")
    parser.add_argument("--log-file", help="Also append log lines to this file")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def options_from_args(args: argparse.Namespace, base: ShellOptions | None = None) -> ShellOptions:
    options = base or ShellOptions.from_env()
    changes: dict[str, object] = {}
    if args.home is not None:
        changes["home_url"] = args.home
    if args.content is not None:
        changes["content_folder"] = args.content
    if args.browser is not None:
        changes["executable_path"] = args.browser
    if args.port is not None:
        changes["port"] = args.port
    for name in ("left", "top", "width", "height"):
        value = getattr(args, name)
        if value is not None:
            changes[name] = value
    if args.missing is not None:
        changes["missing_file_policy"] = args.missing
    return dataclasses.replace(options, **changes) if changes else options


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        options = options_from_args(args)
        session = launch(options)
    except (ShellError, ValueError) as exc:
        logger.error("launch_failed %s", exc)
        print(f"chrome-shell: {exc}", file=sys.stderr)
        return 1

    logger.info("window_open url=%s", session.home_url)
    try:
        while not session.wait_closed(0.5):
            pass
    except KeyboardInterrupt:
        session.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
