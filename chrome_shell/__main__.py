"""Entry point for `python -m chrome_shell`."""

from __future__ import annotations

from chrome_shell.main import main

if __name__ == "__main__":
    raise SystemExit(main())
