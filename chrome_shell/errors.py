from __future__ import annotations


class ShellError(Exception):
    pass


class PortAllocationError(ShellError):
    pass


class CdpError(ShellError):
    pass


class LaunchError(ShellError):
    def __init__(self, message: str, *, command: list[str] | None = None, log_tail: str | None = None) -> None:
        super().__init__(message)
        self.command = list(command or [])
        self.log_tail = log_tail

    def __str__(self) -> str:
        base = super().__str__()
        if self.log_tail:
            return f"{base}\n--- browser log ---\n{self.log_tail}"
        return base
