"""Free-port selection from the OS connection tables.

The result is a snapshot: nothing is reserved, so another process can still
bind the port between selection and use.
"""

from __future__ import annotations

import contextlib
import logging
import socket

import psutil

from .errors import PortAllocationError

_LOGGER = logging.getLogger("chrome_shell.ports")

MAX_PORT = 65535
NO_PORT = 0


def busy_ports(starting_port: int = 0) -> set[int]:
    """Local ports >= starting_port seen in the TCP connection, TCP listener and UDP tables.

    psutil reports established TCP connections and listeners in one "tcp" table;
    UDP sockets have no connection state, so every bound UDP socket counts as a listener.
    """
    busy: set[int] = set()
    for kind in ("tcp", "udp"):
        for conn in psutil.net_connections(kind=kind):
            laddr = conn.laddr
            if not laddr:
                continue
            port = int(laddr.port)
            if port >= starting_port:
                busy.add(port)
    return busy


def _bind_probe(port: int) -> bool:
    """Return True if nothing is bound to the port on loopback (TCP and UDP)."""
    for sock_type in (socket.SOCK_STREAM, socket.SOCK_DGRAM):
        with contextlib.closing(socket.socket(socket.AF_INET, sock_type)) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                return False
    return True


def next_free_port(starting_port: int = 4500, busy: set[int] | None = None) -> int:
    """Return the lowest port >= starting_port that is not in use, or NO_PORT (0)."""
    first = max(1, int(starting_port))
    probe = False
    if busy is None:
        try:
            busy = busy_ports(first)
        except psutil.AccessDenied:
            # macOS requires root for the system-wide tables.
            _LOGGER.debug("port_tables_denied start=%s fallback=bind_probe", first)
            busy = set()
            probe = True

    for port in range(first, MAX_PORT + 1):
        if port in busy:
            continue
        if probe and not _bind_probe(port):
            continue
        return port
    return NO_PORT


def allocate_port(starting_port: int = 4500) -> int:
    """Like next_free_port, but raise PortAllocationError instead of returning NO_PORT."""
    port = next_free_port(starting_port)
    if port == NO_PORT:
        raise PortAllocationError(f"No free port at or above {starting_port}")
    _LOGGER.debug("port_allocated port=%s start=%s", port, starting_port)
    return port
