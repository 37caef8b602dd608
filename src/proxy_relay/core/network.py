"""Local port diagnostics.

When the local listening port cannot be bound, the most useful thing to tell the
user is who is holding it. This module looks that up with psutil:
- Scanning TCP sockets in LISTEN state
- Mapping the owning PID to a process name

Lookups are best-effort: on platforms where listing other processes' sockets
needs elevated privileges, the owner is simply reported as unknown.

Example:
    owner = find_port_owner(7890)
    if owner:
        print(f"Port 7890 is held by {owner.name} (pid {owner.pid})")
"""

import errno
from dataclasses import dataclass

import psutil
from loguru import logger


@dataclass
class PortOwner:
    """Process listening on a local TCP port.

    Attributes:
        pid: Process ID, None when the OS does not disclose it
        name: Process name or "unknown"
        address: Local address the socket is bound to
    """

    pid: int | None
    name: str
    address: str


def find_port_owner(port: int) -> PortOwner | None:
    """Return the process listening on ``port``, if it can be determined."""
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied:
        logger.debug("Not allowed to list sockets, port owner unknown")
        return None

    for conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
            continue
        name = "unknown"
        if conn.pid is not None:
            try:
                name = psutil.Process(conn.pid).name()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return PortOwner(pid=conn.pid, name=name, address=conn.laddr.ip)
    return None


def describe_bind_failure(port: int, error: OSError) -> str:
    """Human-readable reason for a failed bind."""
    reason = error.strerror or str(error)
    if error.errno != errno.EADDRINUSE:
        return reason
    owner = find_port_owner(port)
    if owner is None:
        return reason
    pid = f"pid {owner.pid}" if owner.pid is not None else "pid unknown"
    return f"{reason} (held by {owner.name}, {pid})"
