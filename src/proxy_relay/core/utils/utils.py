"""Common utility functions."""

from typing import Final

from proxy_relay.core.models import MAX_PORT, MIN_PORT

# Size constants
BYTES_PER_KB: Final = 1024
BYTES_PER_MB: Final = BYTES_PER_KB * 1024
BYTES_PER_GB: Final = BYTES_PER_MB * 1024

SIZE_UNITS: Final = [
    ("B", 1),
    ("KB", BYTES_PER_KB),
    ("MB", BYTES_PER_MB),
    ("GB", BYTES_PER_GB),
]


def format_bytes(bytes_: float) -> str:
    """Format bytes into human readable format.

    Args:
        bytes_: Number of bytes to format

    Returns:
        str: Formatted string with appropriate unit
    """
    for unit, divisor in SIZE_UNITS:
        if bytes_ < divisor * BYTES_PER_KB:
            return f"{bytes_ / divisor:.1f} {unit}"
    return f"{bytes_ / BYTES_PER_GB:.1f} GB"


def format_duration(seconds: float) -> str:
    """Render a duration as ``H:MM:SS``."""
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


def parse_host_port(value: str) -> tuple[str, int]:
    """Parse ``HOST:PORT`` or ``[IPv6]:PORT`` as typed on the command line.

    Raises:
        ValueError: If the port is missing or out of range
    """
    value = value.strip()
    if value.startswith("["):
        host, sep, port = value[1:].partition("]:")
    else:
        host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"Expected HOST:PORT, got {value!r}")
    if not MIN_PORT <= int(port) <= MAX_PORT:
        raise ValueError(f"Port out of range: {port}")
    return host, int(port)
