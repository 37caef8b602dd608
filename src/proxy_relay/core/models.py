"""Value types shared by the relay core.

The relay core operates on plain immutable values:
- ``ProxyDialect``: the wire protocol spoken by a proxy endpoint
- ``UpstreamEndpoint``: address and credentials of the remote proxy server
- ``TargetAddress``: the final destination requested by a local client
- ``ProxyNode``: a named catalog entry as supplied by the configuration
- ``StatusEvent``: what the controller reports to its subscribers

Any live-updating presentation model is expected to wrap ``StatusEvent``
notifications rather than mutate these objects.
"""

from dataclasses import dataclass, field
from enum import Enum

MIN_PORT = 1
MAX_PORT = 65535


class ProxyDialect(str, Enum):
    """Wire protocol of a proxy endpoint."""

    SOCKS5 = "socks5"
    HTTP = "http"

    @classmethod
    def parse(cls, value: "str | ProxyDialect") -> "ProxyDialect":
        """Parse a dialect name case-insensitively."""
        if isinstance(value, ProxyDialect):
            return value
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown proxy dialect: {value!r}") from None


def _check_port(port: int) -> None:
    if not MIN_PORT <= port <= MAX_PORT:
        raise ValueError(f"Port out of range: {port}")


def format_host_port(host: str, port: int) -> str:
    """Render ``host:port``, bracketing IPv6 literals."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass(frozen=True)
class UpstreamEndpoint:
    """Remote proxy server address and credentials.

    Attributes:
        host: Hostname or IP literal of the upstream proxy
        port: TCP port of the upstream proxy
        username: Optional username, empty when not configured
        password: Optional password, empty when not configured
    """

    host: str
    port: int
    username: str = ""
    password: str = ""

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Upstream host must not be empty")
        _check_port(self.port)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username or self.password)

    def __str__(self) -> str:
        return format_host_port(self.host, self.port)


@dataclass(frozen=True)
class TargetAddress:
    """Destination host and port requested by a local client."""

    host: str
    port: int

    def __post_init__(self) -> None:
        if not self.host:
            raise ValueError("Target host must not be empty")
        _check_port(self.port)

    def __str__(self) -> str:
        return format_host_port(self.host, self.port)


@dataclass(frozen=True)
class ProxyNode:
    """A named upstream proxy from the node catalog."""

    name: str
    dialect: ProxyDialect
    server: str
    port: int
    username: str = ""
    password: str = ""

    def is_valid(self) -> bool:
        """Check the node can be turned into an endpoint.

        A password without a username is rejected, mirroring what upstream
        servers accept for username/password authentication.
        """
        return (
            bool(self.server.strip())
            and MIN_PORT <= self.port <= MAX_PORT
            and (bool(self.username.strip()) or not self.password.strip())
        )

    @property
    def endpoint(self) -> UpstreamEndpoint:
        return UpstreamEndpoint(self.server, self.port, self.username, self.password)

    def __str__(self) -> str:
        return f"{self.name} ({format_host_port(self.server, self.port)}, {self.dialect.value})"


@dataclass(frozen=True)
class StatusEvent:
    """Connection status reported by the controller."""

    connected: bool
    node: ProxyNode | None
    message: str = field(default="")
