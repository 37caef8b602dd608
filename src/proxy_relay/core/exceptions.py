"""Custom exceptions for the relay.

This module defines the error taxonomy used throughout the relay implementation.
The exceptions separate:
- Local listener failures (binding the local port)
- Upstream reachability failures (connect timeout, refusal, unreachable host)
- Protocol framing violations in either direction
- Upstream authentication and refusal
- Bounded waits that expired and cooperative cancellation

Per-session errors are caught at the session boundary and never reach the engine;
engine errors are reported to the controller, which turns them into a failed
status event.

Example:
    try:
        connection = connector.open(endpoint, request)
    except AuthRejectedError:
        logger.warning("Upstream rejected our credentials")
"""


class ProxyError(Exception):
    """Base exception for relay errors."""


class ConfigError(ProxyError):
    """Raised when the configuration file or a node definition is invalid."""


class EngineStateError(ProxyError):
    """Raised when an engine is started while it is not stopped."""


class BindFailedError(ProxyError):
    """Raised when the local listening port cannot be bound."""

    def __init__(self, port: int, reason: str) -> None:
        super().__init__(f"Cannot bind local port {port}: {reason}")
        self.port = port
        self.reason = reason


class UpstreamConnectError(ProxyError):
    """Base class for failures to reach the upstream proxy."""


class ConnectTimeoutError(UpstreamConnectError):
    """Raised when the TCP connection to the upstream is not established in time."""


class ConnectRefusedError(UpstreamConnectError):
    """Raised when the upstream actively refuses the TCP connection."""


class UnreachableError(UpstreamConnectError):
    """Raised when the upstream host or network cannot be reached."""


class DNSResolutionError(UnreachableError):
    """Raised when DNS resolution fails."""


class MalformedError(ProxyError):
    """Raised on a protocol framing violation in either direction."""


class TruncatedError(MalformedError):
    """Raised when fewer bytes are available than a frame declares."""


class NoHostError(MalformedError):
    """Raised when an HTTP request names no target host."""


class UnsupportedMethodError(MalformedError):
    """Raised when a SOCKS5 server selects an authentication method we did not offer."""

    def __init__(self, method: int) -> None:
        super().__init__(f"Unsupported SOCKS5 method 0x{method:02x}")
        self.method = method


class UnsupportedCommandError(MalformedError):
    """Raised when a SOCKS5 client asks for anything other than CONNECT."""

    def __init__(self, command: int) -> None:
        super().__init__(f"Unsupported SOCKS5 command 0x{command:02x}")
        self.command = command


class AuthRejectedError(ProxyError):
    """Raised when the upstream rejects our username/password."""


class UpstreamRefusedError(ProxyError):
    """Raised when the upstream refuses to open the requested tunnel.

    Attributes:
        code: SOCKS5 reply code or HTTP status code returned by the upstream
    """

    def __init__(self, code: int, detail: str = "") -> None:
        message = f"Upstream refused the request (code {code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.code = code


class RelayTimeoutError(ProxyError):
    """Raised when a bounded wait is exceeded."""


class RelayCancelledError(ProxyError):
    """Raised when a session is unwound by a cooperative shutdown."""
