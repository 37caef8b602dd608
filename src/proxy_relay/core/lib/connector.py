"""Upstream connector: open and authenticate a connection to the remote proxy.

For every session the connector:
- Resolves the upstream host (system DNS, then dnspython)
- Opens a TCP connection bounded by the caller's timeout
- Runs the outbound handshake for the upstream dialect
    - SOCKS5: greeting, optional username/password, CONNECT
    - HTTP: CONNECT with ``Proxy-Authorization`` when credentials are set
- Returns the socket positioned exactly at the relay boundary

Every blocking step shares one deadline; a call that cannot finish in time
raises ``RelayTimeoutError`` instead of hanging.

The outbound adapters wrap ``connect`` for the engine. They also deliver a
plain (non-CONNECT) HTTP request to the upstream in the form that dialect
expects: origin-form through a SOCKS5 tunnel, absolute-form to an HTTP proxy.

Example:
    connection = connect(endpoint, ProxyDialect.SOCKS5, TargetAddress("example.com", 443), timeout=10)
    connection.sock.sendall(b"...")
"""

import socket
import time
from dataclasses import dataclass
from typing import Final, Protocol

from loguru import logger

from proxy_relay.core.exceptions import (
    ConnectRefusedError,
    ConnectTimeoutError,
    MalformedError,
    RelayTimeoutError,
    UnreachableError,
    UpstreamConnectError,
    UpstreamRefusedError,
)
from proxy_relay.core.models import ProxyDialect, TargetAddress, UpstreamEndpoint

from .codec import (
    HEADER_TERMINATOR,
    AuthMethod,
    Credentials,
    Reader,
    build_forward_request,
    decode_socks5_auth_reply,
    decode_socks5_greeting_reply,
    decode_socks5_reply,
    encode_http_connect_request,
    encode_socks5_auth,
    encode_socks5_connect_request,
    encode_socks5_greeting,
    parse_http_status,
    rewrite_request_for_upstream,
)
from .dns_handler import DNSResolver, dns_resolver
from .handshake import InboundRequest

DEFAULT_CONNECT_TIMEOUT: Final = 10.0  # Seconds
RESPONSE_BUFFER_SIZE: Final = 4096


@dataclass
class UpstreamConnection:
    """A connected, handshaken upstream socket.

    Attributes:
        sock: Socket ready for relaying
        leftover: Bytes received past the handshake that belong to the client
    """

    sock: socket.socket
    leftover: bytes = b""


class Deadline:
    """Shared time budget for the steps of one connector call."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self.expires = time.monotonic() + timeout

    def remaining(self) -> float:
        left = self.expires - time.monotonic()
        if left <= 0:
            raise RelayTimeoutError(f"Upstream handshake exceeded {self.timeout}s")
        return left


def _reader(sock: socket.socket, deadline: Deadline) -> Reader:
    def read(size: int) -> bytes:
        chunks: list[bytes] = []
        needed = size
        while needed:
            sock.settimeout(deadline.remaining())
            chunk = sock.recv(needed)
            if not chunk:
                break
            chunks.append(chunk)
            needed -= len(chunk)
        return b"".join(chunks)

    return read


def _send(sock: socket.socket, data: bytes, deadline: Deadline) -> None:
    sock.settimeout(deadline.remaining())
    sock.sendall(data)


def _credentials(endpoint: UpstreamEndpoint) -> Credentials | None:
    return (endpoint.username, endpoint.password) if endpoint.has_credentials else None


def open_tcp(endpoint: UpstreamEndpoint, deadline: Deadline, resolver: DNSResolver = dns_resolver) -> socket.socket:
    """Open the TCP connection to the upstream proxy.

    Raises:
        ConnectTimeoutError: If the connection is not established in time
        ConnectRefusedError: If the upstream refuses the connection
        UnreachableError: If the host cannot be resolved or reached
    """
    address = resolver.resolve(endpoint.host, timeout=deadline.remaining())
    try:
        return socket.create_connection((address, endpoint.port), timeout=deadline.remaining())
    except socket.timeout:
        raise ConnectTimeoutError(f"Timed out connecting to {endpoint}") from None
    except ConnectionRefusedError:
        raise ConnectRefusedError(f"Connection refused by {endpoint}") from None
    except OSError as e:
        raise UnreachableError(f"Cannot reach {endpoint}: {e}") from e


def socks5_handshake(
    sock: socket.socket, endpoint: UpstreamEndpoint, target: TargetAddress, deadline: Deadline
) -> None:
    """Negotiate, authenticate and CONNECT through a SOCKS5 upstream."""
    read = _reader(sock, deadline)

    _send(sock, encode_socks5_greeting(needs_auth=endpoint.has_credentials), deadline)
    method = decode_socks5_greeting_reply(read(2))

    if method == AuthMethod.USERNAME_PASSWORD:
        logger.debug(
            f"{endpoint} requested authentication "
            f"(username: {len(endpoint.username)} chars, password: {len(endpoint.password)} chars)"
        )
        _send(sock, encode_socks5_auth(endpoint.username, endpoint.password), deadline)
        decode_socks5_auth_reply(read(2))
        logger.debug(f"Authenticated with {endpoint}")

    _send(sock, encode_socks5_connect_request(target), deadline)
    reply = decode_socks5_reply(read)
    if not reply.succeeded:
        raise UpstreamRefusedError(reply.status, f"SOCKS5 CONNECT to {target}")


def http_connect_handshake(
    sock: socket.socket, endpoint: UpstreamEndpoint, target: TargetAddress, deadline: Deadline
) -> bytes:
    """Open a CONNECT tunnel through an HTTP upstream.

    Returns:
        bytes: Data received after the response header terminator
    """
    _send(sock, encode_http_connect_request(target, _credentials(endpoint)), deadline)

    buffer = b""
    while HEADER_TERMINATOR not in buffer and len(buffer) < RESPONSE_BUFFER_SIZE:
        sock.settimeout(deadline.remaining())
        chunk = sock.recv(RESPONSE_BUFFER_SIZE - len(buffer))
        if not chunk:
            raise UpstreamRefusedError(0, "upstream closed the connection during CONNECT")
        buffer += chunk

    head, _, leftover = buffer.partition(HEADER_TERMINATOR)
    try:
        status = parse_http_status(head)
    except MalformedError:
        raise UpstreamRefusedError(0, "invalid CONNECT response") from None
    if status != 200:
        raise UpstreamRefusedError(status, head.split(b"\r\n", 1)[0].decode("latin-1"))
    return leftover


def connect(
    endpoint: UpstreamEndpoint,
    dialect: ProxyDialect,
    target: TargetAddress,
    timeout: float = DEFAULT_CONNECT_TIMEOUT,
    resolver: DNSResolver = dns_resolver,
) -> UpstreamConnection:
    """Open a tunnel to ``target`` through the upstream proxy.

    Args:
        endpoint: Upstream proxy address and credentials
        dialect: Dialect spoken by the upstream
        target: Destination to tunnel to
        timeout: Budget in seconds for connecting and handshaking
        resolver: Resolver for the upstream host name

    Returns:
        UpstreamConnection: Socket ready for relaying

    Raises:
        UpstreamConnectError: If the upstream cannot be reached
        AuthRejectedError: If the upstream rejects our credentials
        UpstreamRefusedError: If the upstream refuses the tunnel
        MalformedError: If the upstream replies with an invalid frame
        RelayTimeoutError: If the handshake does not finish within ``timeout``
    """
    deadline = Deadline(timeout)
    sock = open_tcp(endpoint, deadline, resolver)
    try:
        if dialect is ProxyDialect.SOCKS5:
            socks5_handshake(sock, endpoint, target, deadline)
            leftover = b""
        else:
            leftover = http_connect_handshake(sock, endpoint, target, deadline)
    except socket.timeout:
        sock.close()
        raise RelayTimeoutError(f"Handshake with {endpoint} timed out") from None
    except OSError as e:
        sock.close()
        raise UpstreamConnectError(f"Connection to {endpoint} lost during handshake: {e}") from e
    except BaseException:
        sock.close()
        raise
    logger.debug(f"Tunnel to {target} open through {endpoint} ({dialect.value})")
    return UpstreamConnection(sock, leftover)


class OutboundAdapter(Protocol):
    """Outbound half of an engine: endpoint plus request in, ready socket out."""

    dialect: ProxyDialect

    def open(self, endpoint: UpstreamEndpoint, request: InboundRequest, timeout: float) -> UpstreamConnection: ...


def _deliver(connection: UpstreamConnection, payload: bytes, deadline: Deadline) -> UpstreamConnection:
    try:
        _send(connection.sock, payload, deadline)
    except socket.timeout:
        connection.sock.close()
        raise RelayTimeoutError("Timed out sending the request upstream") from None
    except OSError as e:
        connection.sock.close()
        raise UpstreamConnectError(f"Failed to send the request upstream: {e}") from e
    return connection


class Socks5Outbound:
    """Reach targets through a SOCKS5 upstream."""

    dialect = ProxyDialect.SOCKS5

    def __init__(self, resolver: DNSResolver = dns_resolver) -> None:
        self.resolver = resolver

    def open(self, endpoint: UpstreamEndpoint, request: InboundRequest, timeout: float) -> UpstreamConnection:
        deadline = Deadline(timeout)
        connection = connect(endpoint, self.dialect, request.target, timeout, self.resolver)
        if request.tunnel:
            return connection
        # Plain HTTP request: the tunnel ends at the origin server
        payload = rewrite_request_for_upstream(request.raw, request.target.host, request.target.port)
        return _deliver(connection, payload, deadline)


class HttpOutbound:
    """Reach targets through an HTTP upstream proxy."""

    dialect = ProxyDialect.HTTP

    def __init__(self, resolver: DNSResolver = dns_resolver) -> None:
        self.resolver = resolver

    def open(self, endpoint: UpstreamEndpoint, request: InboundRequest, timeout: float) -> UpstreamConnection:
        if request.tunnel:
            return connect(endpoint, self.dialect, request.target, timeout, self.resolver)
        deadline = Deadline(timeout)
        connection = UpstreamConnection(open_tcp(endpoint, deadline, self.resolver))
        payload = build_forward_request(request.raw, request.target, _credentials(endpoint))
        return _deliver(connection, payload, deadline)
