"""Inbound handshake handlers for local clients.

Each handler terminates the client-facing half of a session and learns which
target the client wants to reach:

- SOCKS5 (server role): ``AWAIT_GREETING -> AWAIT_REQUEST -> READY``. The
  local listener never asks its own clients for credentials, so no-auth is
  always selected.
- HTTP: one read until the header terminator or an 8 KiB cap, then request
  line and target parsing through the wire codec. ``CONNECT`` opens a tunnel,
  any other method is forwarded as a plain request.

Handlers also own the client-facing replies: the success reply once the
upstream is ready, and the dialect's error response when a session fails.
"""

import socket
from dataclasses import dataclass
from enum import Enum
from typing import Final, Protocol

from loguru import logger

from proxy_relay.core.exceptions import (
    ConnectRefusedError,
    ConnectTimeoutError,
    MalformedError,
    RelayTimeoutError,
    UnreachableError,
    UnsupportedCommandError,
    UpstreamRefusedError,
)
from proxy_relay.core.models import ProxyDialect, TargetAddress

from .codec import (
    CONNECT_CMD,
    CONNECT_ESTABLISHED,
    HEADER_TERMINATOR,
    REPLY_CMD_NOT_SUPPORTED,
    REPLY_CONNECTION_REFUSED,
    REPLY_GENERAL_FAILURE,
    REPLY_HOST_UNREACHABLE,
    REPLY_SUCCESS,
    REPLY_TTL_EXPIRED,
    AuthMethod,
    Reader,
    decode_socks5_greeting,
    decode_socks5_request,
    encode_socks5_method_selection,
    encode_socks5_reply,
    extract_host_port,
    http_error_response,
    origin_form,
    parse_http_request_line,
    split_head,
)

REQUEST_BUFFER_SIZE: Final = 8192
MAX_SOCKS_REPLY_CODE: Final = 0x08


@dataclass(frozen=True)
class InboundRequest:
    """What a local client asked for.

    Attributes:
        target: Destination host and port
        tunnel: True for raw tunnels (SOCKS5, HTTP CONNECT), False for plain HTTP requests
        method: HTTP method, ``CONNECT`` for SOCKS5 requests
        raw: Bytes read from the client for an HTTP request, head and any body prefix
    """

    target: TargetAddress
    tunnel: bool = True
    method: str = "CONNECT"
    raw: bytes = b""

    @property
    def early_data(self) -> bytes:
        """Bytes a tunnelling client sent right behind its CONNECT request."""
        if not self.tunnel or not self.raw:
            return b""
        return self.raw.partition(HEADER_TERMINATOR)[2]


class InboundAdapter(Protocol):
    """Inbound half of an engine: client socket in, target out."""

    dialect: ProxyDialect

    def accept(self, sock: socket.socket) -> InboundRequest: ...

    def establish(self, sock: socket.socket, request: InboundRequest) -> None: ...

    def reject(self, sock: socket.socket, request: InboundRequest | None, error: Exception) -> None: ...


def socket_reader(sock: socket.socket) -> Reader:
    """Adapt a socket to the codec ``Reader`` interface."""

    def read(size: int) -> bytes:
        chunks: list[bytes] = []
        needed = size
        while needed:
            chunk = sock.recv(needed)
            if not chunk:
                break
            chunks.append(chunk)
            needed -= len(chunk)
        return b"".join(chunks)

    return read


def _send_quietly(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError as e:
        logger.debug(f"Could not send error response to client: {e}")


# ── SOCKS5 ──────────────────────────────────────────────────────────────────


class HandshakeState(Enum):
    AWAIT_GREETING = "await-greeting"
    AWAIT_REQUEST = "await-request"
    READY = "ready"


class Socks5ServerHandshake:
    """SOCKS5 server-role handshake for one client connection."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.state = HandshakeState.AWAIT_GREETING
        self._read = socket_reader(sock)

    def run(self) -> TargetAddress:
        """Drive the handshake to ``READY`` and return the requested target.

        Raises:
            MalformedError: On any framing violation; nothing is sent back
            UnsupportedCommandError: For BIND/UDP ASSOCIATE, after replying 0x07
        """
        methods = decode_socks5_greeting(self._read)
        logger.debug(f"SOCKS5 greeting offers methods {[hex(m) for m in methods]}")
        self.sock.sendall(encode_socks5_method_selection(AuthMethod.NO_AUTH))
        self.state = HandshakeState.AWAIT_REQUEST

        frame = decode_socks5_request(self._read)
        if frame.command != CONNECT_CMD:
            _send_quietly(self.sock, encode_socks5_reply(REPLY_CMD_NOT_SUPPORTED))
            raise UnsupportedCommandError(frame.command)
        try:
            target = frame.target
        except ValueError as e:
            raise MalformedError(str(e)) from None
        self.state = HandshakeState.READY
        return target


def socks5_reply_code(error: Exception) -> int:
    """Map a session failure onto a SOCKS5 reply code."""
    if isinstance(error, UpstreamRefusedError) and 0 < error.code <= MAX_SOCKS_REPLY_CODE:
        return error.code
    if isinstance(error, ConnectRefusedError):
        return REPLY_CONNECTION_REFUSED
    if isinstance(error, UnreachableError):
        return REPLY_HOST_UNREACHABLE
    if isinstance(error, (ConnectTimeoutError, RelayTimeoutError, socket.timeout)):
        return REPLY_TTL_EXPIRED
    return REPLY_GENERAL_FAILURE


class Socks5Inbound:
    """Speak SOCKS5 to local clients."""

    dialect = ProxyDialect.SOCKS5

    def accept(self, sock: socket.socket) -> InboundRequest:
        return InboundRequest(Socks5ServerHandshake(sock).run())

    def establish(self, sock: socket.socket, request: InboundRequest) -> None:
        sock.sendall(encode_socks5_reply(REPLY_SUCCESS))

    def reject(self, sock: socket.socket, request: InboundRequest | None, error: Exception) -> None:
        # Before a target is known the socket is simply closed
        if request is None:
            return
        _send_quietly(sock, encode_socks5_reply(socks5_reply_code(error)))


# ── HTTP ────────────────────────────────────────────────────────────────────


def read_request_head(sock: socket.socket, limit: int = REQUEST_BUFFER_SIZE) -> bytes:
    """Read until the header terminator or ``limit`` bytes, whichever comes first.

    Raises:
        MalformedError: If the client closes the connection before either
    """
    buffer = b""
    while HEADER_TERMINATOR not in buffer and len(buffer) < limit:
        chunk = sock.recv(limit - len(buffer))
        if not chunk:
            raise MalformedError(f"Client closed the connection after {len(buffer)} bytes")
        buffer += chunk
    return buffer


def http_status_for(error: Exception) -> str:
    """Map a session failure onto an HTTP status line."""
    if isinstance(error, MalformedError):
        return "400 Bad Request"
    if isinstance(error, (ConnectTimeoutError, RelayTimeoutError, socket.timeout)):
        return "504 Gateway Timeout"
    return "502 Bad Gateway"


class HttpInbound:
    """Speak the HTTP proxy protocol to local clients."""

    dialect = ProxyDialect.HTTP

    def __init__(self, limit: int = REQUEST_BUFFER_SIZE) -> None:
        self.limit = limit

    def accept(self, sock: socket.socket) -> InboundRequest:
        raw = read_request_head(sock, self.limit)
        request_line = parse_http_request_line(raw)
        lines, _ = split_head(raw)
        target = extract_host_port(lines)
        if not request_line.is_connect:
            # Fail on an unparseable URL before anything is opened upstream
            origin_form(request_line.target)
        logger.debug(f"HTTP {request_line.method} request for {target}")
        return InboundRequest(target, tunnel=request_line.is_connect, method=request_line.method, raw=raw)

    def establish(self, sock: socket.socket, request: InboundRequest) -> None:
        if request.tunnel:
            sock.sendall(CONNECT_ESTABLISHED)

    def reject(self, sock: socket.socket, request: InboundRequest | None, error: Exception) -> None:
        _send_quietly(sock, http_error_response(http_status_for(error)))
