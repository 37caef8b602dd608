"""Wire codec for the SOCKS5 and HTTP proxy dialects.

This module contains pure functions only: no sockets, no shared state.

SOCKS5 (RFC 1928 / RFC 1929):
- Client greeting and method selection
- Username/password sub-negotiation
- CONNECT requests and replies with IPv4, IPv6 and domain addresses

HTTP/1.x proxy requests:
- Request line parsing and target extraction
- Rewriting proxy requests into origin-form for a tunnelled origin server
- Building absolute-form requests for an upstream HTTP proxy
- CONNECT requests and minimal status responses

Decoders that need more bytes than they were given take a ``Reader``: a callable
``read(n) -> bytes`` that returns at most ``n`` bytes and fewer only at
end-of-stream. ``BufferReader`` adapts an in-memory buffer to that interface.

Example:
    frame = decode_socks5_reply(BufferReader(b"\\x05\\x00\\x00\\x01\\x7f\\x00\\x00\\x01\\x1f\\x90"))
    assert frame.succeeded and frame.port == 8080
"""

import base64
import ipaddress
import re
import struct
from collections.abc import Callable
from dataclasses import dataclass
from enum import IntEnum
from typing import Final
from urllib.parse import SplitResult, urlsplit

from proxy_relay.core.exceptions import (
    AuthRejectedError,
    MalformedError,
    NoHostError,
    TruncatedError,
    UnsupportedMethodError,
)
from proxy_relay.core.models import TargetAddress, format_host_port

Reader = Callable[[int], bytes]
Credentials = tuple[str, str]

# SOCKS protocol constants
SOCKS_VERSION: Final = 5
AUTH_VERSION: Final = 1
CONNECT_CMD: Final = 1
ADDR_TYPE_IPV4: Final = 1
ADDR_TYPE_DOMAIN: Final = 3
ADDR_TYPE_IPV6: Final = 4
MAX_FIELD_LENGTH: Final = 255

# Reply codes
REPLY_SUCCESS: Final = 0x00
REPLY_GENERAL_FAILURE: Final = 0x01
REPLY_HOST_UNREACHABLE: Final = 0x04
REPLY_CONNECTION_REFUSED: Final = 0x05
REPLY_TTL_EXPIRED: Final = 0x06
REPLY_CMD_NOT_SUPPORTED: Final = 0x07

# HTTP constants
HEADER_TERMINATOR: Final = b"\r\n\r\n"
LINE_BREAK: Final = "\r\n"
DEFAULT_HTTP_PORT: Final = 80
DEFAULT_TLS_PORT: Final = 443
CONNECT_ESTABLISHED: Final = b"HTTP/1.1 200 Connection Established\r\n\r\n"
HTTP_ENCODING: Final = "latin-1"

_STATUS_LINE = re.compile(r"^HTTP/1\.\d (\d{3})")


class AuthMethod(IntEnum):
    """SOCKS5 authentication methods this relay understands."""

    NO_AUTH = 0x00
    USERNAME_PASSWORD = 0x02


@dataclass(frozen=True)
class Socks5Frame:
    """A decoded SOCKS5 request or reply.

    Requests and replies share a layout; ``code`` is the command byte of a
    request and the status byte of a reply.
    """

    version: int
    code: int
    address_type: int
    host: str
    port: int

    @property
    def status(self) -> int:
        return self.code

    @property
    def command(self) -> int:
        return self.code

    @property
    def succeeded(self) -> bool:
        return self.code == REPLY_SUCCESS

    @property
    def target(self) -> TargetAddress:
        return TargetAddress(self.host, self.port)


@dataclass(frozen=True)
class HttpRequestLine:
    method: str
    target: str
    version: str

    @property
    def is_connect(self) -> bool:
        return self.method.upper() == "CONNECT"


class BufferReader:
    """Serve ``Reader`` calls from an in-memory buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._offset = 0

    def __call__(self, size: int) -> bytes:
        chunk = self._data[self._offset : self._offset + size]
        self._offset += len(chunk)
        return chunk

    @property
    def remaining(self) -> bytes:
        return self._data[self._offset :]


def read_exact(read: Reader, size: int) -> bytes:
    """Read exactly ``size`` bytes or raise ``TruncatedError``."""
    data = read(size)
    if len(data) < size:
        raise TruncatedError(f"Expected {size} bytes, got {len(data)}")
    return data


# ── SOCKS5 ──────────────────────────────────────────────────────────────────


def encode_socks5_greeting(needs_auth: bool) -> bytes:
    """Build the client greeting offering no-auth, plus user/pass when needed."""
    methods = [AuthMethod.NO_AUTH]
    if needs_auth:
        methods.append(AuthMethod.USERNAME_PASSWORD)
    return struct.pack(f"!BB{len(methods)}B", SOCKS_VERSION, len(methods), *methods)


def decode_socks5_greeting_reply(data: bytes) -> AuthMethod:
    """Decode the server's method selection.

    Raises:
        TruncatedError: If fewer than two bytes were received
        MalformedError: If the version byte is not 5
        UnsupportedMethodError: If the server picked a method we did not offer
    """
    if len(data) < 2:
        raise TruncatedError("Greeting reply shorter than 2 bytes")
    version, method = data[0], data[1]
    if version != SOCKS_VERSION:
        raise MalformedError(f"Invalid SOCKS version in greeting reply: {version}")
    try:
        return AuthMethod(method)
    except ValueError:
        raise UnsupportedMethodError(method) from None


def decode_socks5_greeting(read: Reader) -> tuple[int, ...]:
    """Decode a client greeting (server role) and return the offered methods."""
    version, nmethods = read_exact(read, 2)
    if version != SOCKS_VERSION:
        raise MalformedError(f"Invalid SOCKS version in greeting: {version}")
    if nmethods == 0:
        raise MalformedError("Greeting offers no authentication methods")
    return tuple(read_exact(read, nmethods))


def encode_socks5_method_selection(method: int) -> bytes:
    return struct.pack("!BB", SOCKS_VERSION, method)


def encode_socks5_auth(username: str, password: str) -> bytes:
    """Build the RFC 1929 username/password request.

    Fields longer than 255 bytes are a caller error and are not truncated.
    """
    user = username.encode("utf-8")
    pwd = password.encode("utf-8")
    if len(user) > MAX_FIELD_LENGTH or len(pwd) > MAX_FIELD_LENGTH:
        raise ValueError("SOCKS5 username and password are limited to 255 bytes")
    return struct.pack("!BB", AUTH_VERSION, len(user)) + user + struct.pack("!B", len(pwd)) + pwd


def decode_socks5_auth_reply(data: bytes) -> None:
    """Accept the sub-negotiation reply or raise ``AuthRejectedError``."""
    if len(data) < 2 or data[0] != AUTH_VERSION or data[1] != REPLY_SUCCESS:
        raise AuthRejectedError(f"Authentication rejected by upstream (reply {data.hex() or 'empty'})")


def encode_address(host: str) -> bytes:
    """Encode a host as a SOCKS5 address-type byte followed by the address."""
    literal = host.strip("[]")
    try:
        ip = ipaddress.ip_address(literal)
    except ValueError:
        try:
            name = host.encode("ascii") if host.isascii() else host.encode("idna")
        except UnicodeError:
            raise MalformedError(f"Domain name cannot be encoded: {host!r}") from None
        if not name or len(name) > MAX_FIELD_LENGTH:
            raise MalformedError(f"Domain name cannot be encoded: {host!r}") from None
        return struct.pack("!BB", ADDR_TYPE_DOMAIN, len(name)) + name
    if ip.version == 4:
        return struct.pack("!B", ADDR_TYPE_IPV4) + ip.packed
    return struct.pack("!B", ADDR_TYPE_IPV6) + ip.packed


def encode_socks5_connect_request(target: TargetAddress) -> bytes:
    header = struct.pack("!BBB", SOCKS_VERSION, CONNECT_CMD, 0)
    return header + encode_address(target.host) + struct.pack("!H", target.port)


def encode_socks5_reply(status: int, bind_host: str = "0.0.0.0", bind_port: int = 0) -> bytes:
    header = struct.pack("!BBB", SOCKS_VERSION, status, 0)
    return header + encode_address(bind_host) + struct.pack("!H", bind_port)


def decode_socks5_address(read: Reader, address_type: int) -> str:
    """Read the variable-length address that follows a frame header."""
    if address_type == ADDR_TYPE_IPV4:
        return str(ipaddress.IPv4Address(read_exact(read, 4)))
    if address_type == ADDR_TYPE_IPV6:
        return str(ipaddress.IPv6Address(read_exact(read, 16)))
    if address_type == ADDR_TYPE_DOMAIN:
        (length,) = read_exact(read, 1)
        raw = read_exact(read, length)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            raise MalformedError("Domain name is not valid UTF-8") from None
    raise MalformedError(f"Unsupported address type: {address_type}")


def _decode_frame(read: Reader) -> Socks5Frame:
    version, code, _, address_type = read_exact(read, 4)
    if version != SOCKS_VERSION:
        raise MalformedError(f"Invalid SOCKS version in frame: {version}")
    host = decode_socks5_address(read, address_type)
    (port,) = struct.unpack("!H", read_exact(read, 2))
    return Socks5Frame(version, code, address_type, host, port)


def decode_socks5_reply(read: Reader) -> Socks5Frame:
    """Decode a CONNECT reply, consuming exactly the bytes the frame declares.

    Raises:
        TruncatedError: If the stream ends before the frame is complete
        MalformedError: On a bad version or address type
    """
    return _decode_frame(read)


def decode_socks5_request(read: Reader) -> Socks5Frame:
    """Decode a client request (server role); same layout as a reply."""
    return _decode_frame(read)


# ── HTTP ────────────────────────────────────────────────────────────────────


def split_head(raw: bytes) -> tuple[list[str], bytes]:
    """Split raw bytes into header lines and whatever followed the terminator."""
    head, found, rest = raw.partition(HEADER_TERMINATOR)
    if not found:
        rest = b""
    text = head.decode(HTTP_ENCODING)
    return text.replace("\r\n", "\n").split("\n"), rest


def parse_http_request_line(raw: bytes) -> HttpRequestLine:
    """Parse ``METHOD TARGET VERSION`` from the first line of a request."""
    first_line = split_head(raw)[0][0]
    tokens = first_line.split()
    if len(tokens) < 3:
        raise MalformedError(f"Malformed request line: {first_line[:80]!r}")
    return HttpRequestLine(tokens[0], tokens[1], tokens[2])


def _header_name(line: str) -> str:
    return line.split(":", 1)[0].strip().lower()


def _header_value(line: str) -> str:
    return line.split(":", 1)[1].strip() if ":" in line else ""


def split_host_port(value: str, default_port: int) -> tuple[str, int]:
    """Split ``host[:port]``, accepting bracketed and bare IPv6 literals."""
    value = value.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port_text = rest[1:] if rest.startswith(":") else ""
    elif value.count(":") == 1:
        host, port_text = value.split(":")
    else:
        host, port_text = value, ""
    if not host:
        raise NoHostError(f"No host in {value!r}")
    if not port_text:
        return host, default_port
    if not port_text.isdigit() or not 0 < int(port_text) <= 65535:
        raise MalformedError(f"Invalid port in {value!r}")
    return host, int(port_text)


def extract_host_port(lines: list[str]) -> TargetAddress:
    """Find the requested target in a parsed request head.

    ``CONNECT`` takes the target from the request line; every other method
    takes it from the ``Host`` header (port 80 when absent), falling back to an
    absolute-form request target.

    Raises:
        NoHostError: If no target can be found
        MalformedError: If the request line or an absolute-form target cannot be parsed
    """
    tokens = lines[0].split() if lines else []
    if len(tokens) < 3:
        raise MalformedError("Malformed request line")
    method, target = tokens[0].upper(), tokens[1]

    if method == "CONNECT":
        return TargetAddress(*split_host_port(target, DEFAULT_TLS_PORT))

    for line in lines[1:]:
        if _header_name(line) == "host" and _header_value(line):
            return TargetAddress(*split_host_port(_header_value(line), DEFAULT_HTTP_PORT))

    if "://" in target:
        netloc = _split_url(target).netloc.rpartition("@")[2]
        if netloc:
            return TargetAddress(*split_host_port(netloc, DEFAULT_HTTP_PORT))
    raise NoHostError("Request has neither a CONNECT target nor a Host header")


def basic_auth_header(username: str, password: str) -> str:
    token = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
    return f"Proxy-Authorization: Basic {token}"


def _host_header(host: str, port: int) -> str:
    if port == DEFAULT_HTTP_PORT:
        return f"Host: [{host}]" if ":" in host else f"Host: {host}"
    return f"Host: {format_host_port(host, port)}"


def _split_url(target: str) -> SplitResult:
    try:
        return urlsplit(target)
    except ValueError as e:
        raise MalformedError(f"Malformed request target {target[:80]!r}: {e}") from None


def origin_form(target: str) -> str:
    """Reduce an absolute-form request target to path and query.

    Raises:
        MalformedError: If the target is not a parseable URL
    """
    if "://" not in target:
        return target
    parts = _split_url(target)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def _join(lines: list[str], body: bytes) -> bytes:
    return (LINE_BREAK.join(lines) + LINE_BREAK * 2).encode(HTTP_ENCODING) + body


def rewrite_request_for_upstream(
    raw_request: bytes, host: str, port: int, credentials: Credentials | None = None
) -> bytes:
    """Rewrite a proxy request for the origin server at the end of a tunnel.

    Output is a function of the inputs only:
    - the request target is reduced to origin-form (path and query)
    - ``Proxy-*`` and ``Connection`` headers are dropped
    - ``Host`` is set to ``host`` (``host:port`` when port is not 80)
    - ``Proxy-Authorization`` is added when credentials are given
    - ``Connection: close`` ends the header block

    Anything after the header terminator is carried over unchanged.
    """
    request_line = parse_http_request_line(raw_request)
    lines, body = split_head(raw_request)

    out = [f"{request_line.method} {origin_form(request_line.target)} {request_line.version}"]
    host_written = False
    for line in lines[1:]:
        if not line.strip():
            continue
        name = _header_name(line)
        if name.startswith("proxy-") or name == "connection":
            continue
        if name == "host":
            if not host_written:
                out.append(_host_header(host, port))
                host_written = True
            continue
        out.append(line)
    if not host_written:
        out.insert(1, _host_header(host, port))
    if credentials is not None:
        out.append(basic_auth_header(*credentials))
    out.append("Connection: close")
    return _join(out, body)


def build_forward_request(raw_request: bytes, target: TargetAddress, credentials: Credentials | None = None) -> bytes:
    """Prepare a plain request for an upstream HTTP proxy.

    The request target is put in absolute-form, the client's ``Proxy-*``
    headers are dropped and our own ``Proxy-Authorization`` is added when
    credentials are given.
    """
    request_line = parse_http_request_line(raw_request)
    lines, body = split_head(raw_request)

    url = request_line.target
    if "://" not in url:
        authority = target.host if target.port == DEFAULT_HTTP_PORT else str(target)
        url = f"http://{authority}{url if url.startswith('/') else '/' + url}"

    out = [f"{request_line.method} {url} {request_line.version}"]
    out.extend(line for line in lines[1:] if line.strip() and not _header_name(line).startswith("proxy-"))
    if credentials is not None:
        out.append(basic_auth_header(*credentials))
    return _join(out, body)


def encode_http_connect_request(target: TargetAddress, credentials: Credentials | None = None) -> bytes:
    authority = str(target)
    lines = [f"CONNECT {authority} HTTP/1.1", f"Host: {authority}"]
    if credentials is not None:
        lines.append(basic_auth_header(*credentials))
    return _join(lines, b"")


def parse_http_status(head: bytes) -> int:
    """Return the status code of an ``HTTP/1.x`` response head."""
    first_line = head.split(b"\r\n", 1)[0].decode(HTTP_ENCODING)
    match = _STATUS_LINE.match(first_line)
    if not match:
        raise MalformedError(f"Malformed status line: {first_line[:80]!r}")
    return int(match.group(1))


def http_error_response(status: str) -> bytes:
    """Build an empty-bodied error response such as ``502 Bad Gateway``."""
    return f"HTTP/1.1 {status}\r\nContent-Length: 0\r\n\r\n".encode("ascii")
