"""
Shared fixtures: in-process fake upstream proxies on loopback sockets.
"""

import socket
import socketserver
import threading
import time

import pytest

from proxy_relay.core.lib.codec import (
    AUTH_VERSION,
    HEADER_TERMINATOR,
    REPLY_SUCCESS,
    AuthMethod,
    decode_socks5_greeting,
    decode_socks5_request,
    encode_socks5_method_selection,
    encode_socks5_reply,
    read_exact,
)
from proxy_relay.core.lib.handshake import socket_reader
from proxy_relay.core.models import TargetAddress

LOOPBACK = "127.0.0.1"
ORIGIN_RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhello"


# ── Helpers ──────────────────────────────────────────────────────────────────

def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def free_port() -> int:
    """A loopback port nothing is listening on."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK, 0))
        return sock.getsockname()[1]


def read_head(sock: socket.socket) -> bytes:
    buffer = b""
    while HEADER_TERMINATOR not in buffer:
        chunk = sock.recv(4096)
        if not chunk:
            break
        buffer += chunk
    return buffer


def drain(sock: socket.socket, timeout: float = 2.0) -> bytes:
    """Collect what the peer sends until it closes or goes quiet for ``timeout``."""
    sock.settimeout(timeout)
    data = b""
    try:
        while True:
            chunk = sock.recv(4096)
            if not chunk:
                return data
            data += chunk
    except socket.timeout:
        return data


def echo(sock: socket.socket) -> None:
    while True:
        data = sock.recv(4096)
        if not data:
            return
        sock.sendall(data)


class _FakeServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, port: int, handler) -> None:
        super().__init__((LOOPBACK, port), handler)
        self.thread = threading.Thread(target=self.serve_forever, kwargs={"poll_interval": 0.1}, daemon=True)
        self.closed_sessions = 0
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        return self.server_address[1]

    def session_closed(self) -> None:
        with self._lock:
            self.closed_sessions += 1

    def start(self) -> "_FakeServer":
        self.thread.start()
        return self

    def close(self) -> None:
        self.shutdown()
        self.server_close()


# ── Fake SOCKS5 upstream ─────────────────────────────────────────────────────

class FakeSocks5Server(_FakeServer):
    """SOCKS5 upstream that records CONNECT frames.

    A rejected login is followed by reading until the client hangs up; the
    bytes received meanwhile land in ``after_reject``.

    After a successful CONNECT it either echoes everything (``mode="echo"``) or
    reads one HTTP request, records it and answers with ``ORIGIN_RESPONSE``
    (``mode="origin"``).
    """

    def __init__(self, port: int = 0, credentials=None, reply_code: int = REPLY_SUCCESS, mode: str = "echo"):
        self.credentials = credentials
        self.reply_code = reply_code
        self.mode = mode
        self.connects: list[TargetAddress] = []
        self.auth_attempts: list[tuple[str, str]] = []
        self.after_reject: list[bytes] = []
        self.requests: list[bytes] = []
        super().__init__(port, _Socks5Handler)


class _Socks5Handler(socketserver.BaseRequestHandler):
    server: FakeSocks5Server

    def handle(self) -> None:
        try:
            self._serve()
        except OSError:
            pass
        finally:
            self.server.session_closed()

    def _serve(self) -> None:
        sock = self.request
        read = socket_reader(sock)
        methods = decode_socks5_greeting(read)

        if self.server.credentials is not None:
            if AuthMethod.USERNAME_PASSWORD not in methods:
                sock.sendall(bytes([5, 0xFF]))
                return
            sock.sendall(encode_socks5_method_selection(AuthMethod.USERNAME_PASSWORD))
            _, ulen = read_exact(read, 2)
            username = read_exact(read, ulen).decode()
            (plen,) = read_exact(read, 1)
            password = read_exact(read, plen).decode()
            self.server.auth_attempts.append((username, password))
            if (username, password) != self.server.credentials:
                sock.sendall(bytes([AUTH_VERSION, 0x01]))
                self.server.after_reject.append(drain(sock))
                return
            sock.sendall(bytes([AUTH_VERSION, 0x00]))
        else:
            sock.sendall(encode_socks5_method_selection(AuthMethod.NO_AUTH))

        frame = decode_socks5_request(read)
        self.server.connects.append(frame.target)
        sock.sendall(encode_socks5_reply(self.server.reply_code))
        if self.server.reply_code != REPLY_SUCCESS:
            return

        if self.server.mode == "echo":
            echo(sock)
        else:
            self.server.requests.append(read_head(sock))
            sock.sendall(ORIGIN_RESPONSE)


# ── Fake HTTP upstream ───────────────────────────────────────────────────────

class FakeHttpProxy(_FakeServer):
    """HTTP proxy upstream.

    ``CONNECT`` is answered with 200 (or 407 when ``required_auth`` does not
    match) and the tunnel echoes; any other request is recorded and answered
    with ``ORIGIN_RESPONSE``.
    """

    def __init__(self, port: int = 0, required_auth: str | None = None, trailing: bytes = b""):
        self.required_auth = required_auth
        self.trailing = trailing
        self.requests: list[bytes] = []
        super().__init__(port, _HttpProxyHandler)


class _HttpProxyHandler(socketserver.BaseRequestHandler):
    server: FakeHttpProxy

    def handle(self) -> None:
        try:
            self._serve()
        except OSError:
            pass
        finally:
            self.server.session_closed()

    def _serve(self) -> None:
        sock = self.request
        head = read_head(sock)
        if not head:
            return
        self.server.requests.append(head)

        required = self.server.required_auth
        if required is not None and f"Proxy-Authorization: {required}".encode() not in head:
            sock.sendall(b"HTTP/1.1 407 Proxy Authentication Required\r\nContent-Length: 0\r\n\r\n")
            return

        if head.startswith(b"CONNECT "):
            sock.sendall(b"HTTP/1.1 200 Connection established\r\n\r\n" + self.server.trailing)
            echo(sock)
        else:
            sock.sendall(ORIGIN_RESPONSE)


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def socks_upstream():
    server = FakeSocks5Server().start()
    yield server
    server.close()


@pytest.fixture
def auth_socks_upstream():
    server = FakeSocks5Server(credentials=("u", "p")).start()
    yield server
    server.close()


@pytest.fixture
def origin_socks_upstream():
    server = FakeSocks5Server(mode="origin").start()
    yield server
    server.close()


@pytest.fixture
def http_upstream():
    server = FakeHttpProxy().start()
    yield server
    server.close()


@pytest.fixture
def silent_upstream():
    """Listens but never accepts: connects succeed, handshakes hang."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOOPBACK, 0))
        sock.listen(8)
        yield sock.getsockname()[1]


@pytest.fixture
def socket_pair():
    left, right = socket.socketpair()
    yield left, right
    left.close()
    right.close()
