"""Listener/session engine.

One engine owns one bound local socket and serves it on a background thread.
Every accepted connection becomes a session on its own worker thread:

    inbound handshake -> upstream connector -> relay pump

The engine is generic: the dialect pairing is fixed by the inbound and
outbound adapters it is built with. Three pairings are supported:
- SOCKS5 in, SOCKS5 out (pass-through)
- HTTP in, HTTP out (pass-through)
- HTTP in, SOCKS5 out (translating adapter)

Lifecycle: ``STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED``. Start and
stop are serialized by a lock. Stopping fires the engine's cancel event, closes
the listening socket and waits for the registered sessions to unwind.

Example:
    engine = create_engine(ProxyDialect.HTTP, ProxyDialect.SOCKS5)
    engine.start(UpstreamEndpoint("proxy.example.net", 1080), local_port=7890)
    ...
    engine.stop()
"""

import os
import socket
import socketserver
import threading
from enum import Enum
from typing import Final

from loguru import logger

from proxy_relay.core.exceptions import (
    BindFailedError,
    EngineStateError,
    ProxyError,
    RelayCancelledError,
    RelayTimeoutError,
)
from proxy_relay.core.models import ProxyDialect, UpstreamEndpoint, format_host_port
from proxy_relay.core.network import describe_bind_failure

from .connector import DEFAULT_CONNECT_TIMEOUT, HttpOutbound, OutboundAdapter, Socks5Outbound
from .handshake import HttpInbound, InboundAdapter, InboundRequest, Socks5Inbound
from .relay import POLL_INTERVAL, RelayPump
from .stats import RelayStats

# Constants
DEFAULT_LISTEN_HOST: Final = "127.0.0.1"
DEFAULT_IO_TIMEOUT: Final = 30.0  # Seconds, client and upstream socket reads/writes
ACCEPT_POLL_INTERVAL: Final = 0.5  # Seconds between shutdown checks in the accept loop

SUPPORTED_PAIRINGS: Final = frozenset(
    {
        (ProxyDialect.SOCKS5, ProxyDialect.SOCKS5),
        (ProxyDialect.HTTP, ProxyDialect.HTTP),
        (ProxyDialect.HTTP, ProxyDialect.SOCKS5),
    }
)


class EngineState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class SessionPhase(Enum):
    HANDSHAKE = "handshake"
    RELAY = "relay"
    DONE = "done"


class RelaySession(socketserver.BaseRequestHandler):
    """One accepted client connection."""

    server: "RelayServer"

    def setup(self) -> None:
        self.engine = self.server.engine
        self.thread = threading.current_thread()
        self.phase = SessionPhase.HANDSHAKE
        self.label = f"session {format_host_port(*self.client_address[:2])}"
        self.engine.register_session(self)

    def interrupt(self) -> None:
        """Unblock a session still waiting on its client during the handshake."""
        if self.phase is not SessionPhase.HANDSHAKE:
            return
        try:
            self.request.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def _check_cancelled(self) -> None:
        if self.engine.cancel_event.is_set():
            raise RelayCancelledError("Engine is stopping")

    def handle(self) -> None:
        engine = self.engine
        client: socket.socket = self.request
        client.settimeout(engine.io_timeout)
        upstream: socket.socket | None = None
        request: InboundRequest | None = None
        engine.stats.session_started()
        logger.debug(f"{self.label}: accepted")

        try:
            self._check_cancelled()
            request = engine.inbound.accept(client)
            self._check_cancelled()

            connection = engine.outbound.open(engine.endpoint, request, engine.connect_timeout)
            upstream = connection.sock
            upstream.settimeout(engine.io_timeout)
            self._check_cancelled()

            engine.inbound.establish(client, request)
            if connection.leftover:
                client.sendall(connection.leftover)
            if request.early_data:
                upstream.sendall(request.early_data)

            self.phase = SessionPhase.RELAY
            logger.debug(f"{self.label}: relaying to {request.target} via {engine.endpoint}")
            RelayPump(client, upstream, engine.cancel_event, stats=engine.stats, label=self.label).run()
        except RelayCancelledError as e:
            logger.debug(f"{self.label}: {e}")
        except ProxyError as e:
            logger.warning(f"{self.label}: {type(e).__name__}: {e}")
            engine.inbound.reject(client, request, e)
        except socket.timeout:
            logger.warning(f"{self.label}: client timed out")
            engine.inbound.reject(client, request, RelayTimeoutError("Client timed out"))
        except OSError as e:
            logger.debug(f"{self.label}: connection error: {e}")
        finally:
            self.phase = SessionPhase.DONE
            if upstream is not None:
                upstream.close()
            client.close()
            engine.stats.session_ended()
            logger.debug(f"{self.label}: closed")

    def finish(self) -> None:
        self.engine.unregister_session(self)


class RelayServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """Local listening socket with one worker thread per session."""

    # No SO_REUSEPORT: a second engine on the same port must fail to bind.
    # On Windows SO_REUSEADDR would allow exactly that, so it is off there.
    allow_reuse_address = os.name != "nt"
    daemon_threads = True
    request_queue_size = 100

    def __init__(self, address: tuple[str, int], engine: "RelayEngine") -> None:
        self.engine = engine
        super().__init__(address, RelaySession)

    def get_request(self) -> tuple[socket.socket, tuple]:
        try:
            return super().get_request()
        except OSError as e:
            # socketserver drops the failed accept and keeps serving
            if self.engine.is_running:
                logger.error(f"accept() failed on {format_host_port(*self.server_address[:2])}: {e}")
            raise

    def handle_error(self, request, client_address) -> None:
        logger.exception(f"Unhandled error in session for {client_address}")


class RelayEngine:
    """Accept local clients and relay them through one upstream endpoint."""

    def __init__(
        self,
        inbound: InboundAdapter,
        outbound: OutboundAdapter,
        *,
        listen_host: str = DEFAULT_LISTEN_HOST,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        io_timeout: float = DEFAULT_IO_TIMEOUT,
    ) -> None:
        self.inbound = inbound
        self.outbound = outbound
        self.listen_host = listen_host
        self.connect_timeout = connect_timeout
        self.io_timeout = io_timeout

        self.endpoint: UpstreamEndpoint | None = None
        self.cancel_event = threading.Event()
        self.stats = RelayStats()

        self._state = EngineState.STOPPED
        self._transition = threading.Lock()
        self._server: RelayServer | None = None
        self._thread: threading.Thread | None = None
        self._sessions: set[RelaySession] = set()
        self._sessions_lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"{self.inbound.dialect.value}->{self.outbound.dialect.value}"

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is EngineState.RUNNING

    @property
    def local_address(self) -> tuple[str, int] | None:
        server = self._server
        if server is None:
            return None
        host, port = server.server_address[:2]
        return str(host), int(port)

    @property
    def active_sessions(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)

    def register_session(self, session: RelaySession) -> None:
        with self._sessions_lock:
            self._sessions.add(session)

    def unregister_session(self, session: RelaySession) -> None:
        with self._sessions_lock:
            self._sessions.discard(session)

    def start(self, endpoint: UpstreamEndpoint, local_port: int) -> None:
        """Bind the local port and start accepting clients.

        Args:
            endpoint: Upstream proxy every session is relayed through
            local_port: Local TCP port, 0 for an ephemeral port

        Raises:
            EngineStateError: If the engine is not stopped
            BindFailedError: If the local port cannot be bound
        """
        with self._transition:
            if self._state is not EngineState.STOPPED:
                logger.warning(f"Engine {self.name} is already {self._state.value}")
                raise EngineStateError(f"Engine {self.name} is already {self._state.value}")

            self._state = EngineState.STARTING
            self.endpoint = endpoint
            self.cancel_event = threading.Event()
            self.stats = RelayStats()
            try:
                self._server = RelayServer((self.listen_host, local_port), self)
            except OSError as e:
                self._state = EngineState.STOPPED
                logger.error(f"Failed to bind {format_host_port(self.listen_host, local_port)}: {e}")
                raise BindFailedError(local_port, describe_bind_failure(local_port, e)) from e

            host, port = self.local_address or (self.listen_host, local_port)
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                kwargs={"poll_interval": ACCEPT_POLL_INTERVAL},
                name=f"relay-accept-{port}",
                daemon=True,
            )
            self._state = EngineState.RUNNING
            self._thread.start()
            logger.info(f"Engine {self.name} listening on {format_host_port(host, port)}, upstream {endpoint}")

    def stop(self) -> None:
        """Stop accepting, cancel sessions and wait for them to unwind.

        Calling ``stop`` on a stopped engine does nothing.
        """
        with self._transition:
            if self._state is not EngineState.RUNNING or self._server is None:
                return
            self._state = EngineState.STOPPING
            self.cancel_event.set()

            self._server.shutdown()
            self._server.server_close()
            if self._thread is not None:
                self._thread.join()

            with self._sessions_lock:
                sessions = list(self._sessions)
            for session in sessions:
                session.interrupt()
            # Sessions notice the cancel event within one pump poll, or their socket timeout at worst
            for session in sessions:
                session.thread.join(timeout=self.io_timeout + POLL_INTERVAL)
                if session.thread.is_alive():
                    logger.warning(f"{session.label} did not unwind within {self.io_timeout}s")

            self._server = None
            self._thread = None
            self._state = EngineState.STOPPED
            logger.info(f"Engine {self.name} stopped")


def create_engine(inbound: ProxyDialect, outbound: ProxyDialect, **kwargs) -> RelayEngine:
    """Build an engine for a supported dialect pairing.

    Raises:
        ValueError: For SOCKS5-in/HTTP-out, which has no engine
    """
    if (inbound, outbound) not in SUPPORTED_PAIRINGS:
        raise ValueError(f"Unsupported pairing: {inbound.value} in, {outbound.value} out")
    inbound_adapter = Socks5Inbound() if inbound is ProxyDialect.SOCKS5 else HttpInbound()
    outbound_adapter = Socks5Outbound() if outbound is ProxyDialect.SOCKS5 else HttpOutbound()
    return RelayEngine(inbound_adapter, outbound_adapter, **kwargs)
