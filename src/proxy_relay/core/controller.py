"""Connection orchestration.

The controller runs at most one engine at a time and decides which engine a
node needs:
- SOCKS5 node: HTTP in, SOCKS5 out. The local listener must speak HTTP so the
  operating system's proxy setting can point at it.
- HTTP node: HTTP in, HTTP out.

Connect, disconnect and switch are serialized by one lock, so only one
transition is ever in flight. Every transition is reported to subscribers as a
``StatusEvent``; failures are reported, never retried.

Example:
    controller = ProxyController(load_settings())
    controller.subscribe(lambda event: print(event.message))
    controller.connect(settings.default_node())
"""

import threading
import time
from collections.abc import Callable

from loguru import logger

from proxy_relay.core.config import RelaySettings
from proxy_relay.core.exceptions import ProxyError
from proxy_relay.core.lib.engine import RelayEngine, create_engine
from proxy_relay.core.lib.stats import StatsSnapshot
from proxy_relay.core.models import ProxyDialect, ProxyNode, StatusEvent, format_host_port
from proxy_relay.core.system_proxy import NoopSystemProxy, SystemProxyToggler

StatusCallback = Callable[[StatusEvent], None]


def engine_pairing(node: ProxyNode) -> tuple[ProxyDialect, ProxyDialect]:
    """Inbound and outbound dialects of the engine serving ``node``."""
    return ProxyDialect.HTTP, node.dialect


class ProxyController:
    """Own the active engine and report its status."""

    def __init__(
        self,
        settings: RelaySettings,
        toggler: SystemProxyToggler | None = None,
        engine_factory: Callable[..., RelayEngine] = create_engine,
    ) -> None:
        self.settings = settings
        self.toggler = toggler or NoopSystemProxy()
        self._engine_factory = engine_factory
        self._engine: RelayEngine | None = None
        self._node: ProxyNode | None = None
        self._system_proxy_set = False
        self._lock = threading.RLock()
        self._subscribers: list[StatusCallback] = []
        self._subscribers_lock = threading.Lock()

    @property
    def current_node(self) -> ProxyNode | None:
        return self._node

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> RelayEngine | None:
        return self._engine

    @property
    def local_address(self) -> tuple[str, int] | None:
        engine = self._engine
        return engine.local_address if engine else None

    def stats(self) -> StatsSnapshot | None:
        engine = self._engine
        return engine.stats.snapshot() if engine else None

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a status callback.

        Returns:
            Callable[[], None]: Call it to unsubscribe
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _emit(self, connected: bool, node: ProxyNode | None, message: str) -> None:
        event = StatusEvent(connected, node, message)
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Status subscriber {callback!r} failed")

    def connect(self, node: ProxyNode, enable_system_proxy: bool = True) -> bool:
        """Start relaying through ``node``, replacing any active connection.

        Args:
            node: Upstream proxy node
            enable_system_proxy: Also notify the system proxy toggler, if the
                settings allow it

        Returns:
            bool: True if the engine is running
        """
        with self._lock:
            if self._engine is not None:
                self._disconnect()

            if not node.is_valid():
                logger.error(f"Node {node.name} is invalid")
                self._emit(False, node, f"Invalid node {node.name}")
                return False

            endpoint = node.endpoint
            logger.info(f"Connecting to {node}")
            logger.debug(
                f"Upstream {endpoint}, username: {len(endpoint.username)} chars, "
                f"password: {len(endpoint.password)} chars"
            )

            inbound, outbound = engine_pairing(node)
            engine = self._engine_factory(
                inbound,
                outbound,
                listen_host=self.settings.listen_host,
                connect_timeout=self.settings.connect_timeout,
                io_timeout=self.settings.io_timeout,
            )
            try:
                engine.start(endpoint, self.settings.local_port)
            except ProxyError as e:
                logger.error(f"Failed to start relay for {node.name}: {e}")
                self._emit(False, node, str(e))
                return False

            self._engine = engine
            self._node = node
            host, port = engine.local_address or (self.settings.listen_host, self.settings.local_port)

            if enable_system_proxy and self.settings.enable_system_proxy:
                logger.info(f"Pointing system proxy at {format_host_port(host, port)}")
                try:
                    self.toggler.enable(host, port)
                    self._system_proxy_set = True
                except Exception:
                    logger.exception("Failed to set system proxy")
            else:
                logger.info("System proxy disabled, local relay only")

            logger.info(f"Connected to {node.name}")
            self._emit(True, node, f"Connected to {node.name} on {format_host_port(host, port)}")
            return True

    def _disconnect(self) -> None:
        engine, node = self._engine, self._node
        self._engine = None
        self._node = None

        if engine is not None:
            engine.stop()
        if self._system_proxy_set:
            self._system_proxy_set = False
            try:
                self.toggler.restore()
            except Exception:
                logger.exception("Failed to restore system proxy")
        if node is not None:
            logger.info(f"Disconnected from {node.name}")
            self._emit(False, node, f"Disconnected from {node.name}")

    def disconnect(self) -> None:
        """Stop the active engine. Does nothing when already disconnected."""
        with self._lock:
            self._disconnect()

    def switch_to(self, node: ProxyNode) -> bool:
        """Disconnect, wait for the local port to settle, then connect to ``node``."""
        with self._lock:
            self._disconnect()
            time.sleep(self.settings.settle_delay)
            return self.connect(node)
