"""Bidirectional byte relay between a client socket and an upstream socket.

The pump runs two independent copy loops, one per direction. Each loop waits
for readability on its own selector (epoll/kqueue/poll where available, so
descriptors above ``FD_SETSIZE`` work) with a short timeout so that it can
notice a finish or cancellation signal, then reads up to ``BUFFER_SIZE`` bytes
and writes them straight through.

The relay is a first-to-finish join: end-of-stream, an I/O error in either
direction, or the external cancel event ends both loops. EOF and errors are
expected at teardown and are logged at debug level only.

The pump never closes the sockets; the session that owns them does.

Example:
    cancel = threading.Event()
    pump(client_sock, upstream_sock, cancel)
"""

import selectors
import socket
import threading
from typing import Final

from loguru import logger

from .stats import RelayStats

BUFFER_SIZE: Final = 4096
POLL_INTERVAL: Final = 0.5  # Seconds between checks of the finish/cancel signals
JOIN_TIMEOUT: Final = 30.0  # Upper bound on a loop stuck in a blocking send

UPSTREAM: Final = "client->upstream"
DOWNSTREAM: Final = "upstream->client"


class RelayPump:
    """Copy bytes both ways until either side finishes or ``cancel`` fires."""

    def __init__(
        self,
        client: socket.socket,
        upstream: socket.socket,
        cancel: threading.Event,
        *,
        stats: RelayStats | None = None,
        buffer_size: int = BUFFER_SIZE,
        poll_interval: float = POLL_INTERVAL,
        join_timeout: float = JOIN_TIMEOUT,
        label: str = "relay",
    ) -> None:
        self.client = client
        self.upstream = upstream
        self.cancel = cancel
        self.stats = stats
        self.buffer_size = buffer_size
        self.poll_interval = poll_interval
        self.join_timeout = join_timeout
        self.label = label
        self._done = threading.Event()

    def _count(self, direction: str, size: int) -> None:
        if self.stats is None:
            return
        if direction == UPSTREAM:
            self.stats.update_bytes(upstream=size)
        else:
            self.stats.update_bytes(downstream=size)

    def _copy(self, src: socket.socket, dst: socket.socket, direction: str) -> None:
        selector = selectors.DefaultSelector()
        try:
            if src.fileno() == -1:
                logger.debug(f"{self.label} {direction}: source socket already closed")
                return
            selector.register(src, selectors.EVENT_READ)
            while not self._done.is_set():
                if not selector.select(self.poll_interval):
                    continue
                data = src.recv(self.buffer_size)
                if not data:
                    logger.debug(f"{self.label} {direction}: end of stream")
                    return
                dst.sendall(data)
                self._count(direction, len(data))
        except OSError as e:
            logger.debug(f"{self.label} {direction}: {e}")
        finally:
            selector.close()
            self._done.set()

    def run(self) -> bool:
        """Relay until the first direction finishes.

        Returns:
            bool: True if the relay ended because ``cancel`` fired
        """
        threads = [
            threading.Thread(
                target=self._copy,
                args=(self.client, self.upstream, UPSTREAM),
                name=f"{self.label}-up",
                daemon=True,
            ),
            threading.Thread(
                target=self._copy,
                args=(self.upstream, self.client, DOWNSTREAM),
                name=f"{self.label}-down",
                daemon=True,
            ),
        ]
        for thread in threads:
            thread.start()

        cancelled = False
        while not self._done.wait(self.poll_interval):
            if self.cancel.is_set():
                cancelled = True
                break
        self._done.set()

        for thread in threads:
            thread.join(timeout=self.join_timeout)
            if thread.is_alive():
                logger.warning(f"{self.label}: {thread.name} did not stop within {self.join_timeout}s")
        if cancelled:
            logger.debug(f"{self.label}: cancelled")
        return cancelled


def pump(
    a: socket.socket,
    b: socket.socket,
    cancel: threading.Event,
    *,
    stats: RelayStats | None = None,
    poll_interval: float = POLL_INTERVAL,
) -> bool:
    """Relay bytes between ``a`` and ``b``; see ``RelayPump``."""
    return RelayPump(a, b, cancel, stats=stats, poll_interval=poll_interval).run()
