"""Statistics tracking for a running relay engine.

Each engine owns one ``RelayStats`` instance, tracking:
- Active and total session counts
- Bytes relayed in each direction
- Engine uptime

All operations are thread-safe; session threads and pump threads update the
counters concurrently while the CLI reads snapshots.

Example:
    stats = RelayStats()
    stats.session_started()
    stats.update_bytes(upstream=1024, downstream=2048)
"""

import threading
import time
from dataclasses import dataclass


@dataclass(frozen=True)
class StatsSnapshot:
    """Point-in-time copy of the relay counters."""

    active_sessions: int
    total_sessions: int
    bytes_upstream: int
    bytes_downstream: int
    uptime: float

    @property
    def total_bytes(self) -> int:
        return self.bytes_upstream + self.bytes_downstream


class RelayStats:
    """Thread-safe counters for one engine."""

    def __init__(self) -> None:
        self.active_sessions = 0
        self.total_sessions = 0
        self.bytes_upstream = 0
        self.bytes_downstream = 0
        self.start_time = time.monotonic()
        self._lock = threading.Lock()

    def update_bytes(self, upstream: int = 0, downstream: int = 0) -> None:
        """Record relayed bytes.

        Args:
            upstream: Bytes copied from the client towards the upstream
            downstream: Bytes copied from the upstream back to the client
        """
        with self._lock:
            self.bytes_upstream += upstream
            self.bytes_downstream += downstream

    def session_started(self) -> None:
        with self._lock:
            self.active_sessions += 1
            self.total_sessions += 1

    def session_ended(self) -> None:
        with self._lock:
            self.active_sessions -= 1

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                active_sessions=self.active_sessions,
                total_sessions=self.total_sessions,
                bytes_upstream=self.bytes_upstream,
                bytes_downstream=self.bytes_downstream,
                uptime=time.monotonic() - self.start_time,
            )
