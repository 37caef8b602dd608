"""Status rendering for the relay.

Builds rich renderables for the node catalog and the live engine counters, and
a ``StatusUI`` that keeps a panel refreshed while a standalone engine serves.
"""

import threading
import time

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from proxy_relay.core.lib.engine import RelayEngine
from proxy_relay.core.lib.stats import StatsSnapshot
from proxy_relay.core.models import ProxyNode, format_host_port
from proxy_relay.core.utils.utils import format_bytes, format_duration

from .prompt import PromptHandler, console


def nodes_table(nodes: list[ProxyNode], current: ProxyNode | None = None) -> Table:
    """Table of configured nodes, the connected one marked."""
    table = Table(title="Proxy nodes", header_style="bold cyan")
    table.add_column("", width=1)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Type", style="magenta")
    table.add_column("Server", style="green")
    table.add_column("Auth")

    for node in nodes:
        marker = "[green]●[/green]" if current is not None and node.name == current.name else ""
        table.add_row(
            marker,
            node.name,
            node.dialect.value,
            format_host_port(node.server, node.port),
            "yes" if node.username else "no",
        )
    return table


def stats_table(snapshot: StatsSnapshot | None) -> Table:
    """Two-column table of relay counters."""
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value", style="green", no_wrap=True)
    if snapshot is None:
        table.add_row("State", "disconnected")
        return table

    table.add_row("Uptime", format_duration(snapshot.uptime))
    table.add_row("Active Sessions", str(snapshot.active_sessions))
    table.add_row("Total Sessions", str(snapshot.total_sessions))
    table.add_row("Sent", format_bytes(snapshot.bytes_upstream))
    table.add_row("Received", format_bytes(snapshot.bytes_downstream))
    return table


class StatusUI(PromptHandler):
    """Live statistics panel for one running engine."""

    def __init__(self, engine: RelayEngine) -> None:
        super().__init__()
        self.engine = engine
        self._refresh_rate = 0.5
        self._start_time = time.monotonic()

    def _generate_display(self) -> Panel:
        host, port = self.engine.local_address or (self.engine.listen_host, 0)
        title = Text(
            f"{self.engine.name} relay: {format_host_port(host, port)} -> {self.engine.endpoint}",
            style="bold cyan",
        )
        spinner = self._spinner.render(time.monotonic() - self._start_time)
        table = stats_table(self.engine.stats.snapshot())
        return Panel(
            table,
            title=title,
            subtitle=Text.assemble(spinner, " Press Ctrl+C to exit"),
            border_style="blue",
            padding=(1, 2),
        )

    def run(self) -> None:
        """Refresh the panel until ``stop`` is called or the engine stops."""
        with self.create_live_display(self._generate_display(), refresh_per_second=4) as live:
            while self.running and self.engine.is_running:
                live.update(self._generate_display())
                time.sleep(self._refresh_rate)


def create_status_ui(engine: RelayEngine) -> tuple[StatusUI, threading.Thread]:
    """Create the status panel and the thread that drives it."""
    ui = StatusUI(engine)
    return ui, threading.Thread(target=ui.run, name="status-ui", daemon=True)


__all__ = ["console", "create_status_ui", "nodes_table", "stats_table", "StatusUI"]
