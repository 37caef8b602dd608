"""Shared console and base class for the relay's terminal UIs."""

from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner

from proxy_relay.core.models import StatusEvent

console = Console()


def print_status_event(event: StatusEvent) -> None:
    """Print a controller status event, green when connected."""
    style = "green" if event.connected else "yellow"
    console.print(f"[{style}]{event.message}[/{style}]")


class PromptHandler:
    """Base class for the shell and the live status panel."""

    def __init__(self) -> None:
        self.running = True
        self._refresh_rate = 1.0
        self._spinner = Spinner("dots")

    def create_live_display(self, content, refresh_per_second: int = 2) -> Live:
        """Create a live updating display that clears itself on exit."""
        return Live(
            content,
            console=console,
            refresh_per_second=refresh_per_second,
            transient=True,
        )

    def stop(self) -> None:
        self.running = False
