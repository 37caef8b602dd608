"""OS-level proxy setting hooks.

The controller tells a toggler when the local relay comes up and goes down, so
that the operating system (or the user's shell) can point traffic at it. Real
registry or desktop-settings mutation is not implemented here; the shipped
togglers either log or print the environment variables to use.
"""

from typing import Protocol

from loguru import logger
from rich.console import Console

from proxy_relay.core.models import format_host_port

console = Console()


class SystemProxyToggler(Protocol):
    """Receives relay up/down notifications from the controller."""

    def enable(self, host: str, port: int) -> None: ...

    def restore(self) -> None: ...


class NoopSystemProxy:
    """Leave system settings alone, only log."""

    def enable(self, host: str, port: int) -> None:
        logger.debug(f"System proxy would point at {format_host_port(host, port)}")

    def restore(self) -> None:
        logger.debug("System proxy would be restored")


class ShellHintProxy:
    """Print shell commands that route CLI tools through the relay."""

    def __init__(self) -> None:
        self.address: str | None = None

    def enable(self, host: str, port: int) -> None:
        self.address = f"http://{format_host_port(host, port)}"
        console.print("[cyan]Route shell traffic through the relay with:[/cyan]")
        console.print(f"  export http_proxy={self.address} https_proxy={self.address}")

    def restore(self) -> None:
        if self.address is None:
            return
        self.address = None
        console.print("[cyan]Relay stopped, clear the proxy variables with:[/cyan]")
        console.print("  unset http_proxy https_proxy")
