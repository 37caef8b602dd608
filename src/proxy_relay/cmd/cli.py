"""Command-line interface for the proxy relay.

This module provides the main command-line interface for the relay, handling:
- Loading the node catalog from the configuration file
- Connecting to a node and driving the interactive shell
- Running a single engine for any supported dialect pairing
- Error reporting

The CLI is built using Typer and provides:
- ``nodes``: list the configured nodes
- ``run``: connect to a node through the controller and open the relay shell
- ``serve``: relay straight to an upstream given on the command line

Example:
    # Run from command line:
    $ proxy-relay run --node home
    $ proxy-relay serve --upstream 203.0.113.10:1080 --inbound socks5 --port 10800
"""

import sys
import time
from pathlib import Path

import pyperclip
import typer
from loguru import logger
from rich.console import Console

from proxy_relay import __version__
from proxy_relay.core.config import RelaySettings, load_settings
from proxy_relay.core.controller import ProxyController
from proxy_relay.core.exceptions import ConfigError, ProxyError
from proxy_relay.core.lib.engine import create_engine
from proxy_relay.core.models import ProxyDialect, UpstreamEndpoint, format_host_port
from proxy_relay.core.system_proxy import ShellHintProxy
from proxy_relay.core.utils.log_config import configure_logging
from proxy_relay.core.utils.prompt import RelayShell, create_status_ui, nodes_table
from proxy_relay.core.utils.utils import parse_host_port

console = Console()
app = typer.Typer(help="Local relay forwarding SOCKS5 and HTTP clients through a remote proxy")

CLIPBOARD_DELAY = 0.5  # Seconds to show the clipboard confirmation


@app.callback(invoke_without_command=True)
def version_callback():
    """Show version information."""
    console.print(f"[cyan]Proxy Relay v{__version__}[/cyan]")


def _load(config: Path | None) -> RelaySettings:
    try:
        return load_settings(config)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        console.print(f"[red]Configuration error: {e}")
        raise typer.Exit(1) from None


def copy_to_clipboard(address: str) -> None:
    """Copy the local relay address, warning when no clipboard is available."""
    try:
        pyperclip.copy(address)
        console.print(f"[bold green]Relay address {address} copied to clipboard")
        time.sleep(CLIPBOARD_DELAY)
    except pyperclip.PyperclipException as e:
        logger.warning(f"Could not copy to clipboard: {e}")
        console.print(f"[yellow]Could not copy to clipboard: {e}")


@app.command(name="nodes")
def list_nodes(
    config: Path | None = typer.Option(None, "--config", "-c", help="Configuration file"),
):
    """List the configured proxy nodes."""
    settings = _load(config)
    if not settings.nodes:
        console.print("[yellow]No nodes configured")
        return
    console.print(nodes_table(settings.nodes, settings.default_node()))


@app.command(name="run")
def run_relay(
    config: Path | None = typer.Option(None, "--config", "-c", help="Configuration file"),
    node_name: str | None = typer.Option(None, "--node", "-n", help="Node to connect to"),
    port: int | None = typer.Option(None, "--port", "-p", help="Local port (default from config)"),
    copy: bool = typer.Option(True, "--copy/--no-copy", help="Copy the local address to the clipboard"),
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
):
    """Connect to a node and open the interactive relay shell."""
    settings = _load(config)
    configure_logging("DEBUG" if debug else settings.log_level)
    if port is not None:
        settings.local_port = port

    node = settings.find_node(node_name) if node_name else settings.default_node()
    if node is None:
        console.print(f"[red]No such node: {node_name}" if node_name else "[red]No nodes configured")
        raise typer.Exit(1)

    controller = ProxyController(settings, ShellHintProxy())
    unsubscribe = controller.subscribe(lambda event: logger.debug(f"Status: {event.message}"))
    try:
        if not controller.connect(node):
            console.print(f"[red]Could not connect to {node.name}, see the log for details")
        elif copy and controller.local_address:
            copy_to_clipboard(format_host_port(*controller.local_address))
        RelayShell(controller).run()
    finally:
        unsubscribe()
        controller.disconnect()


@app.command(name="serve")
def serve(
    upstream: str = typer.Option(..., "--upstream", "-u", help="Upstream proxy as HOST:PORT"),
    dialect: str = typer.Option("socks5", "--dialect", "-d", help="Upstream dialect: socks5 or http"),
    inbound: str = typer.Option("http", "--inbound", "-i", help="Local dialect: socks5 or http"),
    username: str = typer.Option("", "--username", help="Upstream username"),
    password: str = typer.Option("", "--password", help="Upstream password"),
    host: str = typer.Option("127.0.0.1", "--host", help="Local address to listen on"),
    port: int = typer.Option(7890, "--port", "-p", help="Local port"),
    debug: bool = typer.Option(default=False, help="Enable debug logging"),
):
    """Run one relay engine until interrupted."""
    configure_logging("DEBUG" if debug else "INFO")
    try:
        upstream_host, upstream_port = parse_host_port(upstream)
        endpoint = UpstreamEndpoint(upstream_host, upstream_port, username, password)
        engine = create_engine(ProxyDialect.parse(inbound), ProxyDialect.parse(dialect), listen_host=host)
    except ValueError as e:
        console.print(f"[red]{e}")
        raise typer.Exit(2) from None

    try:
        engine.start(endpoint, port)
    except ProxyError as e:
        logger.error(f"Error starting relay: {e}")
        console.print(f"[red]Error: {e}")
        sys.exit(1)

    ui, ui_thread = create_status_ui(engine)
    ui_thread.start()
    try:
        while engine.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down relay")
    finally:
        ui.stop()
        engine.stop()
        ui_thread.join(timeout=2)


if __name__ == "__main__":
    app()
