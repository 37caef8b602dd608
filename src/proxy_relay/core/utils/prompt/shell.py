"""Interactive relay shell.

A small prompt_toolkit REPL around a ``ProxyController``:

    relay> nodes
    relay> connect home
    relay> switch office
    relay> status
    relay> disconnect
    relay> quit

Node names are completed from the configuration. Status events from the
controller are printed as they arrive.
"""

from collections.abc import Callable

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.patch_stdout import patch_stdout

from proxy_relay.core.controller import ProxyController
from proxy_relay.core.models import format_host_port

from .prompt import PromptHandler, console, print_status_event
from .status_ui import nodes_table, stats_table

COMMANDS = {
    "nodes": "List configured nodes",
    "status": "Show the connection and relay counters",
    "connect": "connect NAME - relay through a node",
    "switch": "switch NAME - disconnect, settle, connect to another node",
    "disconnect": "Stop relaying",
    "help": "Show this help",
    "quit": "Disconnect and exit",
}


class RelayShell(PromptHandler):
    """Read commands and drive the controller until ``quit``."""

    def __init__(self, controller: ProxyController) -> None:
        super().__init__()
        self.controller = controller
        names = [node.name for node in controller.settings.nodes]
        self.completer = WordCompleter(list(COMMANDS) + names, ignore_case=True)
        self.handlers: dict[str, Callable[[str], None]] = {
            "nodes": self.do_nodes,
            "status": self.do_status,
            "connect": self.do_connect,
            "switch": self.do_switch,
            "disconnect": self.do_disconnect,
            "help": self.do_help,
            "quit": self.do_quit,
            "exit": self.do_quit,
        }

    def do_nodes(self, _: str) -> None:
        console.print(nodes_table(self.controller.settings.nodes, self.controller.current_node))

    def do_status(self, _: str) -> None:
        node = self.controller.current_node
        address = self.controller.local_address
        if node is None or address is None:
            console.print("[yellow]Disconnected[/yellow]")
        else:
            console.print(f"[green]Connected[/green] to {node} via {format_host_port(*address)}")
        console.print(stats_table(self.controller.stats()))

    def _lookup(self, name: str):
        if not name:
            console.print("[red]Give a node name[/red]")
            return None
        node = self.controller.settings.find_node(name)
        if node is None:
            console.print(f"[red]Unknown node: {name}[/red]")
        return node

    def do_connect(self, argument: str) -> None:
        node = self._lookup(argument)
        if node is not None:
            self.controller.connect(node)

    def do_switch(self, argument: str) -> None:
        node = self._lookup(argument)
        if node is not None:
            self.controller.switch_to(node)

    def do_disconnect(self, _: str) -> None:
        if not self.controller.is_connected:
            console.print("[yellow]Not connected[/yellow]")
        self.controller.disconnect()

    def do_help(self, _: str) -> None:
        for name, description in COMMANDS.items():
            console.print(f"  [cyan]{name:<11}[/cyan] {description}")

    def do_quit(self, _: str) -> None:
        self.stop()

    def execute(self, line: str) -> None:
        """Run one command line."""
        command, _, argument = line.strip().partition(" ")
        if not command:
            return
        handler = self.handlers.get(command.lower())
        if handler is None:
            console.print(f"[red]Unknown command: {command}[/red] (try 'help')")
            return
        handler(argument.strip())

    def run(self) -> None:
        """Prompt until ``quit``, Ctrl-C or Ctrl-D, then disconnect."""
        session: PromptSession = PromptSession(completer=self.completer)
        unsubscribe = self.controller.subscribe(print_status_event)
        try:
            with patch_stdout():
                while self.running:
                    try:
                        line = session.prompt("relay> ")
                    except (EOFError, KeyboardInterrupt):
                        break
                    self.execute(line)
        finally:
            unsubscribe()
            self.controller.disconnect()
