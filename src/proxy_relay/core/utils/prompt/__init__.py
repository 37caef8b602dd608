"""Prompt and UI utilities."""

from proxy_relay.core.utils.prompt.prompt import PromptHandler, console, print_status_event
from proxy_relay.core.utils.prompt.shell import RelayShell
from proxy_relay.core.utils.prompt.status_ui import StatusUI, create_status_ui, nodes_table, stats_table

__all__ = [
    "console",
    "create_status_ui",
    "nodes_table",
    "print_status_event",
    "PromptHandler",
    "RelayShell",
    "stats_table",
    "StatusUI",
]
