"""Relay configuration.

Settings are read from a TOML file, ``~/.proxy-relay/config.toml`` by default:

    local_port = 7890
    enable_system_proxy = true
    selected_node = "home"

    [[nodes]]
    name = "home"
    type = "socks5"
    server = "203.0.113.10"
    port = 1080
    username = "alice"
    password = "secret"

A missing file yields the defaults. The settings object is handed to the
controller explicitly; there is no global settings store and nothing is ever
written back.
"""

import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Final

from loguru import logger

from proxy_relay.core.exceptions import ConfigError
from proxy_relay.core.models import ProxyDialect, ProxyNode

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

CONFIG_DIR: Final = Path.home() / ".proxy-relay"
CONFIG_PATH: Final = CONFIG_DIR / "config.toml"

DEFAULT_LOCAL_PORT: Final = 7890
DEFAULT_SETTLE_DELAY: Final = 0.5  # Seconds between disconnect and rebind on switch


@dataclass
class RelaySettings:
    """Everything the controller and CLI need to run the relay.

    Attributes:
        listen_host: Address the local listener binds to
        local_port: Local listening port
        enable_system_proxy: Notify the system proxy toggler on connect/disconnect
        log_level: Console log level
        connect_timeout: Seconds allowed for connecting and handshaking upstream
        io_timeout: Seconds allowed for any single socket read or write
        settle_delay: Seconds to wait between disconnect and connect on a switch
        nodes: Node catalog
        selected_node: Name of the node to connect to by default
    """

    listen_host: str = "127.0.0.1"
    local_port: int = DEFAULT_LOCAL_PORT
    enable_system_proxy: bool = True
    log_level: str = "INFO"
    connect_timeout: float = 10.0
    io_timeout: float = 30.0
    settle_delay: float = DEFAULT_SETTLE_DELAY
    nodes: list[ProxyNode] = field(default_factory=list)
    selected_node: str | None = None

    def find_node(self, name: str) -> ProxyNode | None:
        """Look a node up by name, case-insensitively."""
        wanted = name.strip().lower()
        for node in self.nodes:
            if node.name.lower() == wanted:
                return node
        return None

    def default_node(self) -> ProxyNode | None:
        """The selected node, else the first configured node."""
        if self.selected_node:
            node = self.find_node(self.selected_node)
            if node is not None:
                return node
            logger.warning(f"Selected node {self.selected_node!r} is not configured")
        return self.nodes[0] if self.nodes else None


def parse_node(data: dict[str, Any]) -> ProxyNode:
    """Build a node from one ``[[nodes]]`` table.

    Raises:
        ConfigError: If a field is missing, has the wrong type or the node is invalid
    """
    name = str(data.get("name") or f"{data.get('server', '?')}:{data.get('port', '?')}")
    try:
        node = ProxyNode(
            name=name,
            dialect=ProxyDialect.parse(str(data.get("type", ProxyDialect.SOCKS5.value))),
            server=str(data["server"]),
            port=int(data["port"]),
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
        )
    except KeyError as e:
        raise ConfigError(f"Node {name!r} is missing {e.args[0]!r}") from None
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Node {name!r}: {e}") from None

    if not node.is_valid():
        raise ConfigError(f"Node {name!r} is invalid: check server, port and credentials")
    return node


def parse_settings(data: dict[str, Any]) -> RelaySettings:
    """Build settings from a parsed TOML document."""
    known = {f.name for f in fields(RelaySettings)} - {"nodes"}
    unknown = set(data) - known - {"nodes"}
    if unknown:
        logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")

    raw_nodes = data.get("nodes", [])
    if not isinstance(raw_nodes, list):
        raise ConfigError("'nodes' must be an array of tables")
    nodes = [parse_node(item) for item in raw_nodes]

    names = [node.name.lower() for node in nodes]
    duplicates = {name for name in names if names.count(name) > 1}
    if duplicates:
        raise ConfigError(f"Duplicate node names: {', '.join(sorted(duplicates))}")

    values = {key: value for key, value in data.items() if key in known}
    try:
        settings = RelaySettings(nodes=nodes, **values)
    except TypeError as e:
        raise ConfigError(str(e)) from None

    if not isinstance(settings.local_port, int) or not 0 <= settings.local_port <= 65535:
        raise ConfigError(f"local_port out of range: {settings.local_port}")
    return settings


def load_settings(path: Path | None = None) -> RelaySettings:
    """Load settings from ``path`` (default ``~/.proxy-relay/config.toml``).

    Raises:
        ConfigError: If the file cannot be read or does not describe valid settings
    """
    path = path or CONFIG_PATH
    if not path.exists():
        logger.info(f"No configuration at {path}, using defaults")
        return RelaySettings()

    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    settings = parse_settings(data)
    logger.debug(f"Loaded {len(settings.nodes)} node(s) from {path}")
    return settings
