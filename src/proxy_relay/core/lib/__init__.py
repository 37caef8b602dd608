"""Core relay library components."""

from .connector import HttpOutbound, Socks5Outbound, UpstreamConnection, connect
from .engine import SUPPORTED_PAIRINGS, EngineState, RelayEngine, create_engine
from .handshake import HttpInbound, InboundRequest, Socks5Inbound
from .relay import RelayPump, pump
from .stats import RelayStats, StatsSnapshot

__all__ = [
    "connect",
    "create_engine",
    "EngineState",
    "HttpInbound",
    "HttpOutbound",
    "InboundRequest",
    "pump",
    "RelayEngine",
    "RelayPump",
    "RelayStats",
    "Socks5Inbound",
    "Socks5Outbound",
    "StatsSnapshot",
    "SUPPORTED_PAIRINGS",
    "UpstreamConnection",
]
