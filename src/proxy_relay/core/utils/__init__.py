"""Utility functions and helpers."""

from proxy_relay.core.utils.utils import format_bytes, format_duration, parse_host_port

__all__ = ["format_bytes", "format_duration", "parse_host_port"]
