"""Core relay implementation.

This package contains the core components of the relay:
- Wire codec for SOCKS5 and HTTP proxy framing
- Inbound handshake handlers and the upstream connector
- The bidirectional relay pump and the listener/session engine
- The controller that selects and owns the active engine
- Configuration, statistics and exception handling

The core package provides all the fundamental functionality needed
to run the relay, while keeping the implementation details
separate from the command-line interface.
"""
