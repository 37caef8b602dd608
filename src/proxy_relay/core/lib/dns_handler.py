"""Upstream host resolution using the system resolver and dnspython."""

import ipaddress
import socket
import threading
import time
from typing import TYPE_CHECKING, cast

import dns.exception
import dns.resolver
from loguru import logger

from proxy_relay.core.exceptions import ConnectTimeoutError, DNSResolutionError

if TYPE_CHECKING:
    from dns.resolver import Resolver

# DNS resolver constants
DEFAULT_TIMEOUT = 1.0  # seconds
DEFAULT_LIFETIME = 3.0  # seconds
CACHE_TTL = 300.0  # seconds
DEFAULT_NAMESERVERS = [
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
]
RECORD_TYPES = ("A", "AAAA")


class DNSResolver:
    """Resolve upstream proxy host names.

    The system resolver is tried first so that ``/etc/hosts`` entries and local
    search domains keep working; public nameservers are the fallback for
    networks where the system resolver is broken or hijacked.
    """

    def __init__(self, nameservers: list[str] | None = None, cache_ttl: float = CACHE_TTL) -> None:
        self.lifetime = DEFAULT_LIFETIME
        self.resolver = cast("Resolver", dns.resolver.Resolver(configure=False))
        self.resolver.timeout = DEFAULT_TIMEOUT
        self.resolver.lifetime = self.lifetime
        self.resolver.nameservers = list(nameservers or DEFAULT_NAMESERVERS)
        self.cache_ttl = cache_ttl
        self._cache: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()

    def _try_system_dns(self, host: str) -> str | None:
        try:
            infos = socket.getaddrinfo(host, None, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.debug(f"System DNS resolution failed for {host}: {e}")
            return None
        return str(infos[0][4][0]) if infos else None

    def _try_configured_resolver(self, host: str, lifetime: float) -> str | None:
        for record_type in RECORD_TYPES:
            try:
                answer = self.resolver.resolve(host, record_type, lifetime=lifetime)
            except dns.exception.DNSException as e:
                logger.debug(f"Resolver lookup {record_type} failed for {host}: {e}")
                continue
            return str(answer[0])
        return None

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _cached(self, host: str) -> str | None:
        with self._lock:
            entry = self._cache.get(host)
            if entry is None:
                return None
            ip, expires = entry
            if expires <= time.monotonic():
                del self._cache[host]
                return None
        return ip

    def resolve(self, host: str, timeout: float | None = None) -> str:
        """Resolve a host name to an IP address string.

        IP literals are returned unchanged. Results are cached for
        ``cache_ttl`` seconds.

        Args:
            host: Host name or IP literal
            timeout: Budget in seconds for the lookup, unbounded when None

        Returns:
            str: Resolved IP address

        Raises:
            ConnectTimeoutError: If the budget runs out before the fallback resolver
            DNSResolutionError: If every resolution method fails
        """
        literal = host.strip("[]")
        try:
            ipaddress.ip_address(literal)
        except ValueError:
            pass
        else:
            return literal

        cached = self._cached(host)
        if cached:
            return cached

        started = time.monotonic()
        ip = self._try_system_dns(host)
        if not ip:
            lifetime = self.lifetime
            if timeout is not None:
                left = timeout - (time.monotonic() - started)
                if left <= 0:
                    raise ConnectTimeoutError(f"Timed out resolving {host}")
                lifetime = min(lifetime, left)
            ip = self._try_configured_resolver(host, lifetime)
        if not ip:
            error_msg = f"Could not resolve {host} using any available method"
            logger.error(error_msg)
            raise DNSResolutionError(error_msg)

        with self._lock:
            self._cache[host] = (ip, time.monotonic() + self.cache_ttl)
        logger.debug(f"Resolved {host} to {ip}")
        return ip


# Shared resolver instance
dns_resolver = DNSResolver()
