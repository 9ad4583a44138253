"""FQDN resolution with IPv4-first lookup and IPv6 fallback.

Two backends are available:
    - system:    the operating system resolver (``socket.getaddrinfo``)
    - dnspython: direct A/AAAA queries with dnspython, result cache disabled

Both share the same policy, implemented once in ``FqdnResolver.resolve``:
flush the system resolver cache (best effort), query IPv4, fall back to IPv6
only when IPv4 returned nothing, unwrap IPv4-mapped IPv6 addresses.
"""

from __future__ import annotations

import ctypes
import ipaddress
import logging
import socket
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import dns.exception
import dns.resolver

from whitelist_manager.errors import ResolutionError

logger = logging.getLogger(__name__)

# getaddrinfo error codes meaning "the name has no address of this family"
_NO_DATA_ERRORS = {
    code
    for code in (
        getattr(socket, "EAI_NONAME", None),
        getattr(socket, "EAI_NODATA", None),
        getattr(socket, "EAI_ADDRFAMILY", None),
    )
    if code is not None
}

# =============================================================================
# Resolver Cache Flushers
# =============================================================================


class ResolverCacheFlusher(ABC):
    """Flushes a system-wide resolver cache before a lookup."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def flush(self) -> None:
        """Flush the cache. May raise OSError or SubprocessError."""
        pass


class NullCacheFlusher(ResolverCacheFlusher):
    @property
    def name(self) -> str:
        return "none"

    def flush(self) -> None:
        pass


class CommandCacheFlusher(ResolverCacheFlusher):
    """Runs an external command such as ``resolvectl flush-caches``."""

    def __init__(self, command: Sequence[str], timeout_seconds: float = 5.0):
        self._command = list(command)
        self._timeout = timeout_seconds
        self._available = True

    @property
    def name(self) -> str:
        return " ".join(self._command)

    def flush(self) -> None:
        if not self._available:
            return
        try:
            subprocess.run(
                self._command,
                check=True,
                capture_output=True,
                timeout=self._timeout,
            )
        except FileNotFoundError:
            self._available = False
            logger.info(f"'{self._command[0]}' not found, resolver cache flushing disabled")


class WindowsCacheFlusher(ResolverCacheFlusher):
    """Calls DnsFlushResolverCache from dnsapi.dll."""

    @property
    def name(self) -> str:
        return "DnsFlushResolverCache"

    def flush(self) -> None:
        if not ctypes.windll.dnsapi.DnsFlushResolverCache():  # type: ignore[attr-defined]
            raise OSError("DnsFlushResolverCache returned failure")


def create_cache_flusher(enabled: bool = True, platform: Optional[str] = None) -> ResolverCacheFlusher:
    """Pick the cache flusher for the current (or given) platform."""
    if not enabled:
        return NullCacheFlusher()

    platform = platform or sys.platform
    if platform.startswith("win"):
        return WindowsCacheFlusher()
    if platform == "darwin":
        return CommandCacheFlusher(["dscacheutil", "-flushcache"])
    if platform.startswith("linux"):
        return CommandCacheFlusher(["resolvectl", "flush-caches"])
    return NullCacheFlusher()


# =============================================================================
# Address Normalization
# =============================================================================


def normalize_address(address: str) -> str:
    """Return the canonical text form, unwrapping ``::ffff:a.b.c.d`` to ``a.b.c.d``.

    Raises ValueError for anything that is not an IP address.
    """
    ip = ipaddress.ip_address(address.strip())
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def normalize_addresses(addresses: Sequence[str]) -> List[str]:
    """Normalize and de-duplicate, keeping first-seen order."""
    result: List[str] = []
    for address in addresses:
        normalized = normalize_address(address)
        if normalized not in result:
            result.append(normalized)
    return result


# =============================================================================
# Resolver Interface and Implementations
# =============================================================================


class FqdnResolver(ABC):
    """Resolves an FQDN to an ordered list of IP address strings."""

    def __init__(self, cache_flusher: Optional[ResolverCacheFlusher] = None):
        self.cache_flusher = cache_flusher or NullCacheFlusher()

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the backend name for logging."""
        pass

    @abstractmethod
    def _query(self, fqdn: str, family: int) -> List[str]:
        """Return the raw addresses of one family; empty when the name has none."""
        pass

    def resolve(self, fqdn: str) -> List[str]:
        fqdn = (fqdn or "").strip()
        if not fqdn:
            raise ResolutionError(fqdn, "empty FQDN")

        self._flush_cache()

        try:
            addresses = self._query(fqdn, socket.AF_INET)
            if not addresses:
                logger.debug(f"No IPv4 address for {fqdn}, trying IPv6")
                addresses = self._query(fqdn, socket.AF_INET6)
            addresses = normalize_addresses(addresses)
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(fqdn, e) from e

        if not addresses:
            raise ResolutionError(fqdn, "no IPv4 or IPv6 addresses found")
        return addresses

    def _flush_cache(self) -> None:
        try:
            self.cache_flusher.flush()
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug(f"Resolver cache flush ({self.cache_flusher.name}) failed: {e}")


class SystemResolver(FqdnResolver):
    """Resolver backed by the operating system via getaddrinfo."""

    @property
    def name(self) -> str:
        return "system"

    def _query(self, fqdn: str, family: int) -> List[str]:
        try:
            infos = socket.getaddrinfo(fqdn, None, family, socket.SOCK_STREAM)
        except socket.gaierror as e:
            if e.errno in _NO_DATA_ERRORS:
                return []
            raise
        return [str(info[4][0]) for info in infos if info[0] == family]


class DnsPythonResolver(FqdnResolver):
    """Resolver issuing A/AAAA queries directly with dnspython."""

    RECORD_TYPES = {socket.AF_INET: "A", socket.AF_INET6: "AAAA"}

    def __init__(
        self,
        nameservers: Optional[Sequence[str]] = None,
        timeout_seconds: float = 5.0,
        cache_flusher: Optional[ResolverCacheFlusher] = None,
    ):
        super().__init__(cache_flusher)
        self._resolver = dns.resolver.Resolver()
        self._resolver.lifetime = timeout_seconds
        if nameservers:
            self._resolver.nameservers = list(nameservers)

    @property
    def name(self) -> str:
        return "dnspython"

    def _query(self, fqdn: str, family: int) -> List[str]:
        # Fresh answers every tick.
        self._resolver.cache = None
        try:
            answer = self._resolver.resolve(fqdn, self.RECORD_TYPES[family], search=False)
        except (dns.resolver.NoAnswer, dns.resolver.NXDOMAIN):
            return []
        except dns.exception.DNSException as e:
            raise ResolutionError(fqdn, e) from e
        return [str(rdata.address) for rdata in answer]


def create_resolver(
    backend: str,
    *,
    cache_flusher: Optional[ResolverCacheFlusher] = None,
    nameservers: Optional[Sequence[str]] = None,
    timeout_seconds: float = 5.0,
) -> FqdnResolver:
    """Factory function to create the configured resolver backend."""
    if backend == "system":
        return SystemResolver(cache_flusher=cache_flusher)
    if backend == "dnspython":
        return DnsPythonResolver(
            nameservers=nameservers,
            timeout_seconds=timeout_seconds,
            cache_flusher=cache_flusher,
        )
    raise ValueError(f"Unsupported resolver backend: '{backend}'. Supported: system, dnspython")
