#!/usr/bin/env python3
"""whitelist-manager - DNS-driven IP Whitelists

Keeps a set of named endpoints resolved by FQDN and regenerates whitelist
artifacts for network middleware (Traefik, nginx) from their current addresses.
It only writes the artifacts; the middleware picks them up on its own.

Supported schema types:
    - traefik_ip_whitelist_middleware_file: Traefik v2 ipWhiteList dynamic config file
    - traefik_ip_allowlist_middleware_file: Traefik v3 ipAllowList dynamic config file
    - traefik_ip_whitelist_middleware_http: Traefik v2 ipWhiteList PUT to a config server
    - nginx_allow_list_file:                nginx allow/deny include file

Environment variables:

    Settings:
        CONFIG_PATH              Settings YAML file, or directory of *.yaml files
                                 (default: /config/whitelist.yaml)
                                 Re-read on every reconciliation.
        ENTRIES_PATH             JSON entry store path (default: /data/entries.json)

    Resolution:
        RESOLVER_BACKEND         "system" (getaddrinfo) or "dnspython" (default: system)
        DNS_NAMESERVERS          Comma-separated nameservers for dnspython (optional)
        DNS_TIMEOUT_SECONDS      dnspython query lifetime (default: 5)
        FLUSH_DNS_CACHE          Flush the system resolver cache before each lookup
                                 (default: true)

    Export:
        HTTP_TIMEOUT_SECONDS     Timeout for HTTP schema repositories (default: 10)

    Runtime:
        SYNC_MODE                "once" or "watch" (default: watch)
        FQDN_UPDATE_JOB_SECONDS  Overrides fqdn_update_job_seconds from the settings file.
                                 Values below 30 are raised to 30.
        LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from whitelist_manager.config import SettingsProvider, parse_bool
from whitelist_manager.errors import ConfigError
from whitelist_manager.export import create_export_registry
from whitelist_manager.reconciler import Reconciler
from whitelist_manager.resolver import create_cache_flusher, create_resolver
from whitelist_manager.store import JsonEntryRepository

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/whitelist.yaml")
ENTRIES_PATH = os.getenv("ENTRIES_PATH", "/data/entries.json")

RESOLVER_BACKEND = os.getenv("RESOLVER_BACKEND", "system").lower().strip()
DNS_NAMESERVERS = os.getenv("DNS_NAMESERVERS", "")
DNS_TIMEOUT_SECONDS = float(os.getenv("DNS_TIMEOUT_SECONDS", "5"))
FLUSH_DNS_CACHE = parse_bool(os.getenv("FLUSH_DNS_CACHE"), default=True)

HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

SYNC_MODE = os.getenv("SYNC_MODE", "watch")
FQDN_UPDATE_JOB_SECONDS = os.getenv("FQDN_UPDATE_JOB_SECONDS", "").strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Utility Functions
# =============================================================================


def _parse_nameservers(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_interval_override(value: str) -> Optional[int]:
    if not value:
        return None
    return int(value)


# =============================================================================
# Main
# =============================================================================


def validate_config() -> bool:
    """Validate configuration."""
    errors = []

    if RESOLVER_BACKEND not in ("system", "dnspython"):
        errors.append(f"Unsupported RESOLVER_BACKEND: {RESOLVER_BACKEND}. Supported: system, dnspython")

    if SYNC_MODE not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {SYNC_MODE}. Use 'once' or 'watch'")

    try:
        _parse_interval_override(FQDN_UPDATE_JOB_SECONDS)
    except ValueError:
        errors.append(f"FQDN_UPDATE_JOB_SECONDS must be an integer, got '{FQDN_UPDATE_JOB_SECONDS}'")

    try:
        settings = SettingsProvider(CONFIG_PATH).current()
        if not settings.entries:
            logger.warning(f"No entries configured in {CONFIG_PATH}")
        if not settings.whitelists:
            logger.warning(f"No whitelists configured in {CONFIG_PATH}")
    except ConfigError as e:
        errors.append(str(e))

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def create_reconciler() -> Reconciler:
    """Build the reconciler from the environment configuration."""
    # dnspython talks to nameservers directly, the system cache is not involved.
    cache_flusher = create_cache_flusher(enabled=FLUSH_DNS_CACHE and RESOLVER_BACKEND == "system")
    resolver = create_resolver(
        RESOLVER_BACKEND,
        cache_flusher=cache_flusher,
        nameservers=_parse_nameservers(DNS_NAMESERVERS),
        timeout_seconds=DNS_TIMEOUT_SECONDS,
    )
    registry = create_export_registry(http_timeout_seconds=HTTP_TIMEOUT_SECONDS)

    logger.info(f"Resolver: {resolver.name} (cache flush: {cache_flusher.name})")
    logger.info(f"Schema types: {', '.join(t.value for t in registry.schema_types)}")
    logger.info(f"Entry store: {ENTRIES_PATH}")

    return Reconciler(
        settings_provider=SettingsProvider(
            CONFIG_PATH, interval_override=_parse_interval_override(FQDN_UPDATE_JOB_SECONDS)
        ),
        resolver=resolver,
        entry_repository=JsonEntryRepository(ENTRIES_PATH),
        export_registry=registry,
    )


def main():
    """Main entry point."""
    logger.info(f"whitelist-manager: {CONFIG_PATH}")

    if not validate_config():
        logger.error("Configuration validation failed")
        sys.exit(1)

    reconciler = create_reconciler()
    logger.info(f"Sync mode: {SYNC_MODE}")

    if SYNC_MODE == "once":
        reconciler.run_reconciliation_tick()
        return

    shutdown = threading.Event()

    def _request_shutdown(signum, frame):
        logger.info(f"Received signal {signum}")
        shutdown.set()

    signal.signal(signal.SIGTERM, _request_shutdown)

    try:
        reconciler.start()
    except Exception:
        sys.exit(1)

    try:
        while not shutdown.wait(1.0):
            pass
    except KeyboardInterrupt:
        pass
    logger.info("Shutting down gracefully...")
    reconciler.stop()


if __name__ == "__main__":
    main()
