"""Settings files: tracked entries and whitelist outputs.

Example settings file:

    fqdn_update_job_seconds: 60
    entries:
      - name: api
        fqdn: api.example.com
      - name: office
        fqdn: office.dyndns.example.net
    whitelists:
      - schema_type: traefik_ip_whitelist_middleware_file
        allowed_entries: [api, office]
        traefik_middleware:
          name: office-whitelist
          file_path: /traefik/dynamic/office-whitelist.yml
      - schema_type: nginx_allow_list_file
        allowed_entries: [office]
        destination: /etc/nginx/allow/office.conf

CONFIG_PATH may also point to a directory; every ``*.yaml`` and ``*.yml`` file
in it is loaded in sorted order and merged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Optional, Tuple

import yaml

from whitelist_manager.errors import ConfigError
from whitelist_manager.export import SchemaType

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL_SECONDS = 60

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class EntrySettings:
    """A configured endpoint to track."""

    name: str
    fqdn: str


@dataclass(frozen=True)
class WhitelistOutputSpec:
    """One configured whitelist export target."""

    schema_type: SchemaType
    allowed_entry_names: Tuple[str, ...] = ()
    middleware_name: str = ""
    destination: str = ""


@dataclass(frozen=True)
class Settings:
    entries: Tuple[EntrySettings, ...] = ()
    whitelists: Tuple[WhitelistOutputSpec, ...] = ()
    update_interval_seconds: int = DEFAULT_UPDATE_INTERVAL_SECONDS


# =============================================================================
# Utility Functions
# =============================================================================


SETTINGS_SUFFIXES = (".yaml", ".yml")
TRUE_VALUES = {"1", "true", "yes", "y", "on"}
FALSE_VALUES = {"0", "false", "no", "n", "off"}


def parse_bool(value: Any, *, default: bool = True) -> bool:
    """Read an on/off flag from the environment; unset or unrecognised gives default."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in TRUE_VALUES:
        return True
    if text in FALSE_VALUES:
        return False
    if text:
        logger.warning(f"Unrecognised boolean '{value}', using {default}")
    return default


def find_settings_files(config_path: str) -> List[str]:
    """Settings files named by CONFIG_PATH, in merge order.

    A file path is used as is. A directory contributes its ``*.yaml`` and
    ``*.yml`` files sorted by name; hidden files and ``*.template`` samples
    are left out. A missing path yields no files.
    """
    path = Path(config_path)

    if path.is_file():
        return [str(path)]

    if path.is_dir():
        return [
            str(f)
            for f in sorted(path.iterdir())
            if f.is_file() and f.suffix in SETTINGS_SUFFIXES and not f.name.startswith(".")
        ]

    return []


def _parse_entries(items: Any, source: str) -> List[EntrySettings]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ConfigError(source, "'entries' must be a list")

    entries: List[EntrySettings] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed entry in {source}: {item}")
            continue
        name = str(item.get("name") or "").strip()
        fqdn = str(item.get("fqdn") or "").strip()
        if not name or not fqdn:
            logger.warning(f"Skipping entry without name/fqdn in {source}: {item}")
            continue
        entries.append(EntrySettings(name=name, fqdn=fqdn))
    return entries


def _parse_allowed_entries(value: Any) -> Optional[Tuple[str, ...]]:
    if value is None:
        return ()
    if not isinstance(value, list):
        return None

    names: List[str] = []
    for item in value:
        name = str(item or "").strip()
        if name and name not in names:
            names.append(name)
    return tuple(names)


def _parse_whitelists(items: Any, source: str) -> List[WhitelistOutputSpec]:
    if items is None:
        return []
    if not isinstance(items, list):
        raise ConfigError(source, "'whitelists' must be a list")

    outputs: List[WhitelistOutputSpec] = []
    for item in items:
        if not isinstance(item, dict):
            logger.warning(f"Skipping malformed whitelist in {source}: {item}")
            continue

        raw_type = str(item.get("schema_type") or "").strip().lower()
        try:
            schema_type = SchemaType(raw_type)
        except ValueError:
            supported = ", ".join(t.value for t in SchemaType)
            logger.warning(
                f"Skipping whitelist with unsupported schema_type '{raw_type}' in {source}. "
                f"Supported: {supported}"
            )
            continue

        allowed = _parse_allowed_entries(item.get("allowed_entries"))
        if allowed is None:
            logger.warning(f"Skipping whitelist '{raw_type}' in {source}: allowed_entries must be a list")
            continue

        # Traefik settings may be grouped in a block, flat keys take precedence.
        middleware = item.get("traefik_middleware") or {}
        if not isinstance(middleware, dict):
            middleware = {}
        middleware_name = str(item.get("middleware_name") or middleware.get("name") or "").strip()
        destination = str(
            item.get("destination") or middleware.get("file_path") or middleware.get("url") or ""
        ).strip()

        outputs.append(
            WhitelistOutputSpec(
                schema_type=schema_type,
                allowed_entry_names=allowed,
                middleware_name=middleware_name,
                destination=destination,
            )
        )
    return outputs


def _parse_interval(value: Any, source: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(source, f"fqdn_update_job_seconds must be an integer, got {value!r}") from e


# =============================================================================
# Loading
# =============================================================================


def load_settings(config_path: str) -> Settings:
    """Load and merge all settings files under config_path.

    Raises ConfigError when no file is found or any file is unreadable.
    """
    config_files = find_settings_files(config_path)
    if not config_files:
        raise ConfigError(config_path, "no settings file found")

    entries: List[EntrySettings] = []
    whitelists: List[WhitelistOutputSpec] = []
    interval: Optional[int] = None
    seen_names = set()

    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(config_file, e) from e

        if config_data is None:
            logger.warning(f"Config file {config_file} is empty")
            continue
        if not isinstance(config_data, dict):
            raise ConfigError(config_file, "top level must be a mapping")

        for entry in _parse_entries(config_data.get("entries"), config_file):
            if entry.name in seen_names:
                logger.warning(f"Duplicate entry '{entry.name}' in {config_file}, keeping the first")
                continue
            seen_names.add(entry.name)
            entries.append(entry)

        whitelists.extend(_parse_whitelists(config_data.get("whitelists"), config_file))

        if interval is None and config_data.get("fqdn_update_job_seconds") is not None:
            interval = _parse_interval(config_data["fqdn_update_job_seconds"], config_file)

    return Settings(
        entries=tuple(entries),
        whitelists=tuple(whitelists),
        update_interval_seconds=interval if interval is not None else DEFAULT_UPDATE_INTERVAL_SECONDS,
    )


class SettingsProvider:
    """Re-reads settings on every call, falling back to the last good snapshot."""

    def __init__(self, config_path: str, interval_override: Optional[int] = None):
        self.config_path = config_path
        self.interval_override = interval_override
        self._last_good: Optional[Settings] = None

    def current(self) -> Settings:
        try:
            settings = load_settings(self.config_path)
        except ConfigError as e:
            if self._last_good is None:
                raise
            logger.error(f"Failed to reload configuration: {e}")
            logger.warning("Continuing with previous configuration")
            return self._last_good

        if self.interval_override is not None:
            settings = replace(settings, update_interval_seconds=self.interval_override)
        self._last_good = settings
        return settings
