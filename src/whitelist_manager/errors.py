"""Exceptions raised by whitelist-manager components."""

from __future__ import annotations

from typing import Any


class WhitelistManagerError(Exception):
    """Base class for whitelist-manager errors."""


class ResolutionError(WhitelistManagerError):
    """An FQDN could not be resolved to any usable address."""

    def __init__(self, fqdn: str, cause: Any):
        self.fqdn = fqdn
        self.cause = cause
        super().__init__(f"Couldn't resolve FQDN {fqdn}: {cause}")


class ExportError(WhitelistManagerError):
    """Rendering or saving a whitelist artifact failed."""

    def __init__(self, schema_type: Any, cause: Any):
        self.schema_type = schema_type
        self.cause = cause
        label = getattr(schema_type, "value", schema_type)
        super().__init__(f"Failed to export whitelist '{label}': {cause}")


class ConfigError(WhitelistManagerError):
    """A settings file could not be loaded."""

    def __init__(self, path: str, cause: Any):
        self.path = path
        self.cause = cause
        super().__init__(f"Invalid configuration in {path}: {cause}")
