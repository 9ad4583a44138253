"""Whitelist export: schema adaptors, schema repositories and their registry.

A schema type selects an adaptor, which renders a list of entries into an
artifact, and a repository, which persists that artifact to its destination.

Supported schema types:
    - traefik_ip_whitelist_middleware_file: Traefik v2 ipWhiteList middleware, YAML file
    - traefik_ip_allowlist_middleware_file: Traefik v3 ipAllowList middleware, YAML file
    - traefik_ip_whitelist_middleware_http: Traefik v2 ipWhiteList middleware, HTTP PUT
    - nginx_allow_list_file:                nginx allow/deny include file
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Sequence, Tuple

import requests
import yaml

from whitelist_manager.errors import ExportError
from whitelist_manager.store import Entry

if TYPE_CHECKING:
    from whitelist_manager.config import WhitelistOutputSpec

logger = logging.getLogger(__name__)

# =============================================================================
# Enums
# =============================================================================


class SchemaType(Enum):
    """Whitelist artifact formats and destinations."""

    TRAEFIK_IP_WHITELIST_MIDDLEWARE_FILE = "traefik_ip_whitelist_middleware_file"
    TRAEFIK_IP_ALLOWLIST_MIDDLEWARE_FILE = "traefik_ip_allowlist_middleware_file"
    TRAEFIK_IP_WHITELIST_MIDDLEWARE_HTTP = "traefik_ip_whitelist_middleware_http"
    NGINX_ALLOW_LIST_FILE = "nginx_allow_list_file"


def _entry_addresses(entries: Sequence[Entry]) -> List[Tuple[str, str]]:
    """(address, entry name) pairs for entries with a resolved address, de-duplicated."""
    pairs: List[Tuple[str, str]] = []
    seen = set()
    for entry in entries:
        if not entry.latest_ip:
            logger.debug(f"Entry '{entry.name}' has no resolved address yet, leaving it out")
            continue
        if entry.latest_ip in seen:
            continue
        seen.add(entry.latest_ip)
        pairs.append((entry.latest_ip, entry.name))
    return pairs


# =============================================================================
# Schema Adaptors
# =============================================================================


class SchemaAdaptor(ABC):
    """Converts a list of entries into a rendered schema."""

    @abstractmethod
    def get_schema(self, entries: List[Entry], name: str) -> Any:
        pass


class TraefikMiddlewareAdaptor(SchemaAdaptor):
    """Renders a Traefik dynamic configuration document with one IP middleware.

    Traefik v2 calls the middleware ``ipWhiteList``, v3 renamed it to
    ``ipAllowList``; the document shape is otherwise identical:

        http:
          middlewares:
            <name>:
              ipWhiteList:
                sourceRange:
                  - 10.0.0.5
    """

    def __init__(self, middleware_key: str = "ipWhiteList"):
        self.middleware_key = middleware_key

    def get_schema(self, entries: List[Entry], name: str) -> Dict[str, Any]:
        if not name:
            raise ExportError(self.middleware_key, "middleware name is required")

        source_range = [address for address, _ in _entry_addresses(entries)]
        if not source_range:
            # Traefik rejects an empty sourceRange, keep the previous artifact instead.
            raise ExportError(self.middleware_key, f"no resolved addresses for middleware '{name}'")

        return {
            "http": {
                "middlewares": {
                    name: {self.middleware_key: {"sourceRange": source_range}},
                }
            }
        }


class NginxAllowListAdaptor(SchemaAdaptor):
    """Renders an nginx include file: one ``allow`` per address, then ``deny all``."""

    HEADER = "# Managed by whitelist-manager, changes will be overwritten."

    def get_schema(self, entries: List[Entry], name: str) -> str:
        pairs = _entry_addresses(entries)
        if not pairs:
            raise ExportError("nginx", "no resolved addresses for allow list")

        lines = [self.HEADER]
        lines.extend(f"allow {address};  # {entry_name}" for address, entry_name in pairs)
        lines.append("deny all;")
        return "\n".join(lines) + "\n"


# =============================================================================
# Schema Repositories
# =============================================================================


class SchemaRepository(ABC):
    """Persists a rendered schema to its destination."""

    @abstractmethod
    def save(self, schema: Any, destination: str) -> None:
        pass


class FileSchemaRepository(SchemaRepository):
    """Writes the serialized schema to a file via temp file + rename."""

    def serialize(self, schema: Any) -> str:
        return str(schema)

    def save(self, schema: Any, destination: str) -> None:
        if not destination:
            raise ExportError("file", "destination path is required")

        path = Path(destination)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_text(self.serialize(schema), "utf-8")
        tmp_path.replace(path)
        logger.info(f"Wrote whitelist to {path}")


class YamlFileSchemaRepository(FileSchemaRepository):
    def serialize(self, schema: Any) -> str:
        return yaml.safe_dump(schema, default_flow_style=False, sort_keys=False)


class TextFileSchemaRepository(FileSchemaRepository):
    pass


class HttpSchemaRepository(SchemaRepository):
    """PUTs the schema as YAML to a URL, e.g. a config server polled by Traefik's HTTP provider."""

    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = timeout_seconds
        self._session = requests.Session()

    def save(self, schema: Any, destination: str) -> None:
        if not destination:
            raise ExportError("http", "destination URL is required")

        body = yaml.safe_dump(schema, default_flow_style=False, sort_keys=False)
        response = self._session.put(
            destination,
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/yaml"},
            timeout=self._timeout,
        )
        response.raise_for_status()
        logger.info(f"Published whitelist to {destination}")


# =============================================================================
# Export Registry
# =============================================================================


@dataclass(frozen=True)
class ExportRoute:
    """The adaptor/repository pair for one schema type, and the parameters it uses."""

    adaptor: SchemaAdaptor
    repository: SchemaRepository
    uses_name: bool = False
    uses_destination: bool = True

    def parameters(self, spec: "WhitelistOutputSpec") -> Tuple[str, str]:
        """Return (name, destination); parameters this route doesn't use are empty."""
        name = spec.middleware_name if self.uses_name else ""
        destination = spec.destination if self.uses_destination else ""
        return name, destination


class ExportRegistry:
    """Maps schema types to export routes. Built once at startup."""

    def __init__(self) -> None:
        self._routes: Dict[SchemaType, ExportRoute] = {}

    def register(self, schema_type: SchemaType, route: ExportRoute) -> None:
        if schema_type in self._routes:
            raise ValueError(f"Schema type '{schema_type.value}' is already registered")
        self._routes[schema_type] = route

    def get(self, schema_type: SchemaType) -> ExportRoute:
        route = self._routes.get(schema_type)
        if route is None:
            raise ExportError(schema_type, "no adaptor/repository registered")
        return route

    def __contains__(self, schema_type: object) -> bool:
        return schema_type in self._routes

    @property
    def schema_types(self) -> List[SchemaType]:
        return list(self._routes)


def create_export_registry(http_timeout_seconds: float = 10.0) -> ExportRegistry:
    """Factory function to create the registry of supported schema types."""
    yaml_files = YamlFileSchemaRepository()

    registry = ExportRegistry()
    registry.register(
        SchemaType.TRAEFIK_IP_WHITELIST_MIDDLEWARE_FILE,
        ExportRoute(TraefikMiddlewareAdaptor("ipWhiteList"), yaml_files, uses_name=True),
    )
    registry.register(
        SchemaType.TRAEFIK_IP_ALLOWLIST_MIDDLEWARE_FILE,
        ExportRoute(TraefikMiddlewareAdaptor("ipAllowList"), yaml_files, uses_name=True),
    )
    registry.register(
        SchemaType.TRAEFIK_IP_WHITELIST_MIDDLEWARE_HTTP,
        ExportRoute(
            TraefikMiddlewareAdaptor("ipWhiteList"),
            HttpSchemaRepository(timeout_seconds=http_timeout_seconds),
            uses_name=True,
        ),
    )
    registry.register(
        SchemaType.NGINX_ALLOW_LIST_FILE,
        ExportRoute(NginxAllowListAdaptor(), TextFileSchemaRepository()),
    )
    return registry
