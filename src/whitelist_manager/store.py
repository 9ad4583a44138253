"""Tracked entry storage."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Entry:
    """A tracked endpoint and its last two resolved addresses."""

    name: str
    fqdn: str
    current_ip: Optional[str] = None
    latest_ip: Optional[str] = None

    def shift_ip(self, new_ip: str) -> None:
        """Record a fresh resolution: the previous latest address becomes current."""
        self.current_ip = self.latest_ip
        self.latest_ip = new_ip


class EntryRepository(ABC):
    """Abstract base class for entry storage."""

    @abstractmethod
    def find_by_names(self, names: Iterable[str]) -> List[Entry]:
        """Return stored entries for the given names, in the order given.

        Unknown names are left out.
        """
        pass

    @abstractmethod
    def get_by_name(self, name: str) -> Optional[Entry]:
        pass

    @abstractmethod
    def add_or_update(self, entry: Entry) -> None:
        pass


class JsonEntryRepository(EntryRepository):
    """Entry repository persisted as a single JSON document."""

    def __init__(self, path: str):
        self.path = Path(path)

    @staticmethod
    def _default_document() -> Dict[str, Any]:
        return {"version": 1, "entries": {}}

    @property
    def corrupt_path(self) -> Path:
        return self.path.with_name(self.path.name + ".corrupt")

    def _set_aside(self, reason: str) -> Dict[str, Any]:
        """Move an unusable store out of the way so the next save starts clean."""
        try:
            self.path.replace(self.corrupt_path)
        except OSError as e:
            logger.error(f"Entry store {self.path} is unusable ({reason}) and could not be moved: {e}")
            raise
        logger.error(
            f"Entry store {self.path} is unusable ({reason}); moved to {self.corrupt_path}, "
            f"starting with an empty store"
        )
        return self._default_document()

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return self._default_document()
        try:
            document = json.loads(self.path.read_text("utf-8"))
        except ValueError as e:
            return self._set_aside(f"invalid JSON: {e}")
        if not isinstance(document, dict) or not isinstance(document.get("entries"), dict):
            return self._set_aside("no 'entries' mapping")
        return document

    def save(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2, sort_keys=True), "utf-8")
        tmp_path.replace(self.path)

    @staticmethod
    def _to_entry(name: str, record: Any) -> Optional[Entry]:
        if not isinstance(record, dict):
            logger.warning(f"Skipping malformed stored entry: {name}")
            return None
        return Entry(
            name=name,
            fqdn=str(record.get("fqdn") or ""),
            current_ip=record.get("current_ip"),
            latest_ip=record.get("latest_ip"),
        )

    def find_by_names(self, names: Iterable[str]) -> List[Entry]:
        stored = self.load()["entries"]
        entries: List[Entry] = []
        seen = set()
        for name in names:
            if name in seen or name not in stored:
                continue
            seen.add(name)
            entry = self._to_entry(name, stored[name])
            if entry is not None:
                entries.append(entry)
        return entries

    def get_by_name(self, name: str) -> Optional[Entry]:
        stored = self.load()["entries"]
        if name not in stored:
            return None
        return self._to_entry(name, stored[name])

    def add_or_update(self, entry: Entry) -> None:
        document = self.load()
        document.setdefault("version", 1)
        document["entries"][entry.name] = {
            "fqdn": entry.fqdn,
            "current_ip": entry.current_ip,
            "latest_ip": entry.latest_ip,
        }
        self.save(document)
