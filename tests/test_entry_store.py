"""Unit tests for JsonEntryRepository."""

import json
import logging
from pathlib import Path

from whitelist_manager.store import Entry, JsonEntryRepository


class TestEntry:
    def test_shift_ip_keeps_two_slot_history(self) -> None:
        """Each new address pushes the previous latest address into current_ip."""
        entry = Entry(name="api", fqdn="api.example.com")

        entry.shift_ip("10.0.0.1")
        assert (entry.current_ip, entry.latest_ip) == (None, "10.0.0.1")

        entry.shift_ip("10.0.0.2")
        assert (entry.current_ip, entry.latest_ip) == ("10.0.0.1", "10.0.0.2")

        entry.shift_ip("10.0.0.3")
        assert (entry.current_ip, entry.latest_ip) == ("10.0.0.2", "10.0.0.3")


class TestJsonEntryRepositoryLoad:
    """Tests for loading the entry document."""

    def test_load_returns_default_document_when_file_missing(self, tmp_path: Path) -> None:
        """A store that was never written loads as an empty document."""
        store = JsonEntryRepository(str(tmp_path / "nonexistent" / "entries.json"))

        assert store.load() == {"version": 1, "entries": {}}

    def test_load_sets_invalid_json_aside(self, tmp_path: Path, caplog) -> None:
        """A corrupted store is moved to .corrupt and reported at error level."""
        path = tmp_path / "entries.json"
        path.write_text("not valid json {{{")

        store = JsonEntryRepository(str(path))

        with caplog.at_level(logging.ERROR, logger="whitelist_manager.store"):
            assert store.load() == {"version": 1, "entries": {}}

        assert not path.exists()
        assert (tmp_path / "entries.json.corrupt").read_text() == "not valid json {{{"
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_write_after_corruption_keeps_the_corrupt_copy(self, tmp_path: Path) -> None:
        """Writing after corruption starts a fresh store and leaves the old bytes alone."""
        path = tmp_path / "entries.json"
        original = json.dumps({"entries": {"api": {"fqdn": "api.example.com"}}})[:-7]
        path.write_text(original)
        store = JsonEntryRepository(str(path))

        store.add_or_update(Entry(name="office", fqdn="office.example.net", latest_ip="192.0.2.7"))

        assert store.corrupt_path.read_text() == original
        assert store.get_by_name("office").latest_ip == "192.0.2.7"
        assert store.get_by_name("api") is None

    def test_load_sets_aside_store_without_entries_mapping(self, tmp_path: Path) -> None:
        """Valid JSON with the wrong shape is set aside like invalid JSON."""
        path = tmp_path / "entries.json"
        path.write_text(json.dumps({"version": 1, "entries": ["api"]}))

        store = JsonEntryRepository(str(path))

        assert store.load() == {"version": 1, "entries": {}}
        assert json.loads(store.corrupt_path.read_text()) == {"version": 1, "entries": ["api"]}


class TestJsonEntryRepositoryQueries:
    """Tests for get_by_name and find_by_names."""

    def _seed(self, tmp_path: Path) -> JsonEntryRepository:
        path = tmp_path / "entries.json"
        path.write_text(
            json.dumps(
                {
                    "version": 1,
                    "entries": {
                        "api": {
                            "fqdn": "api.example.com",
                            "current_ip": "10.0.0.1",
                            "latest_ip": "10.0.0.2",
                        },
                        "office": {
                            "fqdn": "office.example.net",
                            "current_ip": None,
                            "latest_ip": "192.0.2.10",
                        },
                    },
                }
            )
        )
        return JsonEntryRepository(str(path))

    def test_get_by_name_returns_entry(self, tmp_path: Path) -> None:
        """Stored entries are returned with both address slots."""
        store = self._seed(tmp_path)

        assert store.get_by_name("api") == Entry(
            name="api", fqdn="api.example.com", current_ip="10.0.0.1", latest_ip="10.0.0.2"
        )

    def test_get_by_name_returns_none_when_missing(self, tmp_path: Path) -> None:
        """Unknown names return None."""
        store = self._seed(tmp_path)

        assert store.get_by_name("vpn") is None

    def test_find_by_names_follows_requested_order(self, tmp_path: Path) -> None:
        """Results follow the requested order, skipping unknown and repeated names."""
        store = self._seed(tmp_path)

        names = [e.name for e in store.find_by_names(["office", "api"])]

        assert names == ["office", "api"]

    def test_find_by_names_leaves_out_unknown_names(self, tmp_path: Path) -> None:
        """Unknown names are simply absent, not an error."""
        store = self._seed(tmp_path)

        entries = store.find_by_names(["vpn", "api", "api"])

        assert [e.name for e in entries] == ["api"]

    def test_find_by_names_on_empty_store(self, tmp_path: Path) -> None:
        """An empty store yields no entries."""
        store = JsonEntryRepository(str(tmp_path / "entries.json"))

        assert store.find_by_names(["api"]) == []


class TestJsonEntryRepositorySave:
    """Tests for add_or_update persistence."""

    def test_add_creates_parent_directories(self, tmp_path: Path) -> None:
        """The store directory is created on first write."""
        path = tmp_path / "nested" / "path" / "entries.json"
        store = JsonEntryRepository(str(path))

        store.add_or_update(Entry(name="api", fqdn="api.example.com", latest_ip="10.0.0.5"))

        assert path.exists()

    def test_add_then_get_round_trip(self, tmp_path: Path) -> None:
        """An added entry reads back unchanged."""
        store = JsonEntryRepository(str(tmp_path / "entries.json"))
        entry = Entry(name="api", fqdn="api.example.com", current_ip=None, latest_ip="10.0.0.5")

        store.add_or_update(entry)

        assert store.get_by_name("api") == entry

    def test_update_replaces_existing_entry(self, tmp_path: Path) -> None:
        """Writing an existing name replaces its record."""
        store = JsonEntryRepository(str(tmp_path / "entries.json"))
        store.add_or_update(Entry(name="api", fqdn="old.example.com", latest_ip="10.0.0.5"))

        store.add_or_update(
            Entry(name="api", fqdn="api.example.com", current_ip="10.0.0.5", latest_ip="10.0.0.9")
        )

        stored = json.loads((tmp_path / "entries.json").read_text())
        assert stored["entries"] == {
            "api": {"fqdn": "api.example.com", "current_ip": "10.0.0.5", "latest_ip": "10.0.0.9"}
        }

    def test_add_keeps_other_entries(self, tmp_path: Path) -> None:
        """Updating one entry leaves the others in place."""
        store = JsonEntryRepository(str(tmp_path / "entries.json"))
        store.add_or_update(Entry(name="api", fqdn="api.example.com", latest_ip="10.0.0.5"))
        store.add_or_update(Entry(name="office", fqdn="office.example.net", latest_ip="192.0.2.1"))

        assert [e.name for e in store.find_by_names(["api", "office"])] == ["api", "office"]

    def test_save_atomic_via_temp_file(self, tmp_path: Path) -> None:
        """Save uses temp file + rename, leaving no temp file behind."""
        path = tmp_path / "entries.json"
        store = JsonEntryRepository(str(path))

        store.add_or_update(Entry(name="api", fqdn="api.example.com"))

        assert path.exists()
        assert not path.with_suffix(".json.tmp").exists()

    def test_save_formats_json_sorted_and_indented(self, tmp_path: Path) -> None:
        """The store file is indented JSON with sorted keys."""
        path = tmp_path / "entries.json"
        store = JsonEntryRepository(str(path))

        store.add_or_update(Entry(name="api", fqdn="api.example.com"))

        content = path.read_text()
        assert "\n" in content
        assert content.find('"entries"') < content.find('"version"')
