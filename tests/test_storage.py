"""
Tests for the preference database.
"""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from btguard.storage.database import (
    PreferenceDatabase,
    decode_string_set,
    encode_string_set,
)


class TestStringSetEncoding:
    """Tests for canonical string set encoding."""

    def test_encoding_is_sorted(self) -> None:
        """Test members are stored in sorted order without duplicates."""
        assert encode_string_set(["b", "a", "b"]) == '["a","b"]'

    def test_encoding_independent_of_order(self) -> None:
        """Test equal sets encode to identical bytes."""
        assert encode_string_set({"x", "y", "z"}) == encode_string_set(["z", "y", "x"])

    def test_decode_empty(self) -> None:
        """Test empty and missing values decode to an empty set."""
        assert decode_string_set(None) == set()
        assert decode_string_set("") == set()
        assert decode_string_set("[]") == set()

    def test_decode_drops_non_strings(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test non-string members are dropped with a warning."""
        with caplog.at_level(logging.WARNING, logger="btguard.storage.database"):
            assert decode_string_set('["a", 1, null]') == {"a"}

        assert "Dropped 2 non-string member(s)" in caplog.text

    def test_decode_clean_set_is_quiet(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test a well-formed set decodes without warnings."""
        with caplog.at_level(logging.WARNING, logger="btguard.storage.database"):
            assert decode_string_set('["a", "b"]') == {"a", "b"}

        assert caplog.records == []

    def test_decode_rejects_non_list(self) -> None:
        """Test a stored object that is not a list is rejected."""
        with pytest.raises(ValueError):
            decode_string_set('{"a": 1}')


class TestPreferenceDatabase:
    """Tests for PreferenceDatabase class."""

    def test_create_database(self, temp_dir: Path) -> None:
        """Test database file and parent directories are created."""
        db_path = temp_dir / "nested" / "prefs.db"
        db = PreferenceDatabase(db_path)

        assert db_path.exists()
        db.close()

    def test_absent_key_reads_none(self, preference_db: PreferenceDatabase) -> None:
        """Test a key never written reads as None."""
        assert preference_db.get_string_set("ns", "trusted") is None
        assert preference_db.get_raw("ns", "trusted") is None

    def test_written_empty_reads_empty(self, preference_db: PreferenceDatabase) -> None:
        """Test an empty set is distinguishable from an absent key."""
        preference_db.put_string_sets("ns", {"trusted": []})

        assert preference_db.get_string_set("ns", "trusted") == set()

    def test_put_and_get(self, preference_db: PreferenceDatabase) -> None:
        """Test writing and reading several sets."""
        preference_db.put_string_sets("ns", {
            "trusted": {"AA", "BB"},
            "blocked": {"CC"},
        })

        values = preference_db.get_string_sets("ns", ["trusted", "blocked", "other"])
        assert values == {"trusted": {"AA", "BB"}, "blocked": {"CC"}, "other": None}

    def test_overwrite(self, preference_db: PreferenceDatabase) -> None:
        """Test a later write replaces the stored set."""
        preference_db.put_string_sets("ns", {"trusted": {"AA"}})
        preference_db.put_string_sets("ns", {"trusted": {"BB"}})

        assert preference_db.get_string_set("ns", "trusted") == {"BB"}

    def test_stored_bytes_stable(self, preference_db: PreferenceDatabase) -> None:
        """Test re-saving the same set leaves the stored value identical."""
        preference_db.put_string_sets("ns", {"trusted": ["BB", "AA"]})
        first = preference_db.get_raw("ns", "trusted")

        preference_db.put_string_sets("ns", {"trusted": {"AA", "BB"}})
        assert preference_db.get_raw("ns", "trusted") == first

    def test_namespaces_are_separate(self, preference_db: PreferenceDatabase) -> None:
        """Test keys in different namespaces do not collide."""
        preference_db.put_string_sets("one", {"trusted": {"AA"}})
        preference_db.put_string_sets("two", {"trusted": {"BB"}})

        assert preference_db.get_string_set("one", "trusted") == {"AA"}
        assert preference_db.get_string_set("two", "trusted") == {"BB"}

    def test_values_survive_reopen(self, temp_dir: Path) -> None:
        """Test values persist across database instances."""
        db_path = temp_dir / "prefs.db"
        db = PreferenceDatabase(db_path)
        db.put_string_sets("ns", {"blocked": {"CC"}})
        db.close()

        reopened = PreferenceDatabase(db_path)
        assert reopened.get_string_set("ns", "blocked") == {"CC"}
        reopened.close()

    def test_failed_write_is_atomic(
        self,
        preference_db: PreferenceDatabase,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a failure mid-write leaves both keys unchanged."""
        preference_db.put_string_sets("ns", {"trusted": {"AA"}, "blocked": {"BB"}})

        calls = []

        def flaky_encode(values):
            calls.append(values)
            if len(calls) == 2:
                raise OSError("disk full")
            return '["ZZ"]'

        monkeypatch.setattr("btguard.storage.database.encode_string_set", flaky_encode)

        with pytest.raises(OSError):
            preference_db.put_string_sets("ns", {"trusted": {"ZZ"}, "blocked": {"ZZ"}})

        assert preference_db.get_string_set("ns", "trusted") == {"AA"}
        assert preference_db.get_string_set("ns", "blocked") == {"BB"}

    def test_delete_namespace(self, preference_db: PreferenceDatabase) -> None:
        """Test clearing a namespace."""
        preference_db.put_string_sets("ns", {"trusted": {"AA"}, "blocked": set()})

        assert preference_db.delete_namespace("ns") == 2
        assert preference_db.get_string_set("ns", "trusted") is None
