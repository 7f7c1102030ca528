"""Tests for LocalCacheStore — owner-scoped keys, timestamps, at-rest encryption."""

from __future__ import annotations

import pytest

from shs.core.storage.local_store import LocalCacheStore, record_key, timestamp_key

OWNER = "owner-a"


class TestKeys:
    def test_record_and_timestamp_keys(self):
        assert record_key(OWNER, "goals") == "owner-a:goals"
        assert timestamp_key(OWNER, "goals") == "owner-a:goals_timestamp"


class TestRecords:
    def test_set_record_stores_value_and_timestamp(self, local_store: LocalCacheStore):
        stamp = local_store.set_record("goals", [{"id": "g1"}], OWNER)
        assert local_store.get_record("goals", OWNER) == [{"id": "g1"}]
        assert local_store.get_timestamp("goals", OWNER) == stamp

    def test_explicit_timestamp_is_kept(self, local_store: LocalCacheStore):
        local_store.set_record("points", 10, OWNER, modified_at="2024-01-01T00:00:00+00:00")
        assert local_store.get_timestamp("points", OWNER) == "2024-01-01T00:00:00+00:00"

    def test_remove_record_drops_timestamp(self, local_store: LocalCacheStore):
        local_store.set_record("username", "sam", OWNER)
        assert local_store.remove_record("username", OWNER) is True
        assert local_store.get_record("username", OWNER) is None
        assert local_store.get_timestamp("username", OWNER) is None

    def test_remove_missing_returns_false(self, local_store: LocalCacheStore):
        assert local_store.remove_record("username", OWNER) is False

    def test_owners_are_isolated(self, local_store: LocalCacheStore):
        local_store.set_record("symptoms", ["headache"], OWNER)
        assert local_store.get_record("symptoms", "owner-b") is None

    def test_keys_with_underscores_do_not_glob(self, local_store: LocalCacheStore):
        local_store.set("owner_a:goals", [1])
        local_store.set("ownerXa:goals", [2])
        assert local_store.keys("owner_a:") == ["owner_a:goals"]


class TestEncryptionAtRest:
    def test_values_are_encrypted_in_sqlite(self, cache_db, local_store: LocalCacheStore):
        local_store.set_record("symptoms", ["nausea"], OWNER)
        row = cache_db.connection.execute(
            "SELECT value_json, encrypted FROM local_cache WHERE key = ?",
            (record_key(OWNER, "symptoms"),),
        ).fetchone()
        assert row["encrypted"] == 1
        assert "nausea" not in row["value_json"]

    def test_plaintext_without_encryptor(self, cache_db):
        store = LocalCacheStore(cache_db)
        store.set("sync_settings", {"auto_sync": True})
        row = cache_db.connection.execute(
            "SELECT value_json, encrypted FROM local_cache WHERE key = 'sync_settings'"
        ).fetchone()
        assert row["encrypted"] == 0
        assert store.get("sync_settings") == {"auto_sync": True}

    def test_encrypted_entry_unreadable_without_key(self, cache_db, local_store):
        local_store.set("error_log", {"e1": {}})
        assert LocalCacheStore(cache_db).get("error_log") is None


class TestMaintenance:
    def test_cleanup_removes_disposable_keys_only(self, local_store: LocalCacheStore):
        local_store.set("cache_avatar", "x")
        local_store.set("temp_upload", "y")
        local_store.set_record("goals", [], OWNER)
        assert local_store.cleanup() == 2
        assert local_store.get_record("goals", OWNER) == []

    def test_clear_owner(self, local_store: LocalCacheStore):
        local_store.set_record("goals", [1], OWNER)
        local_store.set_record("points", 3, OWNER)
        local_store.set_record("goals", [2], "owner-b")
        assert local_store.clear_owner(OWNER) == 4
        assert local_store.get_record("goals", "owner-b") == [2]

    @pytest.mark.parametrize("count", [0, 3])
    def test_clear_all(self, local_store: LocalCacheStore, count):
        for i in range(count):
            local_store.set(f"k{i}", i)
        assert local_store.clear_all() == count
