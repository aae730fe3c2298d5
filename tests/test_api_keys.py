"""Tests for ApiKeyDB: API keys, scopes and audit logging."""

import sqlite3

import pytest

from bizdir.api_keys import ApiKeyDB, scope_allows
from bizdir.business_db import BusinessDB


@pytest.fixture
def db(tmp_path):
    """Key store in a fresh directory database."""
    instance = ApiKeyDB(str(tmp_path / "directory.db"))
    yield instance
    instance.close()


# ------------------------------------------------------------------
# Key lifecycle
# ------------------------------------------------------------------

class TestKeyLifecycle:
    def test_create_key_returns_id_and_raw_key(self, db):
        key_id, raw_key = db.create_key("dashboard")
        assert key_id >= 1
        assert raw_key.startswith("bdk_")
        assert len(raw_key) == 4 + 32  # prefix + 32 hex chars

    def test_only_hash_and_display_prefix_stored(self, db):
        _, raw_key = db.create_key("dashboard")
        row = db._db.fetchone("SELECT key_hash, key_prefix FROM api_keys")
        assert row["key_hash"] != raw_key
        assert row["key_prefix"] == raw_key[:12]
        assert "key_hash" not in db.list_keys()[0]

    def test_verify_valid_key_updates_usage(self, db):
        key_id, raw_key = db.create_key("sync-bot")
        info = db.verify_key(raw_key)
        assert info["id"] == key_id
        assert info["name"] == "sync-bot"
        db.verify_key(raw_key)
        key = db.list_keys()[0]
        assert key["usage_count"] == 2
        assert key["last_used_at"] is not None

    def test_verify_unknown_key(self, db):
        assert db.verify_key("bdk_" + "0" * 32) is None
        assert db.verify_key("") is None

    def test_revoke(self, db):
        key_id, raw_key = db.create_key("old-laptop")
        assert db.revoke_key(key_id) is True
        assert db.verify_key(raw_key) is None
        assert db.revoke_key(key_id) is False
        assert db.revoke_key(999) is False
        # Revoked keys stay listed
        assert [k["is_active"] for k in db.list_keys()] == [0]

    def test_has_active_keys(self, db):
        assert db.has_active_keys() is False
        key_id, _ = db.create_key("active")
        assert db.has_active_keys() is True
        db.revoke_key(key_id)
        assert db.has_active_keys() is False

    def test_duplicate_names_get_distinct_keys(self, db):
        id1, key1 = db.create_key("same")
        id2, key2 = db.create_key("same")
        assert id1 != id2
        assert key1 != key2

    def test_shares_file_with_business_tables(self, tmp_path):
        path = str(tmp_path / "directory.db")
        BusinessDB(path).close()
        keys = ApiKeyDB(path)
        try:
            keys.create_key("admin")
            assert keys._db.table_exists("businesses")
            assert len(keys.list_keys()) == 1
        finally:
            keys.close()


# ------------------------------------------------------------------
# Audit logging
# ------------------------------------------------------------------

class TestAuditLog:
    def test_log_request(self, db):
        key_id, _ = db.create_key("dashboard")
        db.log_request(key_id, "dashboard", "/jobs/fetch", "POST", "127.0.0.1", 200, 42)
        rows = db.query_audit_log()
        assert len(rows) == 1
        row = rows[0]
        assert (row["endpoint"], row["method"], row["status_code"]) == ("/jobs/fetch", "POST", 200)
        assert row["response_time_ms"] == 42
        assert row["key_name"] == "dashboard"

    def test_anonymous_request(self, db):
        db.log_request(None, None, "/", "GET", "10.0.0.1", 200, 5)
        assert db.query_audit_log()[0]["key_id"] is None

    def test_newest_first_with_limit(self, db):
        for i in range(10):
            db.log_request(None, None, f"/businesses/p{i}", "GET", None, 200, 1)
        rows = db.query_audit_log(limit=3)
        assert [r["endpoint"] for r in rows] == ["/businesses/p9", "/businesses/p8",
                                                 "/businesses/p7"]

    def test_filters(self, db):
        id1, _ = db.create_key("a")
        id2, _ = db.create_key("b")
        db.log_request(id1, "a", "/sync/start", "POST", None, 200, 1)
        db.log_request(id2, "b", "/sync/status", "GET", None, 200, 1)
        db.log_request(id2, "b", "/businesses", "GET", None, 200, 1)
        assert [r["endpoint"] for r in db.query_audit_log(key_id=id1)] == ["/sync/start"]
        assert len(db.query_audit_log(endpoint_prefix="/sync")) == 2
        assert db.query_audit_log(since="2999-01-01") == []

    def test_prune_audit_log(self, db):
        db.log_request(None, None, "/old", "GET", None, 200, 1)
        db._db.execute(
            "UPDATE api_audit_log SET timestamp = datetime('now', '-100 days')"
        )
        db._db.commit()
        db.log_request(None, None, "/new", "GET", None, 200, 1)

        assert db.prune_audit_log(older_than_days=90, dry_run=True) == 1
        assert len(db.query_audit_log()) == 2

        assert db.prune_audit_log(older_than_days=90) == 1
        assert [r["endpoint"] for r in db.query_audit_log()] == ["/new"]


# ------------------------------------------------------------------
# Stats
# ------------------------------------------------------------------

class TestKeyStats:
    def test_get_key_stats(self, db):
        key_id, raw_key = db.create_key("stat-key")
        db.verify_key(raw_key)
        db.log_request(key_id, "stat-key", "/jobs", "GET", "1.2.3.4", 200, 10)

        stats = db.get_key_stats(key_id)
        assert stats is not None
        assert stats["name"] == "stat-key"
        assert stats["usage_count"] == 1
        assert len(stats["recent_requests"]) == 1
        assert stats["recent_requests"][0]["endpoint"] == "/jobs"

    def test_get_key_stats_nonexistent(self, db):
        assert db.get_key_stats(999) is None

    def test_error_requests_counted(self, db):
        key_id, _ = db.create_key("errors")
        db.log_request(key_id, "errors", "/businesses/x", "GET", None, 404, 3)
        db.log_request(key_id, "errors", "/businesses", "GET", None, 200, 3)
        stats = db.get_key_stats(key_id)
        assert stats["total_requests"] == 2
        assert stats["error_requests"] == 1


# ------------------------------------------------------------------
# Scopes
# ------------------------------------------------------------------

class TestScopes:
    def test_default_scope_is_admin(self, db):
        _, raw_key = db.create_key("admin-key")
        assert db.verify_key(raw_key)["scope"] == "admin"

    def test_read_scope(self, db):
        _, raw_key = db.create_key("viewer", scope="read")
        assert db.verify_key(raw_key)["scope"] == "read"

    def test_unknown_scope_rejected(self, db):
        with pytest.raises(ValueError):
            db.create_key("bad", scope="superuser")

    def test_key_without_prefix_rejected(self, db):
        _, raw_key = db.create_key("k")
        assert db.verify_key(raw_key[len("bdk_"):]) is None
        assert db.verify_key("") is None

    @pytest.mark.parametrize("scope,method,allowed", [
        ("admin", "DELETE", True),
        ("admin", "GET", True),
        ("read", "GET", True),
        ("read", "head", True),
        ("read", "POST", False),
        ("read", "PATCH", False),
    ])
    def test_scope_allows(self, scope, method, allowed):
        assert scope_allows(scope, method) is allowed

    def test_scope_column_added_to_old_table(self, tmp_path):
        path = str(tmp_path / "old.db")
        conn = sqlite3.connect(path)
        conn.execute(
            "CREATE TABLE api_keys (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT NOT NULL, "
            "key_hash TEXT NOT NULL UNIQUE, key_prefix TEXT NOT NULL, "
            "created_at TEXT NOT NULL DEFAULT (datetime('now')), last_used_at TEXT, "
            "usage_count INTEGER NOT NULL DEFAULT 0, is_active INTEGER NOT NULL DEFAULT 1)"
        )
        conn.commit()
        conn.close()

        db = ApiKeyDB(path)
        try:
            _, raw_key = db.create_key("upgraded")
            assert db.verify_key(raw_key)["scope"] == "admin"
        finally:
            db.close()
