"""
API keys and request audit log for the admin API.

Keys are stored as SHA-256 hashes in the directory database, next to the
business tables. A key has a scope: ``admin`` keys may call every route,
``read`` keys only the safe (GET/HEAD) ones.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, List, Optional, Tuple

from bizdir.database_backend import SQLiteBackend

KEY_PREFIX = "bdk_"
SCOPES = ("admin", "read")
_KEY_HEX_LEN = 32
_DISPLAY_PREFIX_LEN = len(KEY_PREFIX) + 8

_DDL = [
    """
    CREATE TABLE IF NOT EXISTS api_keys (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        name         TEXT NOT NULL,
        key_hash     TEXT NOT NULL UNIQUE,
        key_prefix   TEXT NOT NULL,
        scope        TEXT NOT NULL DEFAULT 'admin',
        created_at   TEXT NOT NULL DEFAULT (datetime('now')),
        last_used_at TEXT,
        usage_count  INTEGER NOT NULL DEFAULT 0,
        is_active    INTEGER NOT NULL DEFAULT 1
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS api_audit_log (
        id               INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp        TEXT NOT NULL DEFAULT (datetime('now')),
        key_id           INTEGER,
        key_name         TEXT,
        endpoint         TEXT NOT NULL,
        method           TEXT NOT NULL,
        client_ip        TEXT,
        status_code      INTEGER,
        response_time_ms INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON api_audit_log(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_audit_key_id ON api_audit_log(key_id)",
]

_KEY_COLUMNS = ("id, name, key_prefix, scope, created_at, last_used_at, "
                "usage_count, is_active")


def hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


def scope_allows(scope: str, method: str) -> bool:
    """True when a key of ``scope`` may issue an HTTP ``method`` request."""
    if scope == "admin":
        return True
    return method.upper() in ("GET", "HEAD", "OPTIONS")


class ApiKeyDB:
    """API keys and audit rows in the directory's SQLite file."""

    def __init__(self, db_path: str = "businesses.db"):
        self._db = SQLiteBackend(db_path)
        self._db.connect()
        with self._db.transaction():
            for ddl in _DDL:
                self._db.execute(ddl)
        # Key tables created before scopes existed.
        self._db.add_missing_columns("api_keys", {"scope": "TEXT NOT NULL DEFAULT 'admin'"})

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def create_key(self, name: str, scope: str = "admin") -> Tuple[int, str]:
        """Create a key and return ``(key_id, raw_key)``; the raw key is shown once."""
        if scope not in SCOPES:
            raise ValueError(f"Unknown scope '{scope}' (expected one of {', '.join(SCOPES)})")
        raw_key = KEY_PREFIX + secrets.token_hex(_KEY_HEX_LEN // 2)
        with self._db.transaction():
            cursor = self._db.execute(
                "INSERT INTO api_keys (name, key_hash, key_prefix, scope) VALUES (?, ?, ?, ?)",
                (name, hash_key(raw_key), raw_key[:_DISPLAY_PREFIX_LEN], scope),
            )
        return cursor.lastrowid, raw_key

    def verify_key(self, raw_key: str) -> Optional[Dict[str, Any]]:
        """Key info for an active key (and bump its usage), else None."""
        if not raw_key or not raw_key.startswith(KEY_PREFIX):
            return None
        row = self._db.fetchone(
            f"SELECT {_KEY_COLUMNS} FROM api_keys WHERE key_hash = ? AND is_active = 1",
            (hash_key(raw_key),),
        )
        if row is None:
            return None
        with self._db.transaction():
            self._db.execute(
                "UPDATE api_keys SET last_used_at = datetime('now'), "
                "usage_count = usage_count + 1 WHERE id = ?",
                (row["id"],),
            )
        return row

    def list_keys(self) -> List[Dict[str, Any]]:
        return self._db.fetchall(f"SELECT {_KEY_COLUMNS} FROM api_keys ORDER BY id")

    def revoke_key(self, key_id: int) -> bool:
        with self._db.transaction():
            cursor = self._db.execute(
                "UPDATE api_keys SET is_active = 0 WHERE id = ? AND is_active = 1",
                (key_id,),
            )
        return cursor.rowcount > 0

    def has_active_keys(self) -> bool:
        return bool(self._db.scalar("SELECT COUNT(*) FROM api_keys WHERE is_active = 1"))

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def log_request(self, key_id: Optional[int], key_name: Optional[str],
                    endpoint: str, method: str, client_ip: Optional[str],
                    status_code: Optional[int], response_time_ms: Optional[int]) -> None:
        with self._db.transaction():
            self._db.execute(
                "INSERT INTO api_audit_log (key_id, key_name, endpoint, method, "
                "client_ip, status_code, response_time_ms) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (key_id, key_name, endpoint, method, client_ip, status_code,
                 response_time_ms),
            )

    def get_key_stats(self, key_id: int) -> Optional[Dict[str, Any]]:
        """Key info plus request totals and the ten latest requests."""
        key = self._db.fetchone(
            f"SELECT {_KEY_COLUMNS} FROM api_keys WHERE id = ?", (key_id,)
        )
        if key is None:
            return None
        key["total_requests"] = self._db.scalar(
            "SELECT COUNT(*) FROM api_audit_log WHERE key_id = ?", (key_id,)
        )
        key["error_requests"] = self._db.scalar(
            "SELECT COUNT(*) FROM api_audit_log WHERE key_id = ? AND status_code >= 400",
            (key_id,),
        )
        key["recent_requests"] = self._db.fetchall(
            "SELECT endpoint, method, status_code, timestamp FROM api_audit_log "
            "WHERE key_id = ? ORDER BY id DESC LIMIT 10",
            (key_id,),
        )
        return key

    def query_audit_log(self, key_id: Optional[int] = None, limit: int = 50,
                        since: Optional[str] = None,
                        endpoint_prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if key_id is not None:
            clauses.append("key_id = ?")
            params.append(key_id)
        if since:
            clauses.append("timestamp >= ?")
            params.append(since)
        if endpoint_prefix:
            clauses.append("endpoint LIKE ?")
            params.append(endpoint_prefix + "%")

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._db.fetchall(
            f"SELECT * FROM api_audit_log {where} ORDER BY id DESC LIMIT ?",
            tuple(params) + (limit,),
        )

    def prune_audit_log(self, older_than_days: int = 90, dry_run: bool = False) -> int:
        """Delete audit rows older than N days; returns how many match."""
        cutoff = (datetime.now(timezone.utc)
                  - timedelta(days=older_than_days)).strftime("%Y-%m-%d %H:%M:%S")
        count = self._db.scalar(
            "SELECT COUNT(*) FROM api_audit_log WHERE timestamp < ?", (cutoff,)
        )
        if count and not dry_run:
            with self._db.transaction():
                self._db.execute("DELETE FROM api_audit_log WHERE timestamp < ?", (cutoff,))
        return count

    def close(self) -> None:
        self._db.close()
