"""
SQLite connection wrapper shared by the business store and the API key store.

Handles pragmas, dict rows, explicit write transactions and the single-row
``schema_version`` bookkeeping used for versioned migrations.
"""

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional, List

_PRAGMAS = ("journal_mode=WAL", "busy_timeout=30000", "foreign_keys=ON")


class SQLiteBackend:
    """Thin wrapper around a single ``sqlite3`` connection."""

    def __init__(self, db_path: str = "businesses.db"):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._write_lock = threading.RLock()

    def connect(self) -> None:
        # The API server shares the key store between request handlers, which
        # run on anyio worker threads.
        self.conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
        for pragma in _PRAGMAS:
            self.conn.execute(f"PRAGMA {pragma}")
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        if self.conn:
            self.conn.close()
            self.conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        if self.conn is None:
            self.connect()
        return self.conn  # type: ignore[return-value]

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        return self._ensure_connected().execute(sql, params)

    def executemany(self, sql: str, params_list: List[tuple]) -> sqlite3.Cursor:
        return self._ensure_connected().executemany(sql, params_list)

    def fetchone(self, sql: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        row = self.execute(sql, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, sql: str, params: tuple = ()) -> List[Dict[str, Any]]:
        return [dict(r) for r in self.execute(sql, params).fetchall()]

    def scalar(self, sql: str, params: tuple = (), default: Any = 0) -> Any:
        """Return the first column of the first row, or *default*."""
        row = self.execute(sql, params).fetchone()
        if row is None or row[0] is None:
            return default
        return row[0]

    def begin_write(self) -> None:
        self._ensure_connected().execute("BEGIN IMMEDIATE")

    def commit(self) -> None:
        self._ensure_connected().commit()

    def rollback(self) -> None:
        self._ensure_connected().rollback()

    @contextmanager
    def transaction(self):
        """Context manager for write transactions with auto-commit/rollback.

        Transactions on one connection are serialized across threads.
        """
        with self._write_lock:
            self.begin_write()
            try:
                yield self
                self.commit()
            except Exception:
                self.rollback()
                raise

    def table_exists(self, name: str) -> bool:
        row = self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            (name,)
        )
        return row is not None

    def column_names(self, table: str) -> List[str]:
        return [r["name"] for r in self.fetchall(f"PRAGMA table_info({table})")]

    def add_missing_columns(self, table: str, columns: Dict[str, str]) -> List[str]:
        """
        ``ALTER TABLE ADD COLUMN`` for each ``name: type`` not yet on ``table``.

        For stores without a ``schema_version`` row. Returns the added names.
        """
        existing = set(self.column_names(table))
        added = [name for name in columns if name not in existing]
        if added:
            with self.transaction():
                for name in added:
                    self.execute(f"ALTER TABLE {table} ADD COLUMN {name} {columns[name]}")
        return added

    def iter_keyset_pages(self, table: str, page_size: int,
                          key: str = "id") -> Iterator[List[Dict[str, Any]]]:
        """
        Yield all rows of ``table`` in ``key`` order, ``page_size`` at a time.

        Each page starts after the last key of the previous one, so rows
        updated during the walk neither repeat nor shift the window.
        """
        if page_size < 1:
            raise ValueError("page_size must be positive")
        last_key: Any = None
        while True:
            if last_key is None:
                rows = self.fetchall(
                    f"SELECT * FROM {table} ORDER BY {key} LIMIT ?", (page_size,)
                )
            else:
                rows = self.fetchall(
                    f"SELECT * FROM {table} WHERE {key} > ? ORDER BY {key} LIMIT ?",
                    (last_key, page_size)
                )
            if not rows:
                return
            yield rows
            if len(rows) < page_size:
                return
            last_key = rows[-1][key]

    def init_schema(self, version: int, ddl_statements: List[str]) -> None:
        conn = self._ensure_connected()
        for ddl in ddl_statements:
            conn.executescript(ddl)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (id, version, applied_at, description) "
            "VALUES (1, ?, datetime('now'), ?)",
            (version, f"Initial schema v{version}")
        )
        conn.commit()

    def get_schema_version(self) -> int:
        if not self.table_exists("schema_version"):
            return 0
        row = self.fetchone("SELECT version FROM schema_version WHERE id = 1")
        return row["version"] if row else 0

    def migrate(self, from_version: int, to_version: int,
                migrations: Dict[int, List[str]]) -> None:
        """Apply ``migrations[v]`` for every version in (from, to]."""
        conn = self._ensure_connected()
        for v in range(from_version + 1, to_version + 1):
            if v not in migrations:
                raise ValueError(f"Missing migration for version {v}")
            for sql in migrations[v]:
                conn.executescript(sql)
            conn.execute(
                "UPDATE schema_version SET version = ?, applied_at = datetime('now'), "
                "description = ? WHERE id = 1",
                (v, f"Migration to v{v}")
            )
        conn.commit()

    def upsert_sql(self, table: str, columns: List[str],
                   conflict_keys: List[str], update_columns: List[str]) -> str:
        """Generate SQLite ON CONFLICT DO UPDATE upsert SQL."""
        placeholders = ", ".join(["?"] * len(columns))
        col_list = ", ".join(columns)
        conflict = ", ".join(conflict_keys)
        updates = ", ".join(f"{c} = excluded.{c}" for c in update_columns)
        return (
            f"INSERT INTO {table} ({col_list}) VALUES ({placeholders}) "
            f"ON CONFLICT({conflict}) DO UPDATE SET {updates}"
        )

    def size_bytes(self) -> int:
        try:
            return os.path.getsize(self.db_path)
        except OSError:
            return 0

    def vacuum(self) -> None:
        self._ensure_connected().execute("VACUUM")
