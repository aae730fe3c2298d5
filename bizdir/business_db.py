"""
SQLite-backed business directory storage.

Thread safety: Each thread/job MUST create its own BusinessDB instance
(and thus its own connection). WAL mode allows concurrent readers
and one writer without blocking.

Photos and opening hours are stored as JSON text columns on the
``businesses`` row. Photo write-backs are read-modify-write on that
column, so they run inside ``BEGIN IMMEDIATE`` to serialize writers.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Any, Optional, List, Iterator, Tuple

from bizdir.database_backend import SQLiteBackend

log = logging.getLogger("bizdir")

SCHEMA_VERSION = 2

_SCHEMA_DDL = """
-- Schema version tracking (single-row model)
CREATE TABLE IF NOT EXISTS schema_version (
    id             INTEGER PRIMARY KEY CHECK (id = 1),
    version        INTEGER NOT NULL,
    applied_at     TEXT NOT NULL,
    description    TEXT
);

-- One row per Google place
CREATE TABLE IF NOT EXISTS businesses (
    id                 TEXT PRIMARY KEY,
    name               TEXT NOT NULL,
    address            TEXT,
    phone              TEXT,
    website            TEXT,
    email              TEXT,
    lat                REAL,
    lng                REAL,
    rating             REAL,
    review_count       INTEGER DEFAULT 0,
    category           TEXT,
    business_status    TEXT,
    photo_reference    TEXT,
    logo_url           TEXT,
    logo_base64        TEXT,
    logo_s3_url        TEXT,
    logo_uploaded_at   TEXT,
    is_open            INTEGER,
    price_level        INTEGER,
    has_target_keyword INTEGER NOT NULL DEFAULT 0,
    hours_json         TEXT,
    photos_json        TEXT,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reviews (
    id                 TEXT PRIMARY KEY,
    business_id        TEXT NOT NULL,
    author_name        TEXT,
    rating             REAL,
    text               TEXT,
    time_ago           TEXT,
    profile_photo_url  TEXT,
    created_at         TEXT NOT NULL,
    FOREIGN KEY (business_id) REFERENCES businesses(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_businesses_category ON businesses(category);
CREATE INDEX IF NOT EXISTS idx_businesses_rank
    ON businesses(has_target_keyword DESC, rating DESC, review_count DESC);
CREATE INDEX IF NOT EXISTS idx_reviews_business ON reviews(business_id);
"""

# Databases created at v1 predate the image storage columns.
_MIGRATIONS: Dict[int, List[str]] = {
    2: [
        "ALTER TABLE businesses ADD COLUMN logo_base64 TEXT;",
        "ALTER TABLE businesses ADD COLUMN logo_s3_url TEXT;",
        "ALTER TABLE businesses ADD COLUMN logo_uploaded_at TEXT;",
    ],
}

BUSINESS_COLUMNS = (
    "id", "name", "address", "phone", "website", "email", "lat", "lng",
    "rating", "review_count", "category", "business_status", "photo_reference",
    "logo_url", "logo_base64", "logo_s3_url", "logo_uploaded_at", "is_open",
    "price_level", "has_target_keyword", "hours_json", "photos_json",
    "created_at", "updated_at",
)

# Columns an admin may change through update_business(); "photos" and
# "hours" are accepted as decoded lists and re-serialized.
EDITABLE_FIELDS = frozenset({
    "name", "address", "phone", "website", "email", "lat", "lng", "rating",
    "review_count", "category", "business_status", "logo_url", "is_open",
    "price_level", "has_target_keyword", "hours", "photos",
})

_BOOL_COLUMNS = ("is_open", "has_target_keyword")
_REQUIRED_FIELDS = ("name", "has_target_keyword")

_ORDER_BY = "has_target_keyword DESC, rating DESC, review_count DESC, name ASC"


def _now_utc() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False)


def _load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return default


class BusinessDB:
    """
    SQLite database for businesses, their photos and their reviews.

    Thread safety: Each thread/job MUST create its own BusinessDB instance.
    """

    def __init__(self, db_path: str = "businesses.db"):
        self.backend = SQLiteBackend(db_path)
        self.backend.connect()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist, apply migrations if needed."""
        current = self.backend.get_schema_version()
        if current == 0:
            self.backend.init_schema(SCHEMA_VERSION, [_SCHEMA_DDL])
        elif current < SCHEMA_VERSION:
            log.info("Migrating business database from v%d to v%d", current, SCHEMA_VERSION)
            self.backend.migrate(current, SCHEMA_VERSION, _MIGRATIONS)

    @contextmanager
    def transaction(self):
        """Context manager for explicit write transactions."""
        with self.backend.transaction():
            yield

    # === Business Management ===

    def business_exists(self, business_id: str) -> bool:
        row = self.backend.fetchone(
            "SELECT 1 AS hit FROM businesses WHERE id = ?", (business_id,)
        )
        return row is not None

    def get_business(self, business_id: str,
                     include_blobs: bool = True) -> Optional[Dict[str, Any]]:
        """Get a business by place id with JSON columns decoded."""
        row = self.backend.fetchone(
            "SELECT * FROM businesses WHERE id = ?", (business_id,)
        )
        if not row:
            return None
        return self._deserialize_business(row, include_blobs)

    def find_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        """Case-insensitive exact name lookup (used for fetch de-duplication)."""
        row = self.backend.fetchone(
            "SELECT * FROM businesses WHERE lower(name) = lower(?) LIMIT 1",
            (name.strip(),)
        )
        return self._deserialize_business(row, False) if row else None

    def upsert_business(self, record: Dict[str, Any]) -> str:
        """
        Insert or update a business keyed by ``record["id"]``.

        ``record`` may carry decoded ``photos`` / ``hours`` lists instead of
        the ``*_json`` columns. On update, ``created_at`` is kept and storage
        URLs already written by an image sync survive: the logo upload is kept
        unless the record brings its own, and photos are matched by ``url``
        or ``photo_reference`` to carry their ``s3_url`` over.

        Returns: 'inserted' or 'updated'
        """
        business_id = record.get("id")
        if not business_id:
            raise ValueError("business record requires an 'id'")
        if not record.get("name"):
            raise ValueError(f"business {business_id} requires a 'name'")

        values = self._serialize_record(record)
        columns = list(BUSINESS_COLUMNS)
        sql = self.backend.upsert_sql(
            "businesses", columns, ["id"],
            [c for c in columns if c not in ("id", "created_at")],
        )

        # No image write-back may land between the read and the upsert.
        with self.transaction():
            now = _now_utc()
            existing = self.get_business(business_id)

            if existing:
                for key in ("logo_s3_url", "logo_uploaded_at", "logo_base64"):
                    if not values.get(key):
                        values[key] = existing.get(key)
                if "photos" in record:
                    merged = _merge_photo_uploads(existing.get("photos", []),
                                                  record.get("photos") or [])
                    values["photos_json"] = _dump_json(merged)
                else:
                    values["photos_json"] = _dump_json(existing.get("photos", []))
                if "hours" not in record and "hours_json" not in record:
                    values["hours_json"] = _dump_json(existing.get("hours"))
                values["created_at"] = existing["created_at"]
                outcome = "updated"
            else:
                values["created_at"] = now
                outcome = "inserted"
            values["updated_at"] = now

            self.backend.execute(sql, tuple(values.get(c) for c in columns))
        return outcome

    def list_businesses(self, limit: int = 50, offset: int = 0,
                        search: str = None, category: str = None,
                        city: str = None,
                        include_blobs: bool = False) -> List[Dict[str, Any]]:
        """Paginated listing, best-ranked first."""
        where, params = self._filters(search, category, city)
        sql = f"SELECT * FROM businesses {where} ORDER BY {_ORDER_BY}"
        if limit:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        rows = self.backend.fetchall(sql, tuple(params))
        return [self._deserialize_business(r, include_blobs) for r in rows]

    def count_businesses(self, search: str = None, category: str = None,
                         city: str = None) -> int:
        """Count businesses matching the same filters as list_businesses()."""
        where, params = self._filters(search, category, city)
        return self.backend.scalar(
            f"SELECT COUNT(*) FROM businesses {where}", tuple(params)
        )

    def list_business_ids(self) -> List[str]:
        return [r["id"] for r in self.backend.fetchall("SELECT id FROM businesses ORDER BY id")]

    def iter_business_pages(self, page_size: int = 50) -> Iterator[List[Dict[str, Any]]]:
        """Every business, decoded with blobs, in pages of ``page_size`` ordered by id."""
        for rows in self.backend.iter_keyset_pages("businesses", page_size):
            yield [self._deserialize_business(r, True) for r in rows]

    def update_business(self, business_id: str, fields: Dict[str, Any]) -> bool:
        """
        Partially update a business.

        Raises ValueError for fields outside EDITABLE_FIELDS and for a
        null or blank name.
        Returns False when the business doesn't exist.
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        for key in _REQUIRED_FIELDS:
            if key in fields and (fields[key] is None or str(fields[key]).strip() == ""):
                raise ValueError(f"{key} cannot be empty")
        if not fields:
            return self.business_exists(business_id)

        assignments: List[str] = []
        params: List[Any] = []
        for key, value in fields.items():
            if key == "photos":
                assignments.append("photos_json = ?")
                params.append(_dump_json(value or []))
            elif key == "hours":
                assignments.append("hours_json = ?")
                params.append(_dump_json(value))
            elif key in _BOOL_COLUMNS:
                assignments.append(f"{key} = ?")
                params.append(None if value is None else int(bool(value)))
            else:
                assignments.append(f"{key} = ?")
                params.append(value)
        assignments.append("updated_at = ?")
        params.extend([_now_utc(), business_id])

        cursor = self.backend.execute(
            f"UPDATE businesses SET {', '.join(assignments)} WHERE id = ?",
            tuple(params)
        )
        self.backend.commit()
        return cursor.rowcount > 0

    def delete_business(self, business_id: str) -> bool:
        """Delete a business (its reviews cascade)."""
        cursor = self.backend.execute(
            "DELETE FROM businesses WHERE id = ?", (business_id,)
        )
        self.backend.commit()
        return cursor.rowcount > 0

    # === Categories ===

    def list_categories(self) -> List[Dict[str, Any]]:
        """Distinct non-empty categories with business counts."""
        return self.backend.fetchall(
            "SELECT category AS name, COUNT(*) AS count FROM businesses "
            "WHERE category IS NOT NULL AND category != '' "
            "GROUP BY category ORDER BY count DESC, name ASC"
        )

    def rename_category(self, old_name: str, new_name: str) -> int:
        """Rename a category on every business. Returns rows changed."""
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValueError("new category name must not be empty")
        cursor = self.backend.execute(
            "UPDATE businesses SET category = ?, updated_at = ? WHERE category = ?",
            (new_name, _now_utc(), old_name)
        )
        self.backend.commit()
        return cursor.rowcount

    def delete_category(self, name: str, delete_businesses: bool = False) -> int:
        """
        Remove a category.

        By default businesses are kept and their category cleared; with
        ``delete_businesses`` the rows themselves are deleted.
        """
        if delete_businesses:
            cursor = self.backend.execute(
                "DELETE FROM businesses WHERE category = ?", (name,)
            )
        else:
            cursor = self.backend.execute(
                "UPDATE businesses SET category = NULL, updated_at = ? WHERE category = ?",
                (_now_utc(), name)
            )
        self.backend.commit()
        return cursor.rowcount

    # === Reviews ===

    def replace_reviews(self, business_id: str, reviews: List[Dict[str, Any]]) -> int:
        """Replace every stored review of a business. Returns rows inserted."""
        now = _now_utc()
        with self.transaction():
            self.backend.execute(
                "DELETE FROM reviews WHERE business_id = ?", (business_id,)
            )
            self.backend.executemany(
                "INSERT INTO reviews (id, business_id, author_name, rating, text, "
                "time_ago, profile_photo_url, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (r["id"], business_id, r.get("author_name"), r.get("rating"),
                     r.get("text"), r.get("time_ago"), r.get("profile_photo_url"), now)
                    for r in reviews
                ]
            )
        return len(reviews)

    def get_reviews(self, business_id: str) -> List[Dict[str, Any]]:
        return self.backend.fetchall(
            "SELECT * FROM reviews WHERE business_id = ? ORDER BY id",
            (business_id,)
        )

    def update_rating(self, business_id: str, rating: Optional[float],
                      review_count: Optional[int]) -> bool:
        cursor = self.backend.execute(
            "UPDATE businesses SET rating = COALESCE(?, rating), "
            "review_count = COALESCE(?, review_count), updated_at = ? WHERE id = ?",
            (rating, review_count, _now_utc(), business_id)
        )
        self.backend.commit()
        return cursor.rowcount > 0

    # === Image storage write-back ===

    def set_logo_storage_url(self, business_id: str, url: str) -> bool:
        """Record the uploaded logo URL."""
        now = _now_utc()
        cursor = self.backend.execute(
            "UPDATE businesses SET logo_s3_url = ?, logo_uploaded_at = ?, "
            "updated_at = ? WHERE id = ?",
            (url, now, now, business_id)
        )
        self.backend.commit()
        return cursor.rowcount > 0

    def set_photo_storage_url(self, business_id: str, index: int, url: str) -> bool:
        """Record the uploaded URL of photo ``index``. False if out of range."""
        now = _now_utc()

        def _apply(photo: Dict[str, Any]) -> None:
            photo["s3_url"] = url
            photo["s3_uploaded_at"] = now

        return self._update_photo(business_id, index, _apply)

    def set_logo_base64(self, business_id: str, data: str) -> bool:
        cursor = self.backend.execute(
            "UPDATE businesses SET logo_base64 = ?, updated_at = ? WHERE id = ?",
            (data, _now_utc(), business_id)
        )
        self.backend.commit()
        return cursor.rowcount > 0

    def set_photo_base64(self, business_id: str, index: int, data: str) -> bool:
        def _apply(photo: Dict[str, Any]) -> None:
            photo["base64"] = data

        return self._update_photo(business_id, index, _apply)

    def append_photo(self, business_id: str, photo: Dict[str, Any]) -> Optional[int]:
        """Append a photo entry. Returns its index, or None for an unknown business."""
        with self.transaction():
            row = self.backend.fetchone(
                "SELECT photos_json FROM businesses WHERE id = ?", (business_id,)
            )
            if row is None:
                return None
            photos = _load_json(row["photos_json"], [])
            photos.append(photo)
            self.backend.execute(
                "UPDATE businesses SET photos_json = ?, updated_at = ? WHERE id = ?",
                (_dump_json(photos), _now_utc(), business_id)
            )
        return len(photos) - 1

    def _update_photo(self, business_id: str, index: int, apply) -> bool:
        with self.transaction():
            row = self.backend.fetchone(
                "SELECT photos_json FROM businesses WHERE id = ?", (business_id,)
            )
            if row is None:
                return False
            photos = _load_json(row["photos_json"], [])
            if not 0 <= index < len(photos) or not isinstance(photos[index], dict):
                return False
            apply(photos[index])
            self.backend.execute(
                "UPDATE businesses SET photos_json = ?, updated_at = ? WHERE id = ?",
                (_dump_json(photos), _now_utc(), business_id)
            )
        return True

    # === Database Management ===

    def get_stats(self) -> Dict[str, Any]:
        """Directory-wide counts including image upload coverage."""
        b = self.backend
        stats: Dict[str, Any] = {
            "total_businesses": b.scalar("SELECT COUNT(*) FROM businesses"),
            "categories": b.scalar(
                "SELECT COUNT(DISTINCT category) FROM businesses "
                "WHERE category IS NOT NULL AND category != ''"
            ),
            "with_reviews": b.scalar("SELECT COUNT(DISTINCT business_id) FROM reviews"),
            "reviews_count": b.scalar("SELECT COUNT(*) FROM reviews"),
            "logos_total": b.scalar(
                "SELECT COUNT(*) FROM businesses WHERE "
                "COALESCE(logo_url, '') != '' OR COALESCE(logo_base64, '') != ''"
            ),
            "logos_uploaded": b.scalar(
                "SELECT COUNT(*) FROM businesses WHERE COALESCE(logo_s3_url, '') != ''"
            ),
        }
        photos_total = photos_uploaded = 0
        for row in b.fetchall("SELECT photos_json FROM businesses"):
            for photo in _load_json(row["photos_json"], []):
                photos_total += 1
                if isinstance(photo, dict) and photo.get("s3_url"):
                    photos_uploaded += 1
        stats["photos_total"] = photos_total
        stats["photos_uploaded"] = photos_uploaded
        stats["db_size_bytes"] = b.size_bytes()
        return stats

    def export_all(self, include_blobs: bool = False) -> List[Dict[str, Any]]:
        """Every business with its reviews, JSON-serializable."""
        result = []
        for business in self.list_businesses(limit=0, include_blobs=include_blobs):
            business["reviews"] = self.get_reviews(business["id"])
            result.append(business)
        return result

    def clear_all(self) -> Dict[str, int]:
        """Delete ALL businesses and reviews. Schema remains intact."""
        counts = {}
        for table in ("reviews", "businesses"):
            counts[table] = self.backend.scalar(f"SELECT COUNT(*) FROM {table}")
            self.backend.execute(f"DELETE FROM {table}")
        self.backend.commit()
        return counts

    def vacuum(self) -> None:
        """Reclaim disk space after large deletions."""
        self.backend.vacuum()

    def get_schema_version(self) -> int:
        return self.backend.get_schema_version()

    def close(self) -> None:
        """Close the database connection."""
        self.backend.close()

    # === Private helpers ===

    @staticmethod
    def _filters(search: Optional[str], category: Optional[str],
                 city: Optional[str]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if search:
            like = f"%{search.strip()}%"
            clauses.append("(name LIKE ? OR address LIKE ? OR category LIKE ?)")
            params.extend([like, like, like])
        if category:
            clauses.append("category = ?")
            params.append(category)
        if city:
            clauses.append("address LIKE ?")
            params.append(f"%{city.strip()}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def _serialize_record(record: Dict[str, Any]) -> Dict[str, Any]:
        values = {c: record.get(c) for c in BUSINESS_COLUMNS}
        if "photos" in record:
            values["photos_json"] = _dump_json(record.get("photos") or [])
        if "hours" in record:
            values["hours_json"] = _dump_json(record.get("hours"))
        for key in _BOOL_COLUMNS:
            if values.get(key) is not None:
                values[key] = int(bool(values[key]))
        if values.get("has_target_keyword") is None:
            values["has_target_keyword"] = 0
        if values.get("review_count") is None:
            values["review_count"] = 0
        return values

    @staticmethod
    def _deserialize_business(row: Dict[str, Any], include_blobs: bool) -> Dict[str, Any]:
        """Decode JSON columns into ``hours`` / ``photos`` and coerce flags."""
        result = dict(row)
        result["hours"] = _load_json(result.pop("hours_json", None), None)
        photos = _load_json(result.pop("photos_json", None), [])
        for key in _BOOL_COLUMNS:
            if result.get(key) is not None:
                result[key] = bool(result[key])
        result["has_logo_base64"] = bool(result.get("logo_base64"))
        if not include_blobs:
            result.pop("logo_base64", None)
            photos = [
                {k: v for k, v in p.items() if k != "base64"} if isinstance(p, dict) else p
                for p in photos
            ]
        result["photos"] = photos
        return result


def _merge_photo_uploads(old: List[Dict[str, Any]],
                         new: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Carry storage fields from previously-stored photos onto fresh ones."""
    carried: Dict[str, Dict[str, Any]] = {}
    for photo in old:
        if not isinstance(photo, dict):
            continue
        keep = {k: photo[k] for k in ("s3_url", "s3_uploaded_at", "base64") if photo.get(k)}
        if not keep:
            continue
        for ident in (photo.get("url"), photo.get("photo_reference")):
            if ident:
                carried[ident] = keep

    merged = []
    for photo in new:
        photo = dict(photo)
        keep = carried.get(photo.get("url")) or carried.get(photo.get("photo_reference"))
        if keep:
            for k, v in keep.items():
                photo.setdefault(k, v)
        merged.append(photo)
    return merged
