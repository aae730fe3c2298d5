"""
Import utilities for loading exported directory data into SQLite.

Accepts the output of ``start.py export`` as well as the older camelCase
JSON dumps of the directory (``reviewCount``, ``logoUrl``...).

Usage:
    python start.py import --json-path businesses.json
"""

import json
import logging
from pathlib import Path
from typing import Dict, Any, List, Iterable, Optional

from bizdir.business_db import BusinessDB, BUSINESS_COLUMNS

log = logging.getLogger("bizdir")

# camelCase keys from older exports -> column names
_ALIASES = {
    "reviewCount": "review_count",
    "businessStatus": "business_status",
    "photoReference": "photo_reference",
    "logoUrl": "logo_url",
    "logoBase64": "logo_base64",
    "logoS3Url": "logo_s3_url",
    "isOpen": "is_open",
    "priceLevel": "price_level",
    "hasTargetKeyword": "has_target_keyword",
    "latitude": "lat",
    "longitude": "lng",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
}

_REVIEW_ALIASES = {
    "authorName": "author_name",
    "timeAgo": "time_ago",
    "profilePhotoUrl": "profile_photo_url",
}


def _legacy_to_business_dict(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize an exported business document; {} when it has no id or name."""
    data = {_ALIASES.get(k, k): v for k, v in doc.items()}
    if not data.get("id") or not data.get("name"):
        return {}

    record = {c: data[c] for c in BUSINESS_COLUMNS if c in data}
    photos = data.get("photos")
    if photos is None and data.get("photos_json"):
        photos = json.loads(data["photos_json"])
    if isinstance(photos, list):
        # Older dumps stored bare URL strings.
        record["photos"] = [p if isinstance(p, dict) else {"url": p} for p in photos]
    hours = data.get("hours")
    if hours is None and data.get("hours_json"):
        hours = json.loads(data["hours_json"])
    if hours is not None:
        record["hours"] = hours
    record.pop("photos_json", None)
    record.pop("hours_json", None)
    return record


def _legacy_to_review_dict(business_id: str, index: int,
                           doc: Dict[str, Any]) -> Dict[str, Any]:
    data = {_REVIEW_ALIASES.get(k, k): v for k, v in doc.items()}
    return {
        "id": data.get("id") or f"google_{business_id}_{index}",
        "author_name": data.get("author_name", ""),
        "rating": data.get("rating"),
        "text": data.get("text", ""),
        "time_ago": data.get("time_ago", ""),
        "profile_photo_url": data.get("profile_photo_url"),
    }


def import_businesses(rows: Iterable[Dict[str, Any]],
                      db_path: str = "businesses.db",
                      db: Optional[BusinessDB] = None) -> Dict[str, int]:
    """
    Upsert exported businesses (and their embedded reviews).

    Returns:
        Dict with counts: {'total', 'inserted', 'updated', 'skipped', 'reviews'}
    """
    own_db = db is None
    db = db or BusinessDB(db_path)
    stats = {"total": 0, "inserted": 0, "updated": 0, "skipped": 0, "reviews": 0}
    try:
        for doc in rows:
            stats["total"] += 1
            record = _legacy_to_business_dict(doc) if isinstance(doc, dict) else {}
            if not record:
                stats["skipped"] += 1
                continue
            try:
                outcome = db.upsert_business(record)
            except ValueError as e:
                log.warning("Skipping business %s: %s", record.get("id"), e)
                stats["skipped"] += 1
                continue
            stats[outcome] += 1

            reviews = doc.get("reviews")
            if isinstance(reviews, list):
                stats["reviews"] += db.replace_reviews(record["id"], [
                    _legacy_to_review_dict(record["id"], i, r)
                    for i, r in enumerate(reviews) if isinstance(r, dict)
                ])
    finally:
        if own_db:
            db.close()

    log.info("Business import complete: %s", stats)
    return stats


def _load_rows(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        if isinstance(data.get("businesses"), list):
            return data["businesses"]
        # Keyed by business id
        return [dict(v, id=v.get("id", k)) for k, v in data.items() if isinstance(v, dict)]
    raise ValueError("expected a list of businesses or an object with 'businesses'")


def import_json(json_path: str, db_path: str = "businesses.db") -> Dict[str, int]:
    """Import businesses from a JSON file written by ``export`` or an older dump."""
    path = Path(json_path)
    if not path.exists():
        raise FileNotFoundError(f"JSON file not found: {json_path}")

    rows = _load_rows(json.loads(path.read_text(encoding="utf-8")))
    if not rows:
        log.info("No businesses found in %s", json_path)
    return import_businesses(rows, db_path)
