"""
Business fetching from Google Places into the directory database.

``BusinessFetcher.fetch`` runs a Text Search per query (by default one per
configured category), de-duplicates results by place id and by name,
enriches each new place with a Details call and upserts it.
``sync_reviews`` refreshes stored reviews and ratings for existing rows.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from bizdir.business_db import BusinessDB
from bizdir.image_fetcher import ImageFetcher, ImageFetchError
from bizdir.models import business_from_place, category_from_query, reviews_from_place
from bizdir.places_client import PlacesApiError, PlacesClient
from bizdir.progress import ProgressTracker

log = logging.getLogger("bizdir")


@dataclass
class FetchResult:
    queries: int = 0
    found: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BusinessFetcher:
    """Search → dedupe → details → upsert, with progress and cancellation."""

    def __init__(self, config: Dict[str, Any], db_path: str,
                 client: PlacesClient = None, tracker: ProgressTracker = None,
                 image_fetcher: ImageFetcher = None,
                 sleep: Callable[[float], None] = time.sleep):
        google_cfg = config.get("google", {})
        self.region_suffix = google_cfg.get("region_suffix", "")
        self.categories = list(google_cfg.get("categories", []))
        self.request_delay = google_cfg.get("request_delay", 0.1)
        self.max_photos = google_cfg.get("max_photos", 6)
        self.logo_max_width = google_cfg.get("logo_max_width", 200)
        self.photo_max_width = google_cfg.get("photo_max_width", 400)
        self.target_keywords = list(google_cfg.get("target_keywords", []))

        self.db_path = db_path
        self.client = client or PlacesClient(config)
        self.tracker = tracker or ProgressTracker()
        self.image_fetcher = image_fetcher or ImageFetcher(config)
        self._sleep = sleep

    def default_queries(self) -> List[str]:
        return [f"{c}{self.region_suffix}" for c in self.categories]

    def _to_record(self, place: Dict[str, Any], category: Optional[str]) -> Dict[str, Any]:
        return business_from_place(
            place,
            category,
            self.client.photo_url,
            max_photos=self.max_photos,
            logo_max_width=self.logo_max_width,
            photo_max_width=self.photo_max_width,
            target_keywords=self.target_keywords,
        )

    def search_preview(self, query: str, limit: int = 20) -> List[Dict[str, Any]]:
        """Mapped Text Search results without writing anything."""
        places, _ = self.client.text_search(query)
        category = category_from_query(query, self.region_suffix)
        db = BusinessDB(self.db_path)
        try:
            preview = []
            for place in places[:limit]:
                if not place.get("place_id"):
                    continue
                record = self._to_record(place, category)
                record["exists"] = db.business_exists(record["id"])
                preview.append(record)
            return preview
        finally:
            db.close()

    def fetch(self, queries: List[str] = None, max_per_query: int = 20,
              fetch_details: bool = True, update_existing: bool = False,
              download_logo: bool = False, max_pages: int = 1,
              cancel_event: threading.Event = None) -> FetchResult:
        """
        Fetch and store businesses for each query.

        A failing query or a failing Details call is recorded and skipped;
        ``PlacesApiDisabled`` aborts the whole run.
        """
        queries = queries or self.default_queries()
        cancel_event = cancel_event or threading.Event()
        result = FetchResult()
        seen_ids = set()
        seen_names = set()

        self.tracker.start(len(queries), f"Fetching businesses for {len(queries)} queries")
        db = BusinessDB(self.db_path)
        try:
            for query in queries:
                if cancel_event.is_set():
                    break
                self.tracker.item_started(query)
                self.tracker.log(f"Searching: {query}")
                try:
                    places = self.client.search_all(query, max_pages=max_pages)
                except PlacesApiError as e:
                    result.errors.append(f"{query}: {e}")
                    self.tracker.record_error(query, str(e))
                    self.tracker.log(f"FAIL search '{query}': {e}")
                    continue
                result.queries += 1
                category = category_from_query(query, self.region_suffix)

                for place in places[:max_per_query]:
                    if cancel_event.is_set():
                        break
                    self._store_place(db, place, category, result, seen_ids, seen_names,
                                      fetch_details, update_existing, download_logo)

                self.tracker.record_success()
                self._sleep(self.request_delay)
        except Exception as e:
            self.tracker.finish("failed", str(e))
            raise
        finally:
            db.close()

        status = "cancelled" if cancel_event.is_set() else "completed"
        summary = (f"{result.added} added, {result.updated} updated, "
                   f"{result.skipped} skipped, {len(result.errors)} errors")
        self.tracker.log(f"Done: {summary}")
        self.tracker.finish(status, summary)
        log.info("Business fetch %s: %s", status, summary)
        return result

    def _store_place(self, db: BusinessDB, place: Dict[str, Any], category: str,
                     result: FetchResult, seen_ids: set, seen_names: set,
                     fetch_details: bool, update_existing: bool,
                     download_logo: bool) -> None:
        place_id = place.get("place_id")
        name = (place.get("name") or "").strip()
        name_key = name.lower()
        if not place_id or not name or place_id in seen_ids or name_key in seen_names:
            result.skipped += 1
            return
        seen_ids.add(place_id)
        seen_names.add(name_key)
        result.found += 1

        exists = db.business_exists(place_id)
        if exists and not update_existing:
            result.skipped += 1
            return
        if not exists and db.find_by_name(name):
            result.skipped += 1
            self.tracker.log(f"SKIP {name}: same name already stored")
            return

        details = place
        if fetch_details:
            try:
                details = {**place, **self.client.place_details(place_id)}
            except PlacesApiError as e:
                # Text Search results carry enough to store a usable row.
                log.warning("Details failed for %s, using search result: %s", place_id, e)
            self._sleep(self.request_delay)

        record = self._to_record(details, category)
        if download_logo and record.get("logo_url"):
            try:
                record["logo_base64"] = self.image_fetcher.to_base64(record["logo_url"])
            except ImageFetchError as e:
                log.warning("Logo download failed for %s: %s", place_id, e)

        outcome = db.upsert_business(record)
        if outcome == "inserted":
            result.added += 1
        else:
            result.updated += 1
        self.tracker.log(f"{outcome.upper()} {name}")

    def sync_reviews(self, business_ids: List[str] = None,
                     cancel_event: threading.Event = None) -> Dict[str, int]:
        """Replace stored reviews and refresh rating/review_count from Details."""
        cancel_event = cancel_event or threading.Event()
        counts = {"businesses": 0, "reviews": 0, "failed": 0}

        db = BusinessDB(self.db_path)
        try:
            ids = db.list_business_ids() if business_ids is None else list(business_ids)
            self.tracker.start(len(ids), f"Syncing reviews for {len(ids)} businesses")
            for business_id in ids:
                if cancel_event.is_set():
                    break
                self.tracker.item_started(business_id)
                if not db.business_exists(business_id):
                    counts["failed"] += 1
                    self.tracker.record_error(business_id, "unknown business")
                    continue
                try:
                    details = self.client.place_reviews(business_id)
                except PlacesApiError as e:
                    counts["failed"] += 1
                    self.tracker.record_error(business_id, str(e))
                    continue

                reviews = reviews_from_place(business_id, details)
                counts["reviews"] += db.replace_reviews(business_id, reviews)
                db.update_rating(business_id, details.get("rating"),
                                 details.get("user_ratings_total"))
                counts["businesses"] += 1
                self.tracker.record_success()
                self.tracker.log(f"{business_id}: {len(reviews)} reviews")
                self._sleep(self.request_delay)
        except Exception as e:
            self.tracker.finish("failed", str(e))
            raise
        finally:
            db.close()

        status = "cancelled" if cancel_event.is_set() else "completed"
        self.tracker.finish(status, f"{counts['businesses']} businesses, "
                                    f"{counts['reviews']} reviews, {counts['failed']} failed")
        return counts
