"""
Google Places API client (Text Search, Details, Photo).

A process-wide ``ApiUsage`` switch lets an admin turn live API calls off
without restarting: while disabled, only cached Details responses are served
and everything else raises ``PlacesApiDisabled``.
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

log = logging.getLogger("bizdir")

BASE_URL = "https://maps.googleapis.com/maps/api/place"

DETAILS_FIELDS = (
    "place_id,name,formatted_address,formatted_phone_number,website,"
    "opening_hours,photos,rating,user_ratings_total,business_status,"
    "geometry,types,price_level"
)
REVIEW_FIELDS = "reviews,rating,user_ratings_total,name"

_OK_STATUSES = {"OK", "ZERO_RESULTS"}


class PlacesApiError(Exception):
    """Non-OK status from the Places API (REQUEST_DENIED, OVER_QUERY_LIMIT, ...)."""

    def __init__(self, status: str, message: str = ""):
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}" if message else status)


class PlacesApiDisabled(Exception):
    """Raised when a live call is attempted while the API switch is off."""


class ApiUsage:
    """Thread-safe API on/off switch, call counters and Details cache."""

    def __init__(self, enabled: bool = True):
        self._lock = threading.Lock()
        self.enabled = enabled
        self.calls_made = 0
        self.cache_hits = 0
        self._details_cache: Dict[Tuple[str, str], Dict[str, Any]] = {}

    def enable(self) -> None:
        with self._lock:
            self.enabled = True
        log.info("Google Places API enabled")

    def disable(self) -> None:
        with self._lock:
            self.enabled = False
        log.info("Google Places API disabled (cache only)")

    def reset(self) -> None:
        """Zero the counters and drop cached responses."""
        with self._lock:
            self.calls_made = 0
            self.cache_hits = 0
            self._details_cache.clear()

    def record_call(self) -> None:
        with self._lock:
            if not self.enabled:
                raise PlacesApiDisabled("Google Places API is disabled")
            self.calls_made += 1

    def cached(self, key: Tuple[str, str]) -> Optional[Dict[str, Any]]:
        with self._lock:
            hit = self._details_cache.get(key)
            if hit is not None:
                self.cache_hits += 1
            return hit

    def store(self, key: Tuple[str, str], value: Dict[str, Any]) -> None:
        with self._lock:
            self._details_cache[key] = value

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "enabled": self.enabled,
                "mode": "LIVE API + CACHE" if self.enabled else "CACHE ONLY",
                "calls_made": self.calls_made,
                "cache_hits": self.cache_hits,
                "cached_entries": len(self._details_cache),
            }


# Shared by the API server, CLI commands and background jobs.
api_usage = ApiUsage()


class PlacesClient:
    """Thin wrapper over the Places web service endpoints."""

    def __init__(self, config: Dict[str, Any], usage: ApiUsage = None,
                 session: requests.Session = None):
        google_cfg = config.get("google", {})
        self.api_key = google_cfg.get("api_key", "")
        self.timeout = google_cfg.get("timeout", 10)
        self.usage = usage or api_usage

        if session is None:
            session = requests.Session()
            retry = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"],
            )
            session.mount("https://", HTTPAdapter(max_retries=retry))
        self._session = session

    def _get(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise PlacesApiError("REQUEST_DENIED", "No Google Places API key configured")
        self.usage.record_call()

        try:
            response = self._session.get(
                f"{BASE_URL}/{endpoint}/json",
                params={**params, "key": self.api_key},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise PlacesApiError("HTTP_ERROR", str(e)) from e
        except ValueError as e:
            raise PlacesApiError("INVALID_RESPONSE", "response was not JSON") from e

        status = data.get("status", "UNKNOWN_ERROR")
        if status not in _OK_STATUSES:
            raise PlacesApiError(status, data.get("error_message", ""))
        return data

    def text_search(self, query: str,
                    page_token: str = None) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        """One page of Text Search results plus the next page token (if any)."""
        params = {"pagetoken": page_token} if page_token else {"query": query}
        data = self._get("textsearch", params)
        return data.get("results", []), data.get("next_page_token")

    def search_all(self, query: str, max_pages: int = 3,
                   page_delay: float = 2.0) -> List[Dict[str, Any]]:
        """Follow ``next_page_token`` up to ``max_pages`` pages."""
        results, token = self.text_search(query)
        pages = 1
        while token and pages < max_pages:
            # Google rejects a page token used immediately after issue.
            time.sleep(page_delay)
            more, token = self.text_search(query, page_token=token)
            results.extend(more)
            pages += 1
        log.debug("Text search '%s': %d results over %d page(s)", query, len(results), pages)
        return results

    def place_details(self, place_id: str, fields: str = DETAILS_FIELDS,
                      use_cache: bool = True) -> Dict[str, Any]:
        """Details for one place. Cached responses are served even while disabled."""
        key = (place_id, fields)
        if use_cache:
            hit = self.usage.cached(key)
            if hit is not None:
                return hit

        data = self._get("details", {"place_id": place_id, "fields": fields})
        result = data.get("result") or {}
        if use_cache and result:
            self.usage.store(key, result)
        return result

    def place_reviews(self, place_id: str) -> Dict[str, Any]:
        """Reviews, rating and rating count for a place (never cached)."""
        return self.place_details(place_id, fields=REVIEW_FIELDS, use_cache=False)

    def photo_url(self, photo_reference: str, max_width: int = 400) -> str:
        query = urlencode({
            "maxwidth": max_width,
            "photoreference": photo_reference,
            "key": self.api_key,
        })
        return f"{BASE_URL}/photo?{query}"
