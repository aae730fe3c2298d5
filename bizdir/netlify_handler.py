"""
Netlify static-hosting storage backend.

Files are PUT one at a time through the Netlify files API and served from
``https://{site_id}.netlify.app/{folder}/{key}``.
"""

import logging
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from bizdir.storage import StorageBackend, StorageError, StorageNotConfigured, StoredObject

log = logging.getLogger("bizdir")

API_BASE = "https://api.netlify.com/api/v1"


def business_id_from_filename(filename: str) -> Optional[str]:
    """``ChIJabc_1.jpg`` → ``ChIJabc``; None when there is no ``_`` prefix."""
    stem = filename.rsplit("/", 1)[-1]
    if "_" not in stem:
        return None
    prefix = stem.split("_", 1)[0]
    return prefix or None


class NetlifyHandler(StorageBackend):
    """Uploads files into a folder of a Netlify site."""

    name = "netlify"

    def __init__(self, config: Dict[str, Any], session: requests.Session = None):
        netlify_cfg = config.get("netlify", {})
        self.site_id = netlify_cfg.get("site_id", "")
        self.access_token = netlify_cfg.get("access_token", "")
        self.folder = (netlify_cfg.get("folder") or "business-photos").strip("/")
        self.timeout = netlify_cfg.get("timeout", 30)

        if not self.site_id or not self.access_token:
            raise StorageNotConfigured(
                "Netlify is not configured (NETLIFY_SITE_ID / NETLIFY_ACCESS_TOKEN)"
            )

        if session is None:
            session = requests.Session()
            retry = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET", "HEAD", "PUT"],
            )
            session.mount("https://", HTTPAdapter(max_retries=retry))
        self._session = session

    def _auth(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def _path(self, key: str) -> str:
        return f"{self.folder}/{key.lstrip('/')}"

    def public_url(self, key: str) -> str:
        return f"https://{self.site_id}.netlify.app/{quote(self._path(key))}"

    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg",
               metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        url = f"{API_BASE}/sites/{self.site_id}/files/{quote(self._path(key))}"
        headers = {**self._auth(), "Content-Type": "application/octet-stream"}
        try:
            response = self._session.put(url, data=data, headers=headers,
                                         timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"Netlify upload of {key} failed: {e}") from e

        log.debug("Uploaded %d bytes to Netlify site %s: %s", len(data), self.site_id, key)
        return StoredObject(key=key, url=self.public_url(key), size=len(data),
                            content_type=content_type)

    def exists(self, key: str) -> bool:
        try:
            response = self._session.head(self.public_url(key), timeout=self.timeout)
        except requests.RequestException as e:
            raise StorageError(f"Netlify HEAD failed for {key}: {e}") from e
        return response.status_code == 200

    def delete(self, key: str) -> bool:
        # The files API has no per-file delete; removal needs a new deploy.
        log.warning("Netlify backend cannot delete individual files (%s)", key)
        return False

    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        url = f"{API_BASE}/sites/{self.site_id}/files"
        try:
            response = self._session.get(url, headers=self._auth(), timeout=self.timeout)
            response.raise_for_status()
            files = response.json()
        except (requests.RequestException, ValueError) as e:
            raise StorageError(f"Netlify file listing failed: {e}") from e

        folder_prefix = f"/{self.folder}/"
        for entry in files:
            path = entry.get("path") or entry.get("id") or ""
            if not path.startswith(folder_prefix):
                continue
            key = path[len(folder_prefix):]
            if not key.startswith(prefix):
                continue
            yield StoredObject(
                key=key,
                url=self.public_url(key),
                size=entry.get("size") or 0,
                content_type=entry.get("mime_type"),
            )
