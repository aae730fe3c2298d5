"""
Storage backend interface, object key layout and backend factory.
"""

import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

ALLOWED_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "gif"})

_KEY_BUSINESS_RE = re.compile(r"^businesses/([^/]+)/")
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class StorageError(Exception):
    """An object store operation failed."""


class StorageNotConfigured(StorageError):
    """The selected backend is missing credentials or is unreachable."""


@dataclass
class StoredObject:
    """An object that exists in a backend."""

    key: str
    url: str
    size: int
    content_type: Optional[str] = None
    last_modified: Optional[datetime] = None


class StorageBackend(ABC):
    """Abstract base class for image storage backends."""

    name = "abstract"

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg",
               metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        """
        Store ``data`` under ``key``.

        Returns:
            StoredObject carrying the public URL.

        Raises:
            StorageError: if the backend rejects the write.
        """

    @abstractmethod
    def exists(self, key: str) -> bool:
        """Check if an object exists."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete an object. True if something was deleted."""

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        """Iterate objects whose key starts with ``prefix``."""

    @abstractmethod
    def public_url(self, key: str) -> str:
        """URL under which ``key`` is served."""

    def stats(self) -> Dict[str, Any]:
        """Object count, total bytes and number of distinct businesses."""
        total_objects = 0
        total_size = 0
        businesses = set()
        for obj in self.list("businesses/"):
            total_objects += 1
            total_size += obj.size
            business_id = business_id_from_key(obj.key)
            if business_id:
                businesses.add(business_id)
        return {
            "backend": self.name,
            "total_objects": total_objects,
            "total_size": total_size,
            "business_count": len(businesses),
        }


def sanitize_business_id(business_id: str) -> str:
    return _UNSAFE_ID_CHARS.sub("_", business_id or "") or "unknown"


def build_image_key(business_id: str, image_type: str, extension: str = "jpg",
                    now: datetime = None) -> str:
    """``businesses/{id}/{type}s/{epoch_ms}-{uuid8}.{ext}``."""
    ext = (extension or "").lower().lstrip(".")
    if ext not in ALLOWED_EXTENSIONS:
        ext = "jpg"
    now = now or datetime.now(timezone.utc)
    stamp = int(now.timestamp() * 1000)
    return (
        f"businesses/{sanitize_business_id(business_id)}/{image_type}s/"
        f"{stamp}-{uuid.uuid4().hex[:8]}.{ext}"
    )


def business_id_from_key(key: str) -> Optional[str]:
    match = _KEY_BUSINESS_RE.match(key or "")
    return match.group(1) if match else None


def create_storage(config: Dict[str, Any], backend: str = None) -> StorageBackend:
    """
    Build the configured backend (``storage.backend`` unless overridden).

    Raises:
        StorageNotConfigured: when credentials are missing or the bucket
            can't be reached.
    """
    name = backend or config.get("storage", {}).get("backend", "s3")

    if name == "local":
        from bizdir.local_storage import LocalStorage
        return LocalStorage(config)
    if name == "s3":
        from bizdir.s3_handler import S3Handler
        handler = S3Handler(config)
        if not handler.enabled:
            raise StorageNotConfigured("S3 is not configured")
        return handler
    if name == "netlify":
        from bizdir.netlify_handler import NetlifyHandler
        return NetlifyHandler(config)
    raise StorageNotConfigured(f"Unknown storage backend: {name}")
