"""Local filesystem storage backend."""

import logging
import mimetypes
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from bizdir.storage import StorageBackend, StorageError, StoredObject

log = logging.getLogger("bizdir")


class LocalStorage(StorageBackend):
    """
    Stores objects as files under ``storage.local_dir``.

    Public URLs are ``{storage.local_base_url}/{key}``; serving the directory
    is done by the admin API, which mounts ``local_dir`` at a path-style
    ``local_base_url``, or by whatever fronts it.
    """

    name = "local"

    def __init__(self, config: Dict[str, Any]):
        storage_cfg = config.get("storage", {})
        self.root = Path(storage_cfg.get("local_dir", "uploads")).resolve()
        self.base_url = storage_cfg.get("local_base_url", "/uploads").rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        if not key or key.startswith(("/", "\\")):
            raise StorageError(f"invalid object key: {key!r}")
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"object key escapes storage root: {key!r}")
        return path

    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg",
               metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            raise StorageError(f"failed to write {path}: {e}") from e
        log.debug("Stored %d bytes at %s", len(data), path)
        return StoredObject(key=key, url=self.public_url(key), size=len(data),
                            content_type=content_type)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            key = path.relative_to(self.root).as_posix()
            if not key.startswith(prefix):
                continue
            stat = path.stat()
            yield StoredObject(
                key=key,
                url=self.public_url(key),
                size=stat.st_size,
                content_type=mimetypes.guess_type(path.name)[0],
                last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"
