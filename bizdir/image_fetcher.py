"""
Image byte fetching for logos and photos.

An image source is either an http(s) URL or a base64 payload (raw or a
``data:image/...;base64,`` URI). URLs are downloaded through a retrying
session; Google-hosted URLs are first rewritten to a sane size.
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

log = logging.getLogger("bizdir")

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,", re.IGNORECASE)

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}

# Tried in order; some CDNs reject bare clients, others reject browser UAs.
_HEADER_STRATEGIES = (
    {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
        ),
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "Referer": "https://www.google.com/",
    },
    {
        "User-Agent": "bizdir-image-sync/1.0",
        "Accept": "image/*",
    },
)


class ImageFetchError(Exception):
    """The image source could not be turned into bytes."""


@dataclass
class FetchedImage:
    data: bytes
    content_type: str
    extension: str
    source: str  # "url" or "base64"

    @property
    def size(self) -> int:
        return len(self.data)


def is_valid_image_url(url: Optional[str]) -> bool:
    """True for http(s) URLs with a host."""
    if not url or not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def sniff_content_type(data: bytes) -> Optional[str]:
    """Content type from magic bytes, or None if not a known image format."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def extension_for(content_type: Optional[str]) -> str:
    if not content_type:
        return "jpg"
    return _EXTENSIONS.get(content_type.split(";")[0].strip().lower(), "jpg")


def decode_base64_image(payload: str) -> Tuple[bytes, Optional[str]]:
    """Decode raw base64 or a data URI. Returns (bytes, declared content type)."""
    declared = None
    match = _DATA_URI_RE.match(payload)
    if match:
        declared = (match.group("mime") or "").lower() or None
        payload = payload[match.end():]
    try:
        data = base64.b64decode("".join(payload.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageFetchError(f"invalid base64 payload: {e}") from e
    if not data:
        raise ImageFetchError("empty base64 payload")
    return data, declared


class ImageFetcher:
    """Fetches image bytes from URLs or base64 blobs."""

    def __init__(self, config: Dict[str, Any], session: requests.Session = None):
        images_cfg = config.get("images", {})
        self.timeout = images_cfg.get("timeout", 10)
        self.max_width = images_cfg.get("max_width", 800)

        if session is None:
            session = requests.Session()
            retry = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=[429, 500, 502, 503, 504],
            )
            session.mount("https://", HTTPAdapter(max_retries=retry))
            session.mount("http://", HTTPAdapter(max_retries=retry))
        self._session = session

    def normalize_url(self, url: str) -> str:
        """Rewrite Google-hosted image URLs to request ``max_width`` pixels."""
        parsed = urlparse(url)
        host = parsed.netloc.lower()
        if host.endswith(("googleusercontent.com", "ggpht.com", "gstatic.com")):
            return url.split("=")[0] + f"=w{self.max_width}"
        if host == "maps.googleapis.com" and parsed.path.endswith("/place/photo"):
            query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                     if k not in ("maxwidth", "maxheight")]
            query.append(("maxwidth", str(self.max_width)))
            return urlunparse(parsed._replace(query=urlencode(query)))
        return url

    def fetch(self, source: str) -> FetchedImage:
        """Bytes for a URL or base64 source; raises ImageFetchError."""
        if not source or not isinstance(source, str):
            raise ImageFetchError("empty image source")
        source = source.strip()
        if source.lower().startswith(("http://", "https://")):
            return self.fetch_url(source)
        if source.lower().startswith("data:") or not urlparse(source).scheme:
            return self.from_base64(source)
        raise ImageFetchError(f"unsupported image source scheme: {urlparse(source).scheme}")

    def from_base64(self, payload: str) -> FetchedImage:
        data, declared = decode_base64_image(payload)
        content_type = sniff_content_type(data) or declared or "image/jpeg"
        return FetchedImage(data, content_type, extension_for(content_type), "base64")

    def fetch_url(self, url: str) -> FetchedImage:
        if not is_valid_image_url(url):
            raise ImageFetchError(f"invalid image URL: {url}")
        download_url = self.normalize_url(url)

        last_error = "no attempt made"
        for headers in _HEADER_STRATEGIES:
            try:
                response = self._session.get(download_url, headers=headers,
                                             timeout=self.timeout)
                response.raise_for_status()
            except requests.RequestException as e:
                last_error = str(e)
                log.debug("Image fetch attempt failed for %s: %s", download_url, e)
                continue

            data = response.content
            if not data:
                last_error = "empty response body"
                continue
            header_type = (response.headers.get("Content-Type") or "").split(";")[0].strip().lower()
            sniffed = sniff_content_type(data)
            if header_type and not header_type.startswith("image/") and not sniffed:
                last_error = f"not an image (Content-Type: {header_type})"
                continue
            content_type = sniffed or header_type or "image/jpeg"
            return FetchedImage(data, content_type, extension_for(content_type), "url")

        raise ImageFetchError(f"failed to fetch {url}: {last_error}")

    def to_base64(self, url: str) -> str:
        """Download an image and return it as a data URI."""
        image = self.fetch_url(url)
        encoded = base64.b64encode(image.data).decode("ascii")
        return f"data:{image.content_type};base64,{encoded}"
