"""
S3 storage backend for business images.

Supports AWS S3, MinIO, and Cloudflare R2 via unified provider config.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Any, Iterator, Optional
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from bizdir.storage import StorageBackend, StorageError, StoredObject

log = logging.getLogger("bizdir")

# Provider presets. Explicit config always wins over these defaults.
_PROVIDER_PRESETS: Dict[str, Dict[str, Any]] = {
    "aws": {},
    "minio": {"path_style": True, "acl": ""},
    "r2": {"region_name": "auto", "acl": ""},
}


def _resolve_s3_config(s3_config: Dict[str, Any]) -> Dict[str, Any]:
    """Apply provider presets then overlay explicit user config.

    Returns a new dict with all S3 settings resolved.
    """
    provider = s3_config.get("provider", "aws")
    preset = _PROVIDER_PRESETS.get(provider, {})

    resolved: Dict[str, Any] = {**preset}
    for key, value in s3_config.items():
        if key == "provider":
            continue
        if value is not None:
            resolved[key] = value
    return resolved


def _ascii_metadata(metadata: Optional[Dict[str, str]]) -> Dict[str, str]:
    """S3 user metadata must be ASCII; percent-encode everything else."""
    return {
        k: quote(str(v), safe=" -_.:/@")
        for k, v in (metadata or {}).items()
        if v is not None and v != ""
    }


class S3Handler(StorageBackend):
    """Uploads images to S3-compatible storage."""

    name = "s3"

    def __init__(self, config: Dict[str, Any]):
        """Initialize S3 client; ``enabled`` is False if the bucket is unusable."""
        self.enabled = False

        raw_s3 = config.get("s3", {})
        s3_config = _resolve_s3_config(raw_s3)

        self.aws_access_key_id = s3_config.get("aws_access_key_id", "")
        self.aws_secret_access_key = s3_config.get("aws_secret_access_key", "")
        self.region_name = s3_config.get("region_name", "us-east-1")
        self.bucket_name = s3_config.get("bucket_name", "")
        prefix = (s3_config.get("prefix") or "").strip("/")
        self.prefix = f"{prefix}/" if prefix else ""
        self.s3_base_url = s3_config.get("s3_base_url", "")
        self.endpoint_url: Optional[str] = s3_config.get("endpoint_url") or None
        self.path_style: bool = s3_config.get("path_style", False)
        self.acl: str = s3_config.get("acl", "public-read")
        self.cache_control: str = s3_config.get("cache_control", "")

        if not self.bucket_name:
            log.warning("S3 bucket_name is not configured; S3 storage disabled")
            return

        try:
            session_kwargs: Dict[str, Any] = {"region_name": self.region_name}

            # Use credentials if provided, otherwise rely on environment/IAM
            if self.aws_access_key_id and self.aws_secret_access_key:
                session_kwargs.update({
                    "aws_access_key_id": self.aws_access_key_id,
                    "aws_secret_access_key": self.aws_secret_access_key,
                })

            if self.endpoint_url:
                session_kwargs["endpoint_url"] = self.endpoint_url

            if self.path_style:
                session_kwargs["config"] = BotoConfig(
                    s3={"addressing_style": "path"}
                )

            self.s3_client = boto3.client("s3", **session_kwargs)

            self.s3_client.head_bucket(Bucket=self.bucket_name)
            self.enabled = True
            log.info("S3 storage ready for bucket: %s (provider: %s)",
                     self.bucket_name, raw_s3.get("provider", "aws"))

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            if error_code == '404':
                log.error("S3 bucket '%s' not found", self.bucket_name)
            elif error_code == '403':
                log.error("Access denied to S3 bucket '%s'", self.bucket_name)
            else:
                log.error("Error connecting to S3: %s", e)

        except BotoCoreError as e:
            log.error("Error initializing S3 client: %s", e)

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def public_url(self, key: str) -> str:
        """Generate the public URL for an uploaded object."""
        full_key = self._full_key(key)
        if self.s3_base_url:
            return f"{self.s3_base_url.rstrip('/')}/{full_key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket_name}/{full_key}"
        return f"https://{self.bucket_name}.s3.{self.region_name}.amazonaws.com/{full_key}"

    def _build_put_args(self, content_type: str,
                        metadata: Optional[Dict[str, str]]) -> Dict[str, Any]:
        """Extra put_object arguments, respecting ACL and cache config."""
        args: Dict[str, Any] = {"ContentType": content_type}
        if self.acl:
            args["ACL"] = self.acl
        if self.cache_control:
            args["CacheControl"] = self.cache_control
        encoded = _ascii_metadata(metadata)
        if encoded:
            args["Metadata"] = encoded
        return args

    def _require_enabled(self) -> None:
        if not self.enabled:
            raise StorageError("S3 storage is not enabled")

    def upload(self, key: str, data: bytes, content_type: str = "image/jpeg",
               metadata: Optional[Dict[str, str]] = None) -> StoredObject:
        self._require_enabled()
        full_key = self._full_key(key)
        try:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=full_key,
                Body=data,
                **self._build_put_args(content_type, metadata),
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 upload of {full_key} failed: {e}") from e

        log.debug("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket_name, full_key)
        return StoredObject(key=key, url=self.public_url(key), size=len(data),
                            content_type=content_type,
                            last_modified=datetime.now(timezone.utc))

    def exists(self, key: str) -> bool:
        self._require_enabled()
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=self._full_key(key))
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code", "") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"S3 head_object failed: {e}") from e

    def delete(self, key: str) -> bool:
        self._require_enabled()
        if not self.exists(key):
            return False
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self._full_key(key))
        except ClientError as e:
            raise StorageError(f"S3 delete failed: {e}") from e
        return True

    def list(self, prefix: str = "") -> Iterator[StoredObject]:
        """Iterate objects under ``prefix`` (relative to the configured key prefix)."""
        self._require_enabled()
        try:
            paginator = self.s3_client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name,
                                           Prefix=self._full_key(prefix)):
                for obj in page.get("Contents", []):
                    key = obj["Key"][len(self.prefix):]
                    yield StoredObject(
                        key=key,
                        url=self.public_url(key),
                        size=obj.get("Size", 0),
                        last_modified=obj.get("LastModified"),
                    )
        except ClientError as e:
            raise StorageError(f"Error listing S3 keys: {e}") from e
