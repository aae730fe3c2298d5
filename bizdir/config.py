"""
Configuration management for the business directory admin backend.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Dict, Any

import yaml

log = logging.getLogger("bizdir")

# Default configuration path
DEFAULT_CONFIG_PATH = Path("config.yaml")

# Default configuration - will be overridden by config file
DEFAULT_CONFIG = {
    "db_path": "businesses.db",
    "log_level": "INFO",
    "log_dir": "logs",
    "log_file": "bizdir.log",
    "api": {
        "allowed_origins": "*",
    },
    "google": {
        "api_key": "",
        "enabled": True,
        "request_delay": 0.1,  # seconds between Places calls
        "max_photos": 6,
        "logo_max_width": 200,
        "photo_max_width": 400,
        "timeout": 10,
        "region_suffix": " Dubai UAE",  # appended to categories when searching
        "target_keywords": ["visa"],
        "categories": [
            "visa consulting services",
            "immigration consultants",
            "visa services",
            "work visa services",
            "business visa services",
            "student visa consultants",
            "tourist visa services",
            "document clearing services",
        ],
    },
    "images": {
        "timeout": 10,
        "max_width": 800,
        "download_threads": 4,
    },
    "storage": {
        "backend": "s3",
        "local_dir": "uploads",
        "local_base_url": "/uploads",
    },
    "s3": {
        "provider": "aws",
        "bucket_name": "",
        "region_name": "us-east-1",
        "aws_access_key_id": "",
        "aws_secret_access_key": "",
        "endpoint_url": None,
        "path_style": False,
        "acl": "public-read",
        "s3_base_url": "",
        "cache_control": "max-age=31536000",
    },
    "netlify": {
        "site_id": "",
        "access_token": "",
        "folder": "business-photos",
    },
    "sync": {
        "concurrency": 10,
        "page_size": 50,
        "order": "priority",
        "max_errors": 100,
        "prefer_base64": True,
    },
}

# Environment variables that override config values (env wins when set).
_ENV_OVERRIDES = {
    "GOOGLE_PLACES_API_KEY": ("google", "api_key"),
    "AWS_ACCESS_KEY_ID": ("s3", "aws_access_key_id"),
    "AWS_SECRET_ACCESS_KEY": ("s3", "aws_secret_access_key"),
    "AWS_S3_BUCKET_NAME": ("s3", "bucket_name"),
    "AWS_REGION": ("s3", "region_name"),
    "NETLIFY_ACCESS_TOKEN": ("netlify", "access_token"),
    "NETLIFY_SITE_ID": ("netlify", "site_id"),
}

_VALID_BACKENDS = {"local", "s3", "netlify"}
_VALID_SYNC_ORDERS = {"priority", "pages"}


def apply_env_overrides(config: Dict[str, Any]) -> None:
    """Overlay secrets from environment variables (mutates *config* in place)."""
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            config.setdefault(section, {})[key] = value


def _positive_int(section: Dict[str, Any], key: str, default: int, label: str) -> None:
    val = section.get(key)
    if not isinstance(val, int) or isinstance(val, bool) or val <= 0:
        log.warning("Invalid %s '%s', falling back to %s", label, val, default)
        section[key] = default


def _validate_config(config: Dict[str, Any]) -> None:
    """Validate config values, falling back to safe defaults on bad input."""
    storage_cfg = config.setdefault("storage", {})
    backend = storage_cfg.get("backend", "s3")
    if backend not in _VALID_BACKENDS:
        log.warning("Invalid storage.backend '%s', falling back to 's3'", backend)
        storage_cfg["backend"] = "s3"

    sync_cfg = config.setdefault("sync", {})
    for key in ("concurrency", "page_size", "max_errors"):
        _positive_int(sync_cfg, key, DEFAULT_CONFIG["sync"][key], f"sync.{key}")

    order = sync_cfg.get("order", "priority")
    if order not in _VALID_SYNC_ORDERS:
        log.warning("Invalid sync.order '%s', falling back to 'priority'", order)
        sync_cfg["order"] = "priority"

    google_cfg = config.setdefault("google", {})
    for key in ("photo_max_width", "logo_max_width", "max_photos"):
        _positive_int(google_cfg, key, DEFAULT_CONFIG["google"][key], f"google.{key}")


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load configuration from YAML file or use defaults"""
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path.exists():
        try:
            with open(config_path, 'r') as f:
                user_config = yaml.safe_load(f)
                if user_config:
                    # Merge configs, with nested dictionary support
                    def deep_update(d, u):
                        for k, v in u.items():
                            if isinstance(v, dict) and k in d and isinstance(d[k], dict):
                                deep_update(d[k], v)
                            else:
                                d[k] = v

                    deep_update(config, user_config)
                    log.info(f"Loaded configuration from {config_path}")
        except Exception as e:
            log.error(f"Error loading config from {config_path}: {e}")
            log.info("Using default configuration")
    else:
        log.info(f"Config file {config_path} not found, using default configuration")
        # Create a default config file for future use
        with open(config_path, 'w') as f:
            yaml.dump(config, f, default_flow_style=False)
            log.info(f"Created default configuration file at {config_path}")

    apply_env_overrides(config)
    _validate_config(config)
    return config
