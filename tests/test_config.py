"""Tests for configuration management."""

import yaml
import pytest
from bizdir.config import load_config, apply_env_overrides, _validate_config, DEFAULT_CONFIG


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch):
    """Secrets in the developer's shell must not leak into these tests."""
    for name in ("GOOGLE_PLACES_API_KEY", "AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY",
                 "AWS_S3_BUCKET_NAME", "AWS_REGION", "NETLIFY_ACCESS_TOKEN",
                 "NETLIFY_SITE_ID"):
        monkeypatch.delenv(name, raising=False)


class TestConfigDeepCopy:
    """Loaded configs must not share nested dicts."""

    def test_nested_dict_independence(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_a = load_config(config_path)
        config_b = load_config(config_path)

        config_a["s3"]["bucket_name"] = "modified"

        assert config_b["s3"]["bucket_name"] != "modified"

    def test_default_config_unchanged(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        config["google"]["categories"].append("plumbers")

        assert "plumbers" not in DEFAULT_CONFIG["google"]["categories"]

    def test_db_path_default(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config["db_path"] == "businesses.db"

    def test_missing_file_is_created(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        load_config(config_path)
        assert config_path.exists()
        written = yaml.safe_load(config_path.read_text())
        assert written["sync"]["concurrency"] == 10


class TestDefaults:

    def test_sync_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config["sync"]["concurrency"] == 10
        assert config["sync"]["page_size"] == 50
        assert config["sync"]["order"] == "priority"
        assert config["sync"]["prefer_base64"] is True

    def test_google_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config["google"]["max_photos"] == 6
        assert config["google"]["photo_max_width"] == 400
        assert config["google"]["logo_max_width"] == 200
        assert config["google"]["region_suffix"] == " Dubai UAE"

    def test_storage_backend_default(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config["storage"]["backend"] == "s3"


class TestMerge:

    def test_nested_values_merge(self, tmp_path):
        cfg_path = tmp_path / "config.yaml"
        cfg_path.write_text(yaml.dump({"sync": {"concurrency": 4}}))
        config = load_config(cfg_path)
        assert config["sync"]["concurrency"] == 4
        # Untouched siblings keep their defaults
        assert config["sync"]["page_size"] == 50

    def test_lists_are_replaced(self, tmp_path):
        cfg_path = tmp_path / "config.yaml"
        cfg_path.write_text(yaml.dump({"google": {"categories": ["lawyers"]}}))
        config = load_config(cfg_path)
        assert config["google"]["categories"] == ["lawyers"]


class TestEnvOverrides:

    def test_env_wins_over_file(self, tmp_path, monkeypatch):
        cfg_path = tmp_path / "config.yaml"
        cfg_path.write_text(yaml.dump({"google": {"api_key": "from-file"}}))
        monkeypatch.setenv("GOOGLE_PLACES_API_KEY", "from-env")
        config = load_config(cfg_path)
        assert config["google"]["api_key"] == "from-env"

    def test_s3_and_netlify_secrets(self, monkeypatch):
        monkeypatch.setenv("AWS_S3_BUCKET_NAME", "bucket-x")
        monkeypatch.setenv("NETLIFY_SITE_ID", "site-1")
        config = {}
        apply_env_overrides(config)
        assert config["s3"]["bucket_name"] == "bucket-x"
        assert config["netlify"]["site_id"] == "site-1"

    def test_empty_env_is_ignored(self, monkeypatch):
        monkeypatch.setenv("AWS_REGION", "")
        config = {"s3": {"region_name": "eu-west-1"}}
        apply_env_overrides(config)
        assert config["s3"]["region_name"] == "eu-west-1"


class TestValidation:
    """Verify config validation and fallback behavior."""

    def test_invalid_backend_fallback(self):
        config = {"storage": {"backend": "ftp"}}
        _validate_config(config)
        assert config["storage"]["backend"] == "s3"

    @pytest.mark.parametrize("backend", ["local", "s3", "netlify"])
    def test_valid_backends_accepted(self, backend):
        config = {"storage": {"backend": backend}}
        _validate_config(config)
        assert config["storage"]["backend"] == backend

    def test_invalid_order_fallback(self):
        config = {"sync": {"order": "random"}}
        _validate_config(config)
        assert config["sync"]["order"] == "priority"

    def test_negative_int_falls_back(self):
        config = {"sync": {"concurrency": -1, "page_size": 0, "max_errors": -5}}
        _validate_config(config)
        assert config["sync"]["concurrency"] == DEFAULT_CONFIG["sync"]["concurrency"]
        assert config["sync"]["page_size"] == DEFAULT_CONFIG["sync"]["page_size"]
        assert config["sync"]["max_errors"] == DEFAULT_CONFIG["sync"]["max_errors"]

    def test_non_int_falls_back(self):
        config = {"google": {"max_photos": "six"}}
        _validate_config(config)
        assert config["google"]["max_photos"] == DEFAULT_CONFIG["google"]["max_photos"]

    def test_bool_is_not_an_int(self):
        config = {"sync": {"concurrency": True}}
        _validate_config(config)
        assert config["sync"]["concurrency"] == DEFAULT_CONFIG["sync"]["concurrency"]
