"""Tests for the storage key layout, the local backend, Netlify and the factory."""

import re
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import requests

from bizdir.local_storage import LocalStorage
from bizdir.netlify_handler import NetlifyHandler, business_id_from_filename
from bizdir.storage import (
    StorageError,
    StorageNotConfigured,
    build_image_key,
    business_id_from_key,
    create_storage,
    sanitize_business_id,
)


class TestKeys:

    def test_key_layout(self):
        now = datetime(2024, 1, 2, tzinfo=timezone.utc)
        key = build_image_key("ChIJ-abc_1", "photo", "PNG", now=now)
        stamp = int(now.timestamp() * 1000)
        assert re.fullmatch(rf"businesses/ChIJ-abc_1/photos/{stamp}-[0-9a-f]{{8}}\.png", key)

    def test_keys_are_unique(self):
        assert build_image_key("p1", "logo") != build_image_key("p1", "logo")

    def test_unknown_extension_becomes_jpg(self):
        assert build_image_key("p1", "logo", "exe").endswith(".jpg")

    def test_sanitize(self):
        assert sanitize_business_id("a/b c") == "a_b_c"
        assert sanitize_business_id("") == "unknown"

    def test_business_id_from_key(self):
        assert business_id_from_key("businesses/p1/logos/x.jpg") == "p1"
        assert business_id_from_key("other/x.jpg") is None


class TestLocalStorage:

    @pytest.fixture
    def storage(self, tmp_path):
        return LocalStorage({"storage": {"local_dir": str(tmp_path / "up"),
                                         "local_base_url": "http://localhost:8000/uploads/"}})

    def test_upload_exists_delete(self, storage, tmp_path):
        obj = storage.upload("businesses/p1/logos/a.jpg", b"abc")
        assert obj.url == "http://localhost:8000/uploads/businesses/p1/logos/a.jpg"
        assert (tmp_path / "up" / "businesses" / "p1" / "logos" / "a.jpg").read_bytes() == b"abc"
        assert storage.exists("businesses/p1/logos/a.jpg")
        assert storage.delete("businesses/p1/logos/a.jpg") is True
        assert storage.delete("businesses/p1/logos/a.jpg") is False

    def test_rejects_escaping_keys(self, storage):
        with pytest.raises(StorageError):
            storage.upload("../outside.jpg", b"x")
        with pytest.raises(StorageError):
            storage.upload("/abs.jpg", b"x")

    def test_list_and_stats(self, storage):
        storage.upload("businesses/p1/logos/a.jpg", b"1")
        storage.upload("businesses/p1/photos/b.png", b"22")
        storage.upload("businesses/p2/photos/c.jpg", b"333")
        storage.upload("misc/readme.txt", b"ignored")

        listed = list(storage.list("businesses/p1/"))
        assert [o.key for o in listed] == ["businesses/p1/logos/a.jpg",
                                           "businesses/p1/photos/b.png"]
        assert listed[1].content_type == "image/png"

        assert storage.stats() == {
            "backend": "local",
            "total_objects": 3,
            "total_size": 6,
            "business_count": 2,
        }


class TestNetlify:

    CONFIG = {"netlify": {"site_id": "my-site", "access_token": "tok", "folder": "/pics/"}}

    def test_requires_credentials(self):
        with pytest.raises(StorageNotConfigured):
            NetlifyHandler({"netlify": {"site_id": "x"}})

    def test_public_url(self):
        h = NetlifyHandler(self.CONFIG, session=MagicMock())
        assert h.public_url("businesses/p1/logos/a.jpg") == \
            "https://my-site.netlify.app/pics/businesses/p1/logos/a.jpg"

    def test_upload(self):
        session = MagicMock()
        h = NetlifyHandler(self.CONFIG, session=session)
        obj = h.upload("businesses/p1/logos/a.jpg", b"img")
        url = session.put.call_args[0][0]
        kwargs = session.put.call_args[1]
        assert url == "https://api.netlify.com/api/v1/sites/my-site/files/pics/businesses/p1/logos/a.jpg"
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["data"] == b"img"
        assert obj.size == 3

    def test_upload_error(self):
        session = MagicMock()
        session.put.return_value.raise_for_status.side_effect = requests.HTTPError("401")
        h = NetlifyHandler(self.CONFIG, session=session)
        with pytest.raises(StorageError):
            h.upload("a.jpg", b"img")

    def test_exists(self):
        session = MagicMock()
        session.head.return_value.status_code = 404
        h = NetlifyHandler(self.CONFIG, session=session)
        assert h.exists("a.jpg") is False

    def test_delete_unsupported(self):
        assert NetlifyHandler(self.CONFIG, session=MagicMock()).delete("a.jpg") is False

    def test_list_filters_folder(self):
        session = MagicMock()
        session.get.return_value.json.return_value = [
            {"path": "/pics/businesses/p1/logos/a.jpg", "size": 4, "mime_type": "image/jpeg"},
            {"path": "/index.html", "size": 100},
        ]
        h = NetlifyHandler(self.CONFIG, session=session)
        listed = list(h.list())
        assert [o.key for o in listed] == ["businesses/p1/logos/a.jpg"]
        assert h.stats()["business_count"] == 1

    def test_business_id_from_filename(self):
        assert business_id_from_filename("ChIJabc_1.jpg") == "ChIJabc"
        assert business_id_from_filename("dir/ChIJabc_logo.png") == "ChIJabc"
        assert business_id_from_filename("nounderscore.jpg") is None


class TestCreateStorage:

    def test_local(self, tmp_path):
        storage = create_storage({"storage": {"backend": "local", "local_dir": str(tmp_path)}})
        assert storage.name == "local"

    def test_override_backend(self, tmp_path):
        storage = create_storage({"storage": {"backend": "s3", "local_dir": str(tmp_path)}},
                                 backend="local")
        assert isinstance(storage, LocalStorage)

    def test_s3_not_configured(self):
        with pytest.raises(StorageNotConfigured):
            create_storage({"storage": {"backend": "s3"}, "s3": {"bucket_name": ""}})

    def test_s3_configured(self):
        with patch("bizdir.s3_handler.boto3") as mock_boto3:
            mock_boto3.client.return_value = MagicMock()
            storage = create_storage({"storage": {"backend": "s3"},
                                      "s3": {"bucket_name": "b"}})
        assert storage.name == "s3"

    def test_netlify_not_configured(self):
        with pytest.raises(StorageNotConfigured):
            create_storage({"storage": {"backend": "netlify"}})

    def test_unknown_backend(self):
        with pytest.raises(StorageNotConfigured):
            create_storage({"storage": {"backend": "ftp"}})
