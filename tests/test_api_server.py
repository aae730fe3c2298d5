"""Tests for the FastAPI admin server."""

import asyncio
import base64
import json
import time

import pytest
from fastapi.testclient import TestClient

import api_server
from bizdir.business_db import BusinessDB
from bizdir.places_client import api_usage
from bizdir.progress import ProgressTracker

JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 16
JPEG_URI = "data:image/jpeg;base64," + base64.b64encode(JPEG).decode()


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "api.db")
    db = BusinessDB(path)
    db.upsert_business({
        "id": "p1", "name": "Alpha Visa Services", "category": "visa services",
        "address": "1 Main St, Dubai", "rating": 4.5, "has_target_keyword": True,
        "logo_base64": JPEG_URI,
    })
    db.upsert_business({
        "id": "p2", "name": "Beta Immigration", "category": "immigration consultants",
        "address": "2 Side St, Sharjah", "rating": 4.0,
    })
    db.upsert_business({
        "id": "p3", "name": "Gamma Documents", "category": "visa services",
        "address": "3 Harbour Rd, Dubai",
    })
    db.replace_reviews("p1", [
        {"id": "google_p1_0", "author_name": "Sam", "rating": 5, "text": "Great"},
    ])
    db.close()
    return path


@pytest.fixture
def client(tmp_path, db_path, monkeypatch):
    monkeypatch.setitem(api_server._config, "db_path", db_path)
    monkeypatch.setitem(api_server._config, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setitem(api_server._config, "storage", {
        "backend": "local",
        "local_dir": str(tmp_path / "uploads"),
        "local_base_url": "/uploads",
    })
    monkeypatch.setitem(api_server._config, "netlify", {})
    monkeypatch.setitem(api_server._config, "google",
                        {**api_server._config["google"], "api_key": ""})
    with TestClient(api_server.app) as c:
        yield c


@pytest.fixture
def places_usage():
    yield api_usage
    api_usage.reset()
    api_usage.enable()


def _wait_for_job(client, job_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/jobs/{job_id}").json()
        if job["status"] in ("completed", "failed", "cancelled"):
            return job
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


class TestSystem:

    def test_health(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["version"] == api_server.VERSION

    def test_stats(self, client):
        body = client.get("/stats").json()
        assert body["database"]["total_businesses"] == 3
        assert body["database"]["reviews_count"] == 1
        assert body["jobs"]["total_jobs"] == 0
        assert body["sync"] == {"is_running": False, "status": "idle"}
        assert "enabled" in body["google"]

    def test_cleanup(self, client):
        resp = client.post("/cleanup", params={"max_age_hours": 1})
        assert resp.status_code == 200
        assert resp.json()["removed"] == 0


class TestBusinesses:

    def test_list(self, client):
        body = client.get("/businesses").json()
        assert body["total"] == 3
        assert body["limit"] == 50
        assert {b["id"] for b in body["items"]} == {"p1", "p2", "p3"}
        assert body["items"][0]["id"] == "p1"

    def test_list_filters_and_paging(self, client):
        body = client.get("/businesses", params={"city": "Dubai"}).json()
        assert body["total"] == 2
        body = client.get("/businesses", params={"category": "visa services",
                                                  "limit": 1, "offset": 1}).json()
        assert body["total"] == 2
        assert len(body["items"]) == 1

    def test_list_rejects_bad_limit(self, client):
        assert client.get("/businesses", params={"limit": 0}).status_code == 422

    def test_blobs_hidden_by_default(self, client):
        body = client.get("/businesses/p1").json()
        assert body["has_logo_base64"] is True
        assert body["logo_base64"] is None
        body = client.get("/businesses/p1", params={"include_blobs": True}).json()
        assert body["logo_base64"] == JPEG_URI

    def test_get_missing(self, client):
        assert client.get("/businesses/nope").status_code == 404

    def test_patch(self, client):
        resp = client.patch("/businesses/p2", json={"phone": "+971 4 000 0000", "rating": 3.5})
        assert resp.status_code == 200
        body = resp.json()
        assert body["phone"] == "+971 4 000 0000"
        assert body["rating"] == 3.5
        assert body["name"] == "Beta Immigration"

    def test_patch_validation(self, client):
        assert client.patch("/businesses/p2", json={"rating": 7}).status_code == 422

    def test_patch_null_name_is_rejected(self, client):
        resp = client.patch("/businesses/p1", json={"name": None})
        assert resp.status_code == 400
        assert "name" in resp.json()["detail"]
        assert client.get("/businesses/p1").json()["name"]

    def test_patch_missing(self, client):
        assert client.patch("/businesses/nope", json={"phone": "1"}).status_code == 404

    def test_delete(self, client):
        assert client.delete("/businesses/p1").status_code == 200
        assert client.get("/businesses/p1").status_code == 404
        assert client.delete("/businesses/p1").status_code == 404

    def test_reviews(self, client):
        reviews = client.get("/businesses/p1/reviews").json()
        assert [r["id"] for r in reviews] == ["google_p1_0"]
        assert reviews[0]["author_name"] == "Sam"
        assert client.get("/businesses/p2/reviews").json() == []
        assert client.get("/businesses/nope/reviews").status_code == 404


class TestCategories:

    def test_list(self, client):
        cats = client.get("/categories").json()
        assert cats[0] == {"name": "visa services", "count": 2}
        assert {"name": "immigration consultants", "count": 1} in cats

    def test_rename(self, client):
        resp = client.put("/categories/visa services", json={"new_name": "visa agents"})
        assert resp.status_code == 200
        assert resp.json()["updated"] == 2
        names = {c["name"] for c in client.get("/categories").json()}
        assert "visa agents" in names
        assert "visa services" not in names

    def test_rename_unknown_and_blank(self, client):
        assert client.put("/categories/unknown", json={"new_name": "x"}).status_code == 404
        assert client.put("/categories/visa services",
                          json={"new_name": "   "}).status_code == 400
        assert client.put("/categories/visa services",
                          json={"new_name": ""}).status_code == 422

    def test_delete_keeps_businesses(self, client):
        resp = client.delete("/categories/visa services")
        assert resp.json()["affected"] == 2
        assert client.get("/businesses").json()["total"] == 3
        assert client.get("/businesses/p1").json()["category"] is None

    def test_delete_with_businesses(self, client):
        resp = client.delete("/categories/visa services",
                             params={"delete_businesses": True})
        assert resp.json()["businesses_deleted"] is True
        assert client.get("/businesses").json()["total"] == 1

    def test_delete_unknown(self, client):
        assert client.delete("/categories/unknown").status_code == 404


class TestGoogleToggles:

    def test_disable_enable_reset(self, client, places_usage):
        assert client.post("/google/disable").json()["enabled"] is False
        assert client.get("/google/status").json()["enabled"] is False
        assert client.post("/google/enable").json()["enabled"] is True
        assert client.post("/google/reset").status_code == 200

    def test_search_without_key_is_502(self, client):
        resp = client.get("/google/search", params={"query": "visa services"})
        assert resp.status_code == 502

    def test_search_while_disabled_is_503(self, client, places_usage, monkeypatch):
        monkeypatch.setitem(api_server._config["google"], "api_key", "test-key")
        client.post("/google/disable")
        resp = client.get("/google/search", params={"query": "visa services"})
        assert resp.status_code == 503

    def test_search_requires_query(self, client):
        assert client.get("/google/search").status_code == 422


class TestJobs:

    def test_review_job_runs(self, client):
        resp = client.post("/jobs/reviews", json={"business_ids": ["ghost"]})
        assert resp.status_code == 200
        created = resp.json()
        assert created["status"] == "started"

        job = _wait_for_job(client, created["job_id"])
        assert job["status"] == "completed"
        assert job["kind"] == "sync_reviews"
        assert job["result"] == {"businesses": 0, "reviews": 0, "failed": 1}
        assert job["progress"]["failed"] == 1

        listed = client.get("/jobs", params={"kind": "sync_reviews"}).json()
        assert [j["job_id"] for j in listed] == [created["job_id"]]

        log_resp = client.get(f"/jobs/{created['job_id']}/log", params={"follow": False})
        assert log_resp.status_code == 200
        assert log_resp.headers["content-type"].startswith("text/plain")

        assert client.delete(f"/jobs/{created['job_id']}").status_code == 200
        assert client.get(f"/jobs/{created['job_id']}").status_code == 404

    def test_conflict_cancel_and_delete(self, client):
        job_id = api_server.job_manager.create_job("sync_reviews", {})

        assert client.post("/jobs/reviews", json={}).status_code == 409
        assert client.delete(f"/jobs/{job_id}").status_code == 400

        assert client.post(f"/jobs/{job_id}/cancel").status_code == 200
        assert client.get(f"/jobs/{job_id}").json()["status"] == "cancelled"
        assert client.post(f"/jobs/{job_id}/cancel").status_code == 400
        assert client.delete(f"/jobs/{job_id}").status_code == 200

    def test_unknown_job(self, client):
        assert client.get("/jobs/missing").status_code == 404
        assert client.get("/jobs/missing/log").status_code == 404
        assert client.post("/jobs/missing/cancel").status_code == 404
        assert client.delete("/jobs/missing").status_code == 404

    def test_fetch_request_validation(self, client):
        assert client.post("/jobs/fetch", json={"max_per_query": 0}).status_code == 422
        assert client.post("/jobs/fetch", json={"max_pages": 4}).status_code == 422

    def test_upload_local_missing_directory(self, client, tmp_path):
        resp = client.post("/jobs/upload-local",
                           json={"directory": str(tmp_path / "missing")})
        assert resp.status_code == 400

    def test_upload_local_unconfigured_backend(self, client, tmp_path):
        resp = client.post("/jobs/upload-local",
                           json={"directory": str(tmp_path), "backend": "netlify"})
        assert resp.status_code == 400
        assert client.get("/jobs").json() == []


class TestImageSync:

    def test_idle_state(self, client):
        status = client.get("/sync/status").json()
        assert status["status"] == "idle"
        assert status["is_running"] is False
        assert client.get("/sync/report").status_code == 404
        assert client.post("/sync/stop").status_code == 400

    def test_unconfigured_backend(self, client):
        assert client.post("/sync/start", json={"backend": "netlify"}).status_code == 400

    def test_invalid_order(self, client):
        assert client.post("/sync/start", json={"order": "random"}).status_code == 422

    def test_event_stream_sends_heartbeat_while_idle(self):
        tracker = ProgressTracker()
        tracker.start(3, "Uploading")

        class _Connected:
            async def is_disconnected(self):
                return False

        async def _collect():
            stream = api_server.sse_events(tracker, _Connected(), heartbeat=0)
            first = await stream.__anext__()
            second = await stream.__anext__()
            tracker.finish("completed")
            rest = [chunk async for chunk in stream]
            return first, second, rest

        first, second, rest = asyncio.run(_collect())
        assert json.loads(first[len("data: "):])["status"] == "running"
        assert second == ": heartbeat\n\n"
        assert len(rest) == 1
        assert json.loads(rest[0][len("data: "):])["status"] == "completed"

    def test_sync_run_and_events(self, client):
        resp = client.post("/sync/start", json={"concurrency": 2})
        assert resp.status_code == 200
        assert resp.json()["status"]["backend"] == "local"

        report = api_server.sync_service.wait(timeout=10)
        assert report.status == "completed"
        assert report.succeeded == 1

        body = client.get("/sync/report", params={"include_results": True}).json()
        assert body["succeeded"] == 1
        assert body["results"][0]["business_id"] == "p1"
        assert "results" not in client.get("/sync/report").json()

        logo_url = client.get("/businesses/p1").json()["logo_s3_url"]
        assert logo_url.startswith("/uploads/businesses/p1/logos/")
        served = client.get(logo_url)
        assert served.status_code == 200
        assert served.content == JPEG

        with client.stream("GET", "/sync/events") as stream:
            assert stream.headers["content-type"].startswith("text/event-stream")
            events = [json.loads(line[len("data: "):])
                      for line in stream.iter_lines() if line.startswith("data: ")]
        assert len(events) == 1
        assert events[0]["type"] == "progress"
        assert events[0]["status"] == "completed"

        stats = client.get("/storage/stats").json()
        assert stats["backend"] == "local"
        assert stats["total_objects"] == 1


class TestAuth:

    def test_open_access_without_keys(self, client):
        assert client.get("/businesses").status_code == 200

    def test_keys_enforced(self, client):
        key_db = api_server.app.state.api_key_db
        _, admin_key = key_db.create_key("admin")
        _, read_key = key_db.create_key("viewer", scope="read")

        assert client.get("/businesses").status_code == 401
        assert client.get("/businesses",
                          headers={"X-API-Key": "bdk_wrong"}).status_code == 401
        assert client.get("/businesses",
                          headers={"X-API-Key": read_key}).status_code == 200
        assert client.delete("/businesses/p3",
                             headers={"X-API-Key": read_key}).status_code == 403
        assert client.delete("/businesses/p3",
                             headers={"X-API-Key": admin_key}).status_code == 200
        # Health check stays public.
        assert client.get("/").status_code == 200

    def test_audit_log(self, client):
        key_db = api_server.app.state.api_key_db
        key_id, admin_key = key_db.create_key("admin")
        headers = {"X-API-Key": admin_key}

        client.get("/businesses", headers=headers)
        client.get("/businesses/nope", headers=headers)

        entries = client.get("/audit-log", headers=headers,
                             params={"endpoint": "/businesses"}).json()
        assert [(e["endpoint"], e["status_code"]) for e in entries[:2]] == [
            ("/businesses/nope", 404),
            ("/businesses", 200),
        ]
        assert entries[0]["key_id"] == key_id
        assert entries[0]["key_name"] == "admin"

        by_key = client.get("/audit-log", headers=headers, params={"key_id": key_id}).json()
        assert all(e["key_id"] == key_id for e in by_key)
