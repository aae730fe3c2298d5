"""Tests for the background JobManager."""

import logging
import threading
import time
from datetime import datetime, timedelta

import pytest

from bizdir.job_manager import JOB_RUNNERS, JobConflict, JobManager, JobStatus


def _wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _done(config, job):
    job.tracker.start(1)
    job.tracker.finish("completed")
    return {"ok": True, "params": job.params}


def _boom(config, job):
    raise RuntimeError("places quota exhausted")


def _warn(config, job):
    logging.getLogger("bizdir").warning("Details failed for %s", "p9")
    return {}


class Gate:
    """Runner that blocks until released or cancelled."""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()

    def __call__(self, config, job):
        self.started.set()
        while not self.release.is_set() and not job.cancel_event.is_set():
            time.sleep(0.01)
        return {"cancelled": job.cancel_event.is_set()}


class Stubborn:
    """Runner that only stops when released, ignoring cancel."""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()
        self.active = 0
        self.peak = 0
        self.lock = threading.Lock()

    def __call__(self, config, job):
        with self.lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started.set()
        self.release.wait(5)
        with self.lock:
            self.active -= 1
        return {"photos": 1}


@pytest.fixture
def stubborn():
    s = Stubborn()
    yield s
    s.release.set()


@pytest.fixture
def gate():
    g = Gate()
    yield g
    g.release.set()


@pytest.fixture
def manager(gate, stubborn):
    m = JobManager({}, max_concurrent_jobs=2,
                   runners={"done": _done, "boom": _boom, "warn": _warn,
                            "slow": gate, "slow2": gate, "upload": stubborn})
    yield m
    m.shutdown()


class TestCreate:

    def test_default_runners(self):
        assert set(JOB_RUNNERS) == {"fetch_businesses", "sync_reviews", "upload_local_photos"}

    def test_unknown_kind(self, manager):
        with pytest.raises(ValueError):
            manager.create_job("crawl")

    def test_pending_job(self, manager):
        job_id = manager.create_job("done", {"queries": ["a"]})
        job = manager.get_job(job_id)
        assert job.status == JobStatus.PENDING
        data = job.to_dict()
        assert data["kind"] == "done"
        assert data["params"] == {"queries": ["a"]}
        assert data["progress"]["status"] == "idle"

    def test_same_kind_conflicts_while_active(self, manager):
        manager.create_job("done")
        with pytest.raises(JobConflict):
            manager.create_job("done")
        manager.create_job("boom")


class TestRun:

    def test_completes(self, manager):
        job_id = manager.create_job("done", {"x": 1})
        assert manager.start_job(job_id)
        assert _wait_for(lambda: manager.get_job(job_id).status == JobStatus.COMPLETED)
        job = manager.get_job(job_id)
        assert job.result == {"ok": True, "params": {"x": 1}}
        assert job.completed_at is not None
        # A finished kind can run again
        manager.create_job("done")

    def test_failure(self, manager):
        job_id = manager.create_job("boom")
        manager.start_job(job_id)
        assert _wait_for(lambda: manager.get_job(job_id).status == JobStatus.FAILED)
        job = manager.get_job(job_id)
        assert job.error_message == "places quota exhausted"
        assert job.tracker.status == "failed"

    def test_library_warnings_land_in_job_log(self, manager):
        job_id = manager.create_job("warn")
        manager.start_job(job_id)
        assert _wait_for(lambda: manager.get_job(job_id).status == JobStatus.COMPLETED)
        lines, _ = manager.get_job(job_id).tracker.lines_since(0)
        assert lines == ["WARNING Details failed for p9"]

    def test_start_only_pending(self, manager):
        job_id = manager.create_job("done")
        manager.start_job(job_id)
        assert manager.start_job(job_id) is False
        assert manager.start_job("missing") is False

    def test_capacity(self, manager, gate):
        first = manager.create_job("slow")
        second = manager.create_job("slow2")
        third = manager.create_job("done")
        assert manager.start_job(first)
        assert manager.start_job(second)
        assert manager.start_job(third) is False
        assert manager.get_job(third).status == JobStatus.PENDING


class TestCancel:

    def test_cancel_pending(self, manager):
        job_id = manager.create_job("done")
        assert manager.cancel_job(job_id)
        job = manager.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.tracker.status == "cancelled"
        assert manager.start_job(job_id) is False

    def test_cancel_running_keeps_result(self, manager, gate):
        job_id = manager.create_job("slow")
        manager.start_job(job_id)
        assert gate.started.wait(5)
        assert manager.cancel_job(job_id)
        assert _wait_for(lambda: manager.get_job(job_id).result is not None)
        job = manager.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result == {"cancelled": True}

    def test_cancelled_kind_stays_busy_until_runner_returns(self, manager, stubborn):
        job_id = manager.create_job("upload")
        manager.start_job(job_id)
        assert stubborn.started.wait(5)
        assert manager.cancel_job(job_id)

        assert manager.get_job(job_id).status == JobStatus.CANCELLED
        assert manager.get_job(job_id).completed_at is None
        with pytest.raises(JobConflict):
            manager.create_job("upload")
        assert manager.delete_job(job_id) is False

        stubborn.release.set()
        assert _wait_for(lambda: manager.get_job(job_id).completed_at is not None)
        job = manager.get_job(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result == {"photos": 1}
        second = manager.create_job("upload")
        assert manager.start_job(second)
        assert _wait_for(lambda: manager.get_job(second).status == JobStatus.COMPLETED)
        assert stubborn.peak == 1
        assert manager.delete_job(job_id) is True

    def test_cancel_terminal_or_missing(self, manager):
        job_id = manager.create_job("done")
        manager.start_job(job_id)
        _wait_for(lambda: manager.get_job(job_id).status == JobStatus.COMPLETED)
        assert manager.cancel_job(job_id) is False
        assert manager.cancel_job("missing") is False


class TestHousekeeping:

    def test_list_filters(self, manager):
        a = manager.create_job("done")
        b = manager.create_job("boom")
        manager.cancel_job(b)
        assert {j.job_id for j in manager.list_jobs()} == {a, b}
        assert [j.job_id for j in manager.list_jobs(status=JobStatus.CANCELLED)] == [b]
        assert [j.job_id for j in manager.list_jobs(kind="done")] == [a]
        assert len(manager.list_jobs(limit=1)) == 1

    def test_delete_only_terminal(self, manager):
        pending = manager.create_job("done")
        assert manager.delete_job(pending) is False
        manager.cancel_job(pending)
        assert manager.delete_job(pending) is True
        assert manager.get_job(pending) is None

    def test_stats(self, manager):
        manager.create_job("done")
        stats = manager.get_stats()
        assert stats["total_jobs"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["by_kind"]["done"] == 1
        assert stats["running_jobs"] == 0
        assert stats["max_concurrent_jobs"] == 2

    def test_cleanup_old_jobs(self, manager):
        old = manager.create_job("done")
        manager.cancel_job(old)
        manager.get_job(old).completed_at = datetime.now() - timedelta(hours=30)
        recent = manager.create_job("boom")
        manager.cancel_job(recent)

        assert manager.cleanup_old_jobs(max_age_hours=24) == 1
        assert manager.get_job(old) is None
        assert manager.get_job(recent) is not None
