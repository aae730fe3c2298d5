"""
Background job manager for the directory admin API.

Runs business fetches, review syncs and local photo uploads on a thread
pool. Each job carries its own ProgressTracker and cancel event; at most one
job of a given kind runs at a time.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, Optional, List, Callable

from bizdir.fetcher import BusinessFetcher
from bizdir.image_sync import upload_local_photos
from bizdir.log_manager import capture_to_tracker
from bizdir.progress import ProgressTracker
from bizdir.storage import create_storage

log = logging.getLogger("bizdir")


class JobStatus(str, Enum):
    """Job status enumeration"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)
_ACTIVE = (JobStatus.PENDING, JobStatus.RUNNING)


class JobConflict(Exception):
    """A job of the same kind is already pending or running."""


@dataclass
class Job:
    job_id: str
    kind: str
    status: JobStatus
    params: Dict[str, Any]
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization"""
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status.value if isinstance(self.status, JobStatus) else self.status,
            "params": self.params,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error_message": self.error_message,
            "result": self.result,
            "progress": self.tracker.snapshot(),
        }


def _run_fetch(config: Dict[str, Any], job: Job) -> Dict[str, Any]:
    params = job.params
    fetcher = BusinessFetcher(config, config.get("db_path", "businesses.db"),
                              tracker=job.tracker)
    result = fetcher.fetch(
        queries=params.get("queries"),
        max_per_query=params.get("max_per_query", 20),
        fetch_details=params.get("fetch_details", True),
        update_existing=params.get("update_existing", False),
        download_logo=params.get("download_logo", False),
        max_pages=params.get("max_pages", 1),
        cancel_event=job.cancel_event,
    )
    return result.to_dict()


def _run_reviews(config: Dict[str, Any], job: Job) -> Dict[str, Any]:
    fetcher = BusinessFetcher(config, config.get("db_path", "businesses.db"),
                              tracker=job.tracker)
    return fetcher.sync_reviews(job.params.get("business_ids"),
                                cancel_event=job.cancel_event)


def _run_upload_local(config: Dict[str, Any], job: Job) -> Dict[str, Any]:
    storage = create_storage(config, job.params.get("backend"))
    return upload_local_photos(job.params["directory"], storage,
                               config.get("db_path", "businesses.db"),
                               tracker=job.tracker, cancel_event=job.cancel_event)


JOB_RUNNERS: Dict[str, Callable[[Dict[str, Any], Job], Dict[str, Any]]] = {
    "fetch_businesses": _run_fetch,
    "sync_reviews": _run_reviews,
    "upload_local_photos": _run_upload_local,
}


class JobManager:
    """Manager for background directory jobs"""

    def __init__(self, config: Dict[str, Any], max_concurrent_jobs: int = 3,
                 runners: Dict[str, Callable] = None):
        self.config = config
        self.max_concurrent_jobs = max_concurrent_jobs
        self.runners = dict(runners or JOB_RUNNERS)
        self.jobs: Dict[str, Job] = {}
        self.executor = ThreadPoolExecutor(max_workers=max_concurrent_jobs,
                                           thread_name_prefix="job")
        self.lock = threading.Lock()
        # Jobs whose runner thread has not returned yet, cancelled ones included.
        self._live: set = set()

    def create_job(self, kind: str, params: Dict[str, Any] = None) -> str:
        """
        Create a pending job.

        Raises:
            ValueError: unknown job kind
            JobConflict: a job of this kind is already pending or running
        """
        if kind not in self.runners:
            raise ValueError(f"Unknown job kind: {kind}")

        job = Job(
            job_id=str(uuid.uuid4()),
            kind=kind,
            status=JobStatus.PENDING,
            params=dict(params or {}),
            created_at=datetime.now(),
            tracker=ProgressTracker(
                max_errors=self.config.get("sync", {}).get("max_errors", 100)
            ),
        )
        with self.lock:
            active = [j for j in self.jobs.values()
                      if j.kind == kind and (j.status in _ACTIVE or j.job_id in self._live)]
            if active:
                raise JobConflict(f"A {kind} job is already active ({active[0].job_id})")
            self.jobs[job.job_id] = job

        log.info("Created %s job %s", kind, job.job_id)
        return job.job_id

    def start_job(self, job_id: str) -> bool:
        """Submit a pending job to the pool. False if unknown, not pending, or at capacity."""
        with self.lock:
            job = self.jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return False

            if len(self._live) >= self.max_concurrent_jobs:
                return False

            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            self._live.add(job_id)

        self.executor.submit(self._run_job, job_id)
        log.info("Started %s job %s", job.kind, job_id)
        return True

    def _run_job(self, job_id: str) -> None:
        with self.lock:
            job = self.jobs[job_id]
        runner = self.runners[job.kind]

        result, error = None, None
        try:
            with capture_to_tracker(job.tracker):
                result = runner(self.config, job)
        except Exception as e:
            log.error("Error in %s job %s: %s", job.kind, job_id, e)
            error = str(e)
            if not job.tracker.is_terminal:
                job.tracker.finish("failed", error)
        finally:
            # The kind stays occupied until this point, cancelled or not.
            with self.lock:
                if error is None:
                    job.result = result
                # A cancel while running keeps CANCELLED; the partial result is still kept.
                if job.status != JobStatus.CANCELLED:
                    job.status = JobStatus.COMPLETED if error is None else JobStatus.FAILED
                    job.error_message = error
                job.completed_at = datetime.now()
                self._live.discard(job_id)
        if error is None:
            log.info("Finished %s job %s", job.kind, job_id)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.lock:
            return self.jobs.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None, kind: Optional[str] = None,
                  limit: int = 100) -> List[Job]:
        """Jobs newest first, optionally filtered by status and kind."""
        with self.lock:
            jobs = list(self.jobs.values())

        if status:
            jobs = [job for job in jobs if job.status == status]
        if kind:
            jobs = [job for job in jobs if job.kind == kind]
        jobs.sort(key=lambda x: x.created_at, reverse=True)
        return jobs[:limit]

    def cancel_job(self, job_id: str) -> bool:
        """
        Cancel a pending or running job.

        Sets the cancel event; a running job stops after its current item.
        """
        with self.lock:
            job = self.jobs.get(job_id)
            if job is None or job.status in _TERMINAL:
                return False

            was_pending = job.status == JobStatus.PENDING
            job.status = JobStatus.CANCELLED
            if was_pending:
                job.completed_at = datetime.now()
            job.cancel_event.set()

        if was_pending:
            job.tracker.finish("cancelled", "Cancelled before start")
        log.info("Cancelled %s job %s", job.kind, job_id)
        return True

    def delete_job(self, job_id: str) -> bool:
        """Delete a terminal job whose runner has returned; others are kept."""
        with self.lock:
            job = self.jobs.get(job_id)
            if not job or job.status not in _TERMINAL or job_id in self._live:
                return False
            del self.jobs[job_id]

        log.info("Deleted job %s", job_id)
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            jobs = list(self.jobs.values())

        stats = {
            "total_jobs": len(jobs),
            "by_status": {s.value: sum(1 for j in jobs if j.status == s) for s in JobStatus},
            "by_kind": {k: sum(1 for j in jobs if j.kind == k) for k in self.runners},
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }
        stats["running_jobs"] = stats["by_status"][JobStatus.RUNNING.value]
        return stats

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """Drop terminal jobs that finished more than ``max_age_hours`` ago."""
        cutoff_time = datetime.now().timestamp() - (max_age_hours * 3600)

        with self.lock:
            to_delete = [
                job_id for job_id, job in self.jobs.items()
                if job.status in _TERMINAL and job_id not in self._live
                and job.completed_at and job.completed_at.timestamp() < cutoff_time
            ]
            for job_id in to_delete:
                del self.jobs[job_id]

        if to_delete:
            log.info("Cleaned up %d old jobs", len(to_delete))
        return len(to_delete)

    def shutdown(self) -> None:
        """Cancel active jobs and wait for the pool to drain."""
        log.info("Shutting down job manager")
        with self.lock:
            for job in self.jobs.values():
                if job.status in _ACTIVE:
                    job.cancel_event.set()
        self.executor.shutdown(wait=True)
