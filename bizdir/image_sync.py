"""
Bulk image sync: copy business logos and photos into a storage backend.

The engine walks every business in pages, turns each image that has no
stored copy yet into an ``UploadTask``, and runs the tasks on a bounded
thread pool. Each task fetches bytes (base64 blob or URL), uploads them and
writes the public URL back to the business row. A failing task is recorded
and the run carries on; there are no retries at this level and no
checkpoint, so an interrupted run simply rescans on the next start.

Thread safety: worker threads each open their own BusinessDB.
"""

import copy
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Set

from bizdir.business_db import BusinessDB
from bizdir.image_fetcher import ImageFetcher, is_valid_image_url, sniff_content_type
from bizdir.netlify_handler import business_id_from_filename
from bizdir.progress import ProgressTracker
from bizdir.storage import StorageBackend, build_image_key, create_storage, sanitize_business_id

log = logging.getLogger("bizdir")

LOGO_PRIORITY = 1
PHOTO_PRIORITY = 2

_LOCAL_IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".gif"}


class SyncAlreadyRunning(Exception):
    """A sync run is already in progress."""


@dataclass
class UploadTask:
    task_id: str
    business_id: str
    business_name: str
    image_type: str  # "logo" or "photo"
    source: str
    source_kind: str  # "url" or "base64"
    photo_index: Optional[int] = None
    caption: Optional[str] = None

    @property
    def priority(self) -> int:
        return LOGO_PRIORITY if self.image_type == "logo" else PHOTO_PRIORITY


@dataclass
class TaskResult:
    task_id: str
    business_id: str
    image_type: str
    success: bool
    url: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0
    source_kind: Optional[str] = None


@dataclass
class SyncReport:
    status: str
    total_tasks: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    results: List[TaskResult] = field(default_factory=list)

    def to_dict(self, include_results: bool = False) -> Dict[str, Any]:
        data = asdict(self)
        if not include_results:
            data.pop("results")
        return data


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ImageSyncEngine:
    """Runs one image sync pass against one storage backend."""

    def __init__(self, config: Dict[str, Any], storage: StorageBackend,
                 db_path: str, tracker: ProgressTracker = None,
                 fetcher: ImageFetcher = None):
        sync_cfg = config.get("sync", {})
        self.concurrency = max(1, int(sync_cfg.get("concurrency", 10)))
        self.page_size = max(1, int(sync_cfg.get("page_size", 50)))
        self.order = sync_cfg.get("order", "priority")
        self.prefer_base64 = sync_cfg.get("prefer_base64", True)

        self.storage = storage
        self.db_path = db_path
        self.tracker = tracker or ProgressTracker(max_errors=sync_cfg.get("max_errors", 100))
        self.fetcher = fetcher or ImageFetcher(config)

        self._local = threading.local()
        self._dbs: List[BusinessDB] = []
        self._dbs_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Task discovery
    # ------------------------------------------------------------------

    def _pick_source(self, url: Optional[str], blob: Optional[str]):
        """(source, kind) for an image, or (None, skip_reason)."""
        if blob and self.prefer_base64:
            return blob, "base64"
        if url and is_valid_image_url(url):
            return url, "url"
        if blob:
            return blob, "base64"
        return None, "invalid_url" if url else "no_source"

    def tasks_for_business(self, business: Dict[str, Any]) -> Iterator[UploadTask]:
        """Upload tasks for one business row; already-stored images count as skipped."""
        business_id = business["id"]
        name = business.get("name") or business_id

        if business.get("logo_url") or business.get("logo_base64"):
            if business.get("logo_s3_url"):
                self.tracker.record_skip("already_uploaded")
            else:
                source, kind = self._pick_source(business.get("logo_url"),
                                                 business.get("logo_base64"))
                if source is None:
                    self.tracker.record_skip(kind)
                else:
                    yield UploadTask(
                        task_id=f"{business_id}:logo",
                        business_id=business_id,
                        business_name=name,
                        image_type="logo",
                        source=source,
                        source_kind=kind,
                    )

        for index, photo in enumerate(business.get("photos") or []):
            if not isinstance(photo, dict):
                self.tracker.record_skip("malformed")
                continue
            if photo.get("s3_url"):
                self.tracker.record_skip("already_uploaded")
                continue
            source, kind = self._pick_source(photo.get("url"), photo.get("base64"))
            if source is None:
                self.tracker.record_skip(kind)
                continue
            yield UploadTask(
                task_id=f"{business_id}:photo:{index}",
                business_id=business_id,
                business_name=name,
                image_type="photo",
                source=source,
                source_kind=kind,
                photo_index=index,
                caption=photo.get("caption"),
            )

    def iter_tasks(self, db: BusinessDB) -> Iterator[UploadTask]:
        """Stream tasks page by page."""
        for page_number, page in enumerate(db.iter_business_pages(self.page_size), start=1):
            self.tracker.update(page=page_number)
            for business in page:
                yield from self.tasks_for_business(business)

    def build_tasks(self, db: BusinessDB) -> List[UploadTask]:
        """Every pending task, logos first (stable within each priority)."""
        tasks = list(self.iter_tasks(db))
        tasks.sort(key=lambda t: t.priority)
        return tasks

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, cancel_event: threading.Event = None) -> SyncReport:
        """Run a full pass. Never raises for per-image failures."""
        cancel_event = cancel_event or threading.Event()
        report = SyncReport(status="running", started_at=_iso_now())
        self.tracker.start(0, f"Scanning businesses ({self.storage.name})")
        log.info("Image sync started (backend=%s, concurrency=%d, order=%s)",
                 self.storage.name, self.concurrency, self.order)

        db = BusinessDB(self.db_path)
        try:
            if self.order == "priority":
                tasks = self.build_tasks(db)
                self.tracker.update(total=len(tasks),
                                    message=f"Uploading {len(tasks)} images")
                task_iter: Iterable[UploadTask] = tasks
            else:
                self.tracker.update(message="Uploading images page by page")
                task_iter = self._counted(self.iter_tasks(db))

            stopped = self._execute(task_iter, cancel_event, report.results)
            report.status = "cancelled" if stopped else "completed"
        except Exception as e:
            log.exception("Image sync aborted")
            report.status = "failed"
            report.error = str(e)
        finally:
            db.close()
            self._close_thread_dbs()

        snap = self.tracker.snapshot()
        report.total_tasks = snap["total"]
        report.succeeded = snap["succeeded"]
        report.failed = snap["failed"]
        report.skipped = snap["skipped"]
        report.finished_at = _iso_now()

        summary = (f"{report.succeeded} uploaded, {report.failed} failed, "
                   f"{report.skipped} skipped")
        self.tracker.finish(report.status, report.error or summary)
        log.info("Image sync %s: %s", report.status, summary)
        return report

    def _counted(self, tasks: Iterator[UploadTask]) -> Iterator[UploadTask]:
        for task in tasks:
            self.tracker.add_total(1)
            yield task

    def _execute(self, tasks: Iterable[UploadTask], cancel_event: threading.Event,
                 results: List[TaskResult]) -> bool:
        """
        Keep at most ``concurrency`` tasks in flight until done or cancelled.

        Returns True when a cancel left tasks undispatched.
        """
        stopped = False
        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix="image-sync") as pool:
            pending: Set[Future] = set()
            for task in tasks:
                if len(pending) >= self.concurrency:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    results.extend(f.result() for f in done)
                if cancel_event.is_set():
                    log.info("Image sync cancellation requested; draining in-flight uploads")
                    stopped = True
                    break
                pending.add(pool.submit(self._run_task, task))

            done, _ = wait(pending)
            results.extend(f.result() for f in done)
        return stopped

    def _run_task(self, task: UploadTask) -> TaskResult:
        started = time.monotonic()
        self.tracker.item_started(f"{task.business_name} ({task.image_type})")
        try:
            image = self.fetcher.fetch(task.source)
            key = build_image_key(task.business_id, task.image_type, image.extension)
            stored = self.storage.upload(key, image.data, image.content_type, metadata={
                "business-id": task.business_id,
                "image-type": task.image_type,
                "business-name": task.business_name,
                "caption": task.caption,
                "uploaded-at": _iso_now(),
            })

            db = self._thread_db()
            if task.image_type == "logo":
                written = db.set_logo_storage_url(task.business_id, stored.url)
            else:
                written = db.set_photo_storage_url(task.business_id, task.photo_index, stored.url)
            if not written:
                raise LookupError("business or photo no longer exists; upload not recorded")

        except Exception as e:
            log.warning("Upload failed for %s: %s", task.task_id, e)
            self.tracker.record_error(task.task_id, str(e))
            return TaskResult(task.task_id, task.business_id, task.image_type, False,
                              error=str(e), duration=round(time.monotonic() - started, 3),
                              source_kind=task.source_kind)

        self.tracker.record_success(task.image_type, image.source)
        return TaskResult(task.task_id, task.business_id, task.image_type, True,
                          url=stored.url, duration=round(time.monotonic() - started, 3),
                          source_kind=image.source)

    def _thread_db(self) -> BusinessDB:
        db = getattr(self._local, "db", None)
        if db is None:
            db = BusinessDB(self.db_path)
            self._local.db = db
            with self._dbs_lock:
                self._dbs.append(db)
        return db

    def _close_thread_dbs(self) -> None:
        with self._dbs_lock:
            dbs, self._dbs = self._dbs, []
        for db in dbs:
            db.close()
        self._local = threading.local()


class ImageSyncService:
    """
    Owns at most one background sync run at a time.

    ``start()`` refuses a second run with SyncAlreadyRunning and refuses an
    unusable backend with StorageNotConfigured (raised by the factory).
    """

    def __init__(self, config: Dict[str, Any], db_path: str,
                 storage_factory: Callable[..., StorageBackend] = create_storage):
        self.config = config
        self.db_path = db_path
        self._storage_factory = storage_factory
        self.tracker = ProgressTracker(
            max_errors=config.get("sync", {}).get("max_errors", 100)
        )
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._cancel = threading.Event()
        self._report: Optional[SyncReport] = None
        self._backend: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, backend: str = None, overrides: Dict[str, Any] = None) -> None:
        with self._lock:
            if self.running:
                raise SyncAlreadyRunning("Sync already in progress")

            config = copy.deepcopy(self.config)
            if overrides:
                config.setdefault("sync", {}).update(overrides)
            storage = self._storage_factory(config, backend)

            engine = ImageSyncEngine(config, storage, self.db_path, tracker=self.tracker)
            self._cancel = threading.Event()
            self._backend = storage.name
            self.tracker.start(0, "Starting image sync")
            self._thread = threading.Thread(
                target=self._run, args=(engine, self._cancel),
                name="image-sync", daemon=True,
            )
            self._thread.start()

    def _run(self, engine: ImageSyncEngine, cancel_event: threading.Event) -> None:
        self._report = engine.run(cancel_event)

    def stop(self) -> bool:
        """Ask the running pass to stop; in-flight uploads finish first."""
        if not self.running:
            return False
        self._cancel.set()
        self.tracker.update(message="Stopping after in-flight uploads")
        return True

    def wait(self, timeout: float = None) -> Optional[SyncReport]:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self._report

    def status(self) -> Dict[str, Any]:
        snap = self.tracker.snapshot()
        snap["is_running"] = self.running
        snap["backend"] = self._backend
        return snap

    def last_report(self) -> Optional[SyncReport]:
        return self._report


def upload_local_photos(directory: str, storage: StorageBackend, db_path: str,
                        tracker: ProgressTracker = None,
                        cancel_event: threading.Event = None) -> Dict[str, int]:
    """
    Upload ``{business_id}_{anything}.{ext}`` files from a directory.

    Each upload is appended to that business's photos with its storage URL
    already set, so a later sync pass leaves it alone. Progress is written
    as plain-text lines to ``tracker``.
    """
    tracker = tracker or ProgressTracker()
    cancel_event = cancel_event or threading.Event()
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Photo directory not found: {directory}")

    files = sorted(p for p in root.iterdir()
                   if p.is_file() and p.suffix.lower() in _LOCAL_IMAGE_SUFFIXES)
    counts = {"total": len(files), "uploaded": 0, "skipped": 0, "failed": 0}
    tracker.start(len(files), f"Uploading {len(files)} local photos to {storage.name}")
    tracker.log(f"Found {len(files)} photo files in {root}")

    stopped = False
    db = BusinessDB(db_path)
    try:
        for path in files:
            if cancel_event.is_set():
                tracker.log("Cancelled")
                stopped = True
                break

            business_id = business_id_from_filename(path.name)
            if not business_id:
                counts["skipped"] += 1
                tracker.record_skip("no_business_prefix")
                tracker.log(f"SKIP {path.name}: filename has no business id prefix")
                continue
            business = db.get_business(business_id, include_blobs=False)
            if business is None:
                counts["skipped"] += 1
                tracker.record_skip("unknown_business")
                tracker.log(f"SKIP {path.name}: no business {business_id}")
                continue
            if any(isinstance(p, dict) and p.get("source_file") == path.name
                   for p in business.get("photos", [])):
                counts["skipped"] += 1
                tracker.record_skip("already_uploaded")
                tracker.log(f"SKIP {path.name}: already uploaded")
                continue

            tracker.item_started(path.name)
            try:
                data = path.read_bytes()
                content_type = sniff_content_type(data) or "image/jpeg"
                key = f"businesses/{sanitize_business_id(business_id)}/photos/{path.name}"
                stored = storage.upload(key, data, content_type, metadata={
                    "business-id": business_id,
                    "image-type": "photo",
                    "business-name": business.get("name"),
                })
                db.append_photo(business_id, {
                    "url": stored.url,
                    "s3_url": stored.url,
                    "s3_uploaded_at": _iso_now(),
                    "source_file": path.name,
                })
            except Exception as e:
                counts["failed"] += 1
                tracker.record_error(path.name, str(e))
                tracker.log(f"FAIL {path.name}: {e}")
                continue

            counts["uploaded"] += 1
            tracker.record_success("photo")
            tracker.log(f"OK   {path.name} -> {stored.url}")
    finally:
        db.close()

    status = "cancelled" if stopped else "completed"
    summary = (f"{counts['uploaded']} uploaded, {counts['skipped']} skipped, "
               f"{counts['failed']} failed")
    tracker.log(f"Done: {summary}")
    tracker.finish(status, summary)
    return counts
