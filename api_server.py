#!/usr/bin/env python3
"""
FastAPI server for the business directory admin backend.
Provides REST endpoints to browse and edit businesses, run Google Places
fetch jobs, drive the bulk image sync (polling and Server-Sent Events),
and view the API audit log.
"""

import asyncio
import json
import logging
import os
import queue
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, Any, List, Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Security, Request, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import APIKeyHeader
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from bizdir.api_keys import scope_allows
from bizdir.business_db import BusinessDB
from bizdir.config import load_config
from bizdir.fetcher import BusinessFetcher
from bizdir.image_sync import ImageSyncService, SyncAlreadyRunning
from bizdir.job_manager import JobConflict, JobManager, JobStatus
from bizdir.places_client import PlacesApiDisabled, PlacesApiError, api_usage
from bizdir.progress import TERMINAL_STATUSES, ProgressTracker
from bizdir.storage import StorageError, StorageNotConfigured, create_storage

VERSION = "1.0.0"
SSE_HEARTBEAT_SECONDS = 15.0

# --- Load config for API settings ---
_config = load_config(Path(os.environ.get("BIZDIR_CONFIG", "config.yaml")))
if os.environ.get("BIZDIR_DB_PATH"):
    _config["db_path"] = os.environ["BIZDIR_DB_PATH"]
_api_config = _config.get("api", {})

_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_api_key(request: Request, key: Optional[str] = Security(_api_key_header)):
    """Authenticate via DB-managed API keys. Open access when no keys exist."""
    api_key_db = getattr(request.app.state, "api_key_db", None)

    if api_key_db and api_key_db.has_active_keys():
        if not key:
            raise HTTPException(status_code=401, detail="Missing API key")
        info = api_key_db.verify_key(key)
        if not info:
            raise HTTPException(status_code=401, detail="Invalid or revoked API key")
        request.state.api_key_info = info
        if not scope_allows(info["scope"], request.method):
            raise HTTPException(status_code=403, detail="Read-only API key")
        return

    request.state.api_key_info = None


log = logging.getLogger("api_server")

# Global job manager and image sync service
job_manager: Optional[JobManager] = None
sync_service: Optional[ImageSyncService] = None


def mount_local_uploads(app: FastAPI, config: Dict[str, Any]) -> Optional[str]:
    """
    Serve ``storage.local_dir`` at ``storage.local_base_url``.

    Only a path-style base URL is mounted, and only when the directory exists
    or local storage is the default backend. Returns the mount path.
    """
    storage_cfg = config.get("storage", {})
    base_url = (storage_cfg.get("local_base_url") or "").rstrip("/")
    if not base_url.startswith("/"):
        return None
    local_dir = Path(storage_cfg.get("local_dir", "uploads"))
    if storage_cfg.get("backend") == "local":
        local_dir.mkdir(parents=True, exist_ok=True)
    elif not local_dir.is_dir():
        return None

    # A second lifespan run (tests, reload) replaces the earlier mount.
    app.router.routes[:] = [r for r in app.router.routes if getattr(r, "name", None) != "uploads"]
    app.mount(base_url, StaticFiles(directory=str(local_dir)), name="uploads")
    return base_url


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown"""
    global job_manager, sync_service

    from bizdir.log_manager import setup_logging_from_config
    setup_logging_from_config(_config)
    log.info("Starting business directory admin API")

    db_path = _config.get("db_path", "businesses.db")

    # Creates or migrates the schema before any request opens its own connection.
    BusinessDB(db_path).close()
    log.info("Business database ready at %s", db_path)

    from bizdir.api_keys import ApiKeyDB
    app.state.api_key_db = ApiKeyDB(db_path)
    log.info("API key database initialized")

    job_manager = JobManager(_config, max_concurrent_jobs=3)
    sync_service = ImageSyncService(_config, db_path)
    app.state.sync_service = sync_service

    mounted = mount_local_uploads(app, _config)
    if mounted:
        log.info("Serving local uploads at %s", mounted)

    cleanup_task = asyncio.create_task(cleanup_jobs_periodically())

    yield

    log.info("Shutting down business directory admin API")
    cleanup_task.cancel()
    if sync_service and sync_service.running:
        sync_service.stop()
        sync_service.wait(timeout=30)
    if job_manager:
        job_manager.shutdown()
    if hasattr(app.state, "api_key_db"):
        app.state.api_key_db.close()


app = FastAPI(
    title="Business Directory Admin API",
    description="Admin backend for the business directory: Places fetches, image sync, audit",
    version=VERSION,
    lifespan=lifespan
)


# --- Audit Middleware ---

class AuditMiddleware(BaseHTTPMiddleware):
    """Log every request to the API audit table."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.monotonic()
        response = await call_next(request)
        elapsed_ms = int((time.monotonic() - start) * 1000)

        api_key_db = getattr(request.app.state, "api_key_db", None)
        if api_key_db is None:
            return response

        key_info = getattr(request.state, "api_key_info", None)
        client_ip = request.client.host if request.client else None

        try:
            api_key_db.log_request(
                key_id=key_info["id"] if key_info else None,
                key_name=key_info["name"] if key_info else None,
                endpoint=request.url.path,
                method=request.method,
                client_ip=client_ip,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
            )
        except Exception:
            log.exception("Failed to write audit log entry")

        return response


app.add_middleware(AuditMiddleware)

# CORS: env var takes precedence, then config.yaml, then default "*".
_raw_origins = (
    os.environ.get("ALLOWED_ORIGINS", "")
    or _api_config.get("allowed_origins", "*")
)
_allowed_origins = [o.strip() for o in _raw_origins.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=_raw_origins != "*",
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Domain errors -> HTTP status ---

def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    return handler


app.add_exception_handler(SyncAlreadyRunning, _error_handler(409))
app.add_exception_handler(JobConflict, _error_handler(409))
app.add_exception_handler(StorageNotConfigured, _error_handler(400))
app.add_exception_handler(StorageError, _error_handler(502))
app.add_exception_handler(PlacesApiDisabled, _error_handler(503))
app.add_exception_handler(PlacesApiError, _error_handler(502))


# ---------------------------------------------------------------------------
# Dependency helpers
# ---------------------------------------------------------------------------

def get_business_db():
    """A BusinessDB connection scoped to one request."""
    db = BusinessDB(_config.get("db_path", "businesses.db"))
    try:
        yield db
    finally:
        db.close()


def get_api_key_db(request: Request):
    db = getattr(request.app.state, "api_key_db", None)
    if db is None:
        raise HTTPException(status_code=500, detail="API key database not initialized")
    return db


def get_job_manager() -> JobManager:
    if not job_manager:
        raise HTTPException(status_code=500, detail="Job manager not initialized")
    return job_manager


def get_sync_service() -> ImageSyncService:
    if not sync_service:
        raise HTTPException(status_code=500, detail="Image sync service not initialized")
    return sync_service


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

# --- Businesses ---
class PhotoEntry(BaseModel):
    url: Optional[str] = None
    photo_reference: Optional[str] = None
    caption: Optional[str] = None
    s3_url: Optional[str] = None
    s3_uploaded_at: Optional[str] = None
    source_file: Optional[str] = None
    base64: Optional[str] = None


class BusinessResponse(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating: Optional[float] = None
    review_count: int = 0
    category: Optional[str] = None
    business_status: Optional[str] = None
    photo_reference: Optional[str] = None
    logo_url: Optional[str] = None
    logo_base64: Optional[str] = None
    logo_s3_url: Optional[str] = None
    logo_uploaded_at: Optional[str] = None
    has_logo_base64: bool = False
    is_open: Optional[bool] = None
    price_level: Optional[int] = None
    has_target_keyword: bool = False
    hours: Optional[Any] = None
    photos: List[PhotoEntry] = []
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class BusinessListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    items: List[BusinessResponse]


class BusinessUpdate(BaseModel):
    """Fields an admin may change; omitted fields are left alone."""
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    email: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    review_count: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    business_status: Optional[str] = None
    logo_url: Optional[str] = None
    is_open: Optional[bool] = None
    price_level: Optional[int] = None
    has_target_keyword: Optional[bool] = None
    hours: Optional[Any] = None
    photos: Optional[List[Dict[str, Any]]] = None


class ReviewResponse(BaseModel):
    id: str
    business_id: str
    author_name: Optional[str] = None
    rating: Optional[float] = None
    text: Optional[str] = None
    time_ago: Optional[str] = None
    profile_photo_url: Optional[str] = None
    created_at: Optional[str] = None


# --- Categories ---
class CategoryResponse(BaseModel):
    name: str
    count: int


class CategoryRename(BaseModel):
    new_name: str = Field(..., min_length=1)


# --- Jobs ---
class FetchRequest(BaseModel):
    """Request model for a Places fetch job"""
    queries: Optional[List[str]] = Field(None, description="Search queries (default: configured categories)")
    max_per_query: int = Field(20, ge=1, le=60)
    max_pages: int = Field(1, ge=1, le=3, description="Text search pages per query")
    fetch_details: bool = True
    update_existing: bool = False
    download_logo: bool = False


class ReviewSyncRequest(BaseModel):
    business_ids: Optional[List[str]] = Field(None, description="Businesses to refresh (default: all)")


class UploadLocalRequest(BaseModel):
    directory: str = Field(..., description="Server-side folder with {business_id}_*.jpg files")
    backend: Optional[str] = Field(None, description="local, s3 or netlify")


class JobResponse(BaseModel):
    """Response model for job information"""
    job_id: str
    kind: str
    status: JobStatus
    params: Dict[str, Any] = {}
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error_message: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    progress: Optional[Dict[str, Any]] = None


class JobCreatedResponse(BaseModel):
    job_id: str
    status: str
    message: str


# --- Image sync ---
class SyncStartRequest(BaseModel):
    backend: Optional[str] = Field(None, description="local, s3 or netlify (default: storage.backend)")
    concurrency: Optional[int] = Field(None, ge=1, le=50)
    page_size: Optional[int] = Field(None, ge=1, le=1000)
    order: Optional[str] = Field(None, pattern="^(priority|pages)$")
    prefer_base64: Optional[bool] = None


# --- Audit ---
class AuditLogEntry(BaseModel):
    id: int
    timestamp: str
    key_id: Optional[int] = None
    key_name: Optional[str] = None
    endpoint: str
    method: str
    client_ip: Optional[str] = None
    status_code: Optional[int] = None
    response_time_ms: Optional[int] = None


# ---------------------------------------------------------------------------
# Background task for periodic cleanup
# ---------------------------------------------------------------------------

async def cleanup_jobs_periodically():
    """Periodically clean up old jobs"""
    while True:
        await asyncio.sleep(3600)
        if job_manager:
            job_manager.cleanup_old_jobs(max_age_hours=24)


# ---------------------------------------------------------------------------
# Streaming helpers
# ---------------------------------------------------------------------------

def _sse_data(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


async def sse_events(tracker: ProgressTracker, request: Request,
                     heartbeat: float = SSE_HEARTBEAT_SECONDS):
    """
    Relay tracker events as Server-Sent Events.

    The first event is the current snapshot. A ``: heartbeat`` comment goes
    out when nothing was sent for ``heartbeat`` seconds. The stream ends
    after a terminal progress event or when the client disconnects.
    """
    q = tracker.subscribe()
    last_sent = time.monotonic()
    try:
        while True:
            if await request.is_disconnected():
                break
            try:
                event = await asyncio.to_thread(q.get, True, 1.0)
            except queue.Empty:
                # The terminal event may have been dropped on a full queue.
                if tracker.is_terminal:
                    yield _sse_data({"type": "progress", **tracker.snapshot()})
                    break
                if time.monotonic() - last_sent >= heartbeat:
                    last_sent = time.monotonic()
                    yield ": heartbeat\n\n"
                continue

            last_sent = time.monotonic()
            yield _sse_data(event)
            if event.get("type") == "progress" and event.get("status") in TERMINAL_STATUSES:
                break
    finally:
        tracker.unsubscribe(q)


async def log_lines(tracker: ProgressTracker, follow: bool = True, poll: float = 0.5):
    """Plain-text job log; with ``follow`` it streams until the job ends."""
    seq = 0
    while True:
        finished = tracker.is_terminal
        lines, seq = tracker.lines_since(seq)
        for line in lines:
            yield line + "\n"
        if finished or not follow:
            break
        await asyncio.sleep(poll)


_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


# ===========================================================================
# Routers
# ===========================================================================

# --- System Router ---
system_router = APIRouter(tags=["System"])


@system_router.get("/", summary="API Health Check")
async def root():
    """Health check endpoint"""
    return {
        "message": "Business directory admin API is running",
        "status": "healthy",
        "version": VERSION,
    }


@system_router.get("/stats", summary="Directory Statistics",
                   dependencies=[Depends(require_api_key)])
async def get_stats(db: BusinessDB = Depends(get_business_db),
                    jobs: JobManager = Depends(get_job_manager),
                    sync: ImageSyncService = Depends(get_sync_service)):
    """Database counts, job counts, Places API usage and image sync state."""
    return {
        "database": db.get_stats(),
        "jobs": jobs.get_stats(),
        "google": api_usage.status(),
        "sync": {"is_running": sync.running, "status": sync.tracker.status},
    }


@system_router.post("/cleanup", summary="Manual Job Cleanup",
                    dependencies=[Depends(require_api_key)])
async def cleanup_jobs(max_age_hours: int = Query(24, description="Maximum age in hours", ge=1),
                       jobs: JobManager = Depends(get_job_manager)):
    """Manually trigger cleanup of old completed/failed jobs"""
    removed = jobs.cleanup_old_jobs(max_age_hours=max_age_hours)
    return {"message": f"Cleaned up {removed} jobs older than {max_age_hours} hours",
            "removed": removed}


# --- Businesses Router ---
businesses_router = APIRouter(tags=["Businesses"], dependencies=[Depends(require_api_key)])


@businesses_router.get("/businesses", response_model=BusinessListResponse,
                       summary="List Businesses")
async def list_businesses(
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    search: Optional[str] = Query(None, description="Match name or address"),
    category: Optional[str] = Query(None),
    city: Optional[str] = Query(None, description="Match within the address"),
    db: BusinessDB = Depends(get_business_db),
):
    """Businesses with target-keyword matches first, then by rating."""
    total = db.count_businesses(search=search, category=category, city=city)
    rows = db.list_businesses(limit=limit, offset=offset, search=search,
                              category=category, city=city)
    return BusinessListResponse(total=total, limit=limit, offset=offset,
                                items=[BusinessResponse(**r) for r in rows])


@businesses_router.get("/businesses/{business_id}", response_model=BusinessResponse,
                       summary="Get Business")
async def get_business(business_id: str,
                       include_blobs: bool = Query(False, description="Include base64 image copies"),
                       db: BusinessDB = Depends(get_business_db)):
    business = db.get_business(business_id, include_blobs=include_blobs)
    if not business:
        raise HTTPException(status_code=404, detail="Business not found")
    return BusinessResponse(**business)


@businesses_router.patch("/businesses/{business_id}", response_model=BusinessResponse,
                         summary="Update Business")
async def update_business(business_id: str, update: BusinessUpdate,
                          db: BusinessDB = Depends(get_business_db)):
    """Partially update a business; only the fields sent are changed."""
    fields = update.dict(exclude_unset=True)
    try:
        found = db.update_business(business_id, fields)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not found:
        raise HTTPException(status_code=404, detail="Business not found")
    return BusinessResponse(**db.get_business(business_id, include_blobs=False))


@businesses_router.delete("/businesses/{business_id}", summary="Delete Business")
async def delete_business(business_id: str, db: BusinessDB = Depends(get_business_db)):
    """Delete a business and its reviews."""
    if not db.delete_business(business_id):
        raise HTTPException(status_code=404, detail="Business not found")
    return {"message": "Business deleted successfully"}


@businesses_router.get("/businesses/{business_id}/reviews",
                       response_model=List[ReviewResponse], summary="List Reviews")
async def list_reviews(business_id: str, db: BusinessDB = Depends(get_business_db)):
    if not db.business_exists(business_id):
        raise HTTPException(status_code=404, detail="Business not found")
    return [ReviewResponse(**r) for r in db.get_reviews(business_id)]


# --- Categories Router ---
categories_router = APIRouter(tags=["Categories"], dependencies=[Depends(require_api_key)])


@categories_router.get("/categories", response_model=List[CategoryResponse],
                       summary="List Categories")
async def list_categories(db: BusinessDB = Depends(get_business_db)):
    return [CategoryResponse(**c) for c in db.list_categories()]


@categories_router.put("/categories/{name}", summary="Rename Category")
async def rename_category(name: str, body: CategoryRename,
                          db: BusinessDB = Depends(get_business_db)):
    try:
        changed = db.rename_category(name, body.new_name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not changed:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"message": f"Renamed '{name}' to '{body.new_name.strip()}'", "updated": changed}


@categories_router.delete("/categories/{name}", summary="Delete Category")
async def delete_category(
    name: str,
    delete_businesses: bool = Query(False, description="Delete the businesses too"),
    db: BusinessDB = Depends(get_business_db),
):
    """Clear a category from its businesses, or delete them outright."""
    changed = db.delete_category(name, delete_businesses=delete_businesses)
    if not changed:
        raise HTTPException(status_code=404, detail="Category not found")
    return {"message": f"Category '{name}' removed", "affected": changed,
            "businesses_deleted": delete_businesses}


# --- Google Router ---
google_router = APIRouter(prefix="/google", tags=["Google Places"],
                          dependencies=[Depends(require_api_key)])


@google_router.get("/search", summary="Preview Text Search")
def google_search(query: str = Query(..., min_length=1),
                  limit: int = Query(20, ge=1, le=20)):
    """Run one Text Search and return mapped results without storing them."""
    fetcher = BusinessFetcher(_config, _config.get("db_path", "businesses.db"))
    results = fetcher.search_preview(query, limit=limit)
    return {"query": query, "count": len(results), "results": results}


@google_router.get("/status", summary="Places API Status")
async def google_status():
    return api_usage.status()


@google_router.post("/enable", summary="Enable Live Places Calls")
async def google_enable():
    api_usage.enable()
    return api_usage.status()


@google_router.post("/disable", summary="Disable Live Places Calls")
async def google_disable():
    """Serve cached Details only; every other Places call fails with 503."""
    api_usage.disable()
    return api_usage.status()


@google_router.post("/reset", summary="Reset Places Counters and Cache")
async def google_reset():
    api_usage.reset()
    return api_usage.status()


# --- Jobs Router ---
jobs_router = APIRouter(tags=["Jobs"], dependencies=[Depends(require_api_key)])


def _create_and_start(jobs: JobManager, kind: str, params: Dict[str, Any]) -> JobCreatedResponse:
    job_id = jobs.create_job(kind, params)
    started = jobs.start_job(job_id)
    return JobCreatedResponse(
        job_id=job_id,
        status="started" if started else "queued",
        message=f"{kind} job {'started' if started else 'queued'}",
    )


@jobs_router.post("/jobs/fetch", response_model=JobCreatedResponse,
                  summary="Start Business Fetch")
async def start_fetch(request: FetchRequest, jobs: JobManager = Depends(get_job_manager)):
    """Fetch businesses from Google Places in the background."""
    return _create_and_start(jobs, "fetch_businesses", request.dict())


@jobs_router.post("/jobs/reviews", response_model=JobCreatedResponse,
                  summary="Start Review Sync")
async def start_review_sync(request: ReviewSyncRequest,
                            jobs: JobManager = Depends(get_job_manager)):
    return _create_and_start(jobs, "sync_reviews", request.dict())


@jobs_router.post("/jobs/upload-local", response_model=JobCreatedResponse,
                  summary="Start Local Photo Upload")
def start_upload_local(request: UploadLocalRequest,
                       jobs: JobManager = Depends(get_job_manager)):
    """Upload a server-side folder of photos; the backend is checked up front."""
    if not Path(request.directory).is_dir():
        raise HTTPException(status_code=400, detail=f"Directory not found: {request.directory}")
    create_storage(_config, request.backend)
    return _create_and_start(jobs, "upload_local_photos", request.dict())


@jobs_router.get("/jobs", response_model=List[JobResponse], summary="List Jobs")
async def list_jobs(
    status: Optional[JobStatus] = Query(None, description="Filter by job status"),
    kind: Optional[str] = Query(None, description="Filter by job kind"),
    limit: int = Query(100, ge=1, le=1000),
    jobs: JobManager = Depends(get_job_manager),
):
    return [JobResponse(**job.to_dict()) for job in jobs.list_jobs(status=status, kind=kind,
                                                                   limit=limit)]


@jobs_router.get("/jobs/{job_id}", response_model=JobResponse, summary="Get Job Status")
async def get_job(job_id: str, jobs: JobManager = Depends(get_job_manager)):
    job = jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(**job.to_dict())


@jobs_router.get("/jobs/{job_id}/log", summary="Stream Job Log")
async def job_log(job_id: str,
                  follow: bool = Query(True, description="Keep streaming until the job ends"),
                  jobs: JobManager = Depends(get_job_manager)):
    """Plain-text progress lines of a job."""
    job = jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return StreamingResponse(log_lines(job.tracker, follow=follow),
                             media_type="text/plain")


@jobs_router.post("/jobs/{job_id}/cancel", summary="Cancel Job")
async def cancel_job(job_id: str, jobs: JobManager = Depends(get_job_manager)):
    """Cancel a pending or running job"""
    if not jobs.cancel_job(job_id):
        if not jobs.get_job(job_id):
            raise HTTPException(status_code=404, detail="Job not found")
        raise HTTPException(status_code=400,
                            detail="Job cannot be cancelled (already completed, failed, or cancelled)")
    return {"message": "Job cancelled successfully"}


@jobs_router.delete("/jobs/{job_id}", summary="Delete Job")
async def delete_job(job_id: str, jobs: JobManager = Depends(get_job_manager)):
    """Delete a job from the system (only terminal-state jobs)"""
    job = jobs.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if not jobs.delete_job(job_id):
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete job in '{job.status.value}' state. Cancel it first.",
        )
    return {"message": "Job deleted successfully"}


# --- Image Sync Router ---
sync_router = APIRouter(prefix="/sync", tags=["Image Sync"],
                        dependencies=[Depends(require_api_key)])


@sync_router.post("/start", summary="Start Image Sync")
def start_sync(request: Optional[SyncStartRequest] = None,
               sync: ImageSyncService = Depends(get_sync_service)):
    """Start a sync pass; 409 while one runs, 400 if the backend isn't configured."""
    request = request or SyncStartRequest()
    overrides = request.dict(exclude_none=True)
    backend = overrides.pop("backend", None)
    sync.start(backend=backend, overrides=overrides)
    return {"message": "Image sync started", "status": sync.status()}


@sync_router.get("/status", summary="Image Sync Progress")
async def sync_status(sync: ImageSyncService = Depends(get_sync_service)):
    return sync.status()


@sync_router.post("/stop", summary="Stop Image Sync")
async def stop_sync(sync: ImageSyncService = Depends(get_sync_service)):
    """Request cancellation; in-flight uploads finish first."""
    if not sync.stop():
        raise HTTPException(status_code=400, detail="No image sync is running")
    return {"message": "Stop requested"}


@sync_router.get("/report", summary="Last Image Sync Report")
async def sync_report(include_results: bool = Query(False),
                      sync: ImageSyncService = Depends(get_sync_service)):
    report = sync.last_report()
    if report is None:
        raise HTTPException(status_code=404, detail="No image sync has finished yet")
    return report.to_dict(include_results=include_results)


@sync_router.get("/events", summary="Image Sync Events (SSE)")
async def sync_events(request: Request, sync: ImageSyncService = Depends(get_sync_service)):
    """Server-Sent Events stream of progress snapshots."""
    return StreamingResponse(sse_events(sync.tracker, request),
                             media_type="text/event-stream", headers=_SSE_HEADERS)


# --- Storage Router ---
storage_router = APIRouter(prefix="/storage", tags=["Storage"],
                           dependencies=[Depends(require_api_key)])


@storage_router.get("/stats", summary="Storage Statistics")
def storage_stats(backend: Optional[str] = Query(None, description="local, s3 or netlify")):
    """Object count, bytes and businesses covered in the storage backend."""
    return create_storage(_config, backend).stats()


# --- Audit Log Router ---
audit_router = APIRouter(tags=["Audit Log"], dependencies=[Depends(require_api_key)])


@audit_router.get("/audit-log", response_model=List[AuditLogEntry],
                  summary="Query Audit Log")
async def query_audit_log(
    key_id: Optional[int] = Query(None, description="Filter by API key ID"),
    limit: int = Query(50, ge=1, le=1000, description="Max entries to return"),
    since: Optional[str] = Query(None, description="Only entries after this timestamp"),
    endpoint: Optional[str] = Query(None, description="Only endpoints starting with this path"),
    api_key_db=Depends(get_api_key_db),
):
    """Query the API request audit log."""
    entries = api_key_db.query_audit_log(key_id=key_id, limit=limit, since=since,
                                         endpoint_prefix=endpoint)
    return [AuditLogEntry(**e) for e in entries]


# ===========================================================================
# Register all routers
# ===========================================================================
app.include_router(system_router)
app.include_router(businesses_router)
app.include_router(categories_router)
app.include_router(google_router)
app.include_router(jobs_router)
app.include_router(sync_router)
app.include_router(storage_router)
app.include_router(audit_router)


if __name__ == "__main__":
    import uvicorn

    log.info("Starting FastAPI server...")
    uvicorn.run(
        "api_server:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
