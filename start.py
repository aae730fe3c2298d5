#!/usr/bin/env python3
"""
Business Directory Admin
========================

Main entry point for fetch, image sync and management commands.
"""

import json
import queue
import sys
import threading
import time

from bizdir.cli import parse_arguments
from bizdir.config import load_config


def _get_db_path(config, args):
    """Resolve database path from CLI args or config."""
    if getattr(args, "db_path", None):
        return args.db_path
    return config.get("db_path", "businesses.db")


def _run_with_progress(tracker, work, cancel_event, description="Working"):
    """
    Run ``work()`` on a thread, echoing tracker log lines above a Rich
    progress bar until it returns. Ctrl-C sets ``cancel_event`` and waits
    for the work to wind down.
    """
    from rich.progress import (Progress, SpinnerColumn, BarColumn, TextColumn,
                               MofNCompleteColumn)

    outcome = {}

    def _target():
        try:
            outcome["result"] = work()
        except Exception as e:
            outcome["error"] = e

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TextColumn("ok={task.fields[ok]} failed={task.fields[failed]} "
                   "skipped={task.fields[skipped]}"),
        transient=False,
    )
    task_id = progress.add_task(description, total=None, ok=0, failed=0, skipped=0)

    q = tracker.subscribe()
    worker = threading.Thread(target=_target, name="cli-work", daemon=True)
    worker.start()
    try:
        with progress:
            while worker.is_alive() or not q.empty():
                try:
                    event = q.get(timeout=0.5)
                except queue.Empty:
                    continue
                except KeyboardInterrupt:
                    progress.console.print("Stopping after in-flight work...")
                    cancel_event.set()
                    continue
                if event.get("type") == "log":
                    progress.console.print(event["line"], markup=False, highlight=False)
                else:
                    progress.update(task_id, total=event["total"] or None,
                                    completed=event["completed"], ok=event["succeeded"],
                                    failed=event["failed"], skipped=event["skipped"])
    finally:
        tracker.unsubscribe(q)
        worker.join()

    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def _print_json(data):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


# ------------------------------------------------------------------
# Google Places commands
# ------------------------------------------------------------------

def _run_fetch(config, args):
    """Run the fetch command."""
    from bizdir.fetcher import BusinessFetcher
    from bizdir.places_client import PlacesApiDisabled

    fetcher = BusinessFetcher(config, _get_db_path(config, args))
    cancel = threading.Event()
    try:
        result = _run_with_progress(fetcher.tracker, lambda: fetcher.fetch(
            queries=getattr(args, "queries", None),
            max_per_query=getattr(args, "max_per_query", 20),
            fetch_details=getattr(args, "details", True),
            update_existing=getattr(args, "update_existing", False),
            download_logo=getattr(args, "download_logo", False),
            max_pages=getattr(args, "max_pages", 1),
            cancel_event=cancel,
        ), cancel, "Fetching")
    except PlacesApiDisabled as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Queries: {result.queries}  Found: {result.found}  Added: {result.added}  "
          f"Updated: {result.updated}  Skipped: {result.skipped}")
    for error in result.errors:
        print(f"  error: {error}")


def _run_sync_reviews(config, args):
    """Run the sync-reviews command."""
    from bizdir.fetcher import BusinessFetcher

    fetcher = BusinessFetcher(config, _get_db_path(config, args))
    cancel = threading.Event()
    counts = _run_with_progress(
        fetcher.tracker,
        lambda: fetcher.sync_reviews(getattr(args, "business_ids", None) or None,
                                     cancel_event=cancel),
        cancel,
        "Reviews",
    )
    print(f"Synced {counts['reviews']} reviews for {counts['businesses']} businesses "
          f"({counts['failed']} failed)")


def _run_search(config, args):
    """Run the search preview command."""
    from bizdir.fetcher import BusinessFetcher

    fetcher = BusinessFetcher(config, _get_db_path(config, args))
    results = fetcher.search_preview(args.query, limit=getattr(args, "limit", 20))
    if not results:
        print("No results.")
        return
    for r in results:
        marker = "*" if r.get("exists") else " "
        rating = r.get("rating") if r.get("rating") is not None else "-"
        print(f"{marker} {r['id']:<30} {r['name'][:40]:<40} {rating:<4} {r.get('address') or ''}")
    print("\n* already stored")


# ------------------------------------------------------------------
# Image commands
# ------------------------------------------------------------------

def _sync_overrides(args):
    overrides = {
        "concurrency": getattr(args, "concurrency", None),
        "page_size": getattr(args, "page_size", None),
        "order": getattr(args, "order", None),
        "prefer_base64": getattr(args, "prefer_base64", None),
    }
    return {k: v for k, v in overrides.items() if v is not None}


def _run_sync_images(config, args):
    """Run the sync-images command."""
    from bizdir.image_sync import ImageSyncEngine
    from bizdir.storage import StorageNotConfigured, create_storage

    config.setdefault("sync", {}).update(_sync_overrides(args))
    try:
        storage = create_storage(config, getattr(args, "backend", None))
    except StorageNotConfigured as e:
        print(f"Error: {e}")
        sys.exit(1)

    engine = ImageSyncEngine(config, storage, _get_db_path(config, args))
    cancel = threading.Event()
    report = _run_with_progress(engine.tracker, lambda: engine.run(cancel), cancel,
                                "Uploading")

    print(f"Image sync {report.status} ({storage.name})")
    print(f"  Tasks:     {report.total_tasks}")
    print(f"  Uploaded:  {report.succeeded}")
    print(f"  Failed:    {report.failed}")
    print(f"  Skipped:   {report.skipped}")
    if report.error:
        print(f"  Error:     {report.error}")
    for r in report.results:
        if not r.success:
            print(f"  FAIL {r.task_id}: {r.error}")
    if report.status == "failed":
        sys.exit(1)


def _run_upload_local(config, args):
    """Run the upload-local command."""
    from bizdir.image_sync import upload_local_photos
    from bizdir.progress import ProgressTracker
    from bizdir.storage import StorageNotConfigured, create_storage

    try:
        storage = create_storage(config, getattr(args, "backend", None))
    except StorageNotConfigured as e:
        print(f"Error: {e}")
        sys.exit(1)

    tracker = ProgressTracker()
    cancel = threading.Event()
    try:
        counts = _run_with_progress(tracker, lambda: upload_local_photos(
            args.directory, storage, _get_db_path(config, args),
            tracker=tracker, cancel_event=cancel,
        ), cancel, "Local photos")
    except FileNotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Uploaded {counts['uploaded']} of {counts['total']} photos "
          f"({counts['skipped']} skipped, {counts['failed']} failed)")


# ------------------------------------------------------------------
# Database management commands
# ------------------------------------------------------------------

def _run_db_stats(config, args):
    """Run the db-stats command."""
    from bizdir.business_db import BusinessDB

    db = BusinessDB(_get_db_path(config, args))
    try:
        stats = db.get_stats()
        print("Database Statistics")
        print("=" * 40)
        print(f"  Businesses:       {stats.get('total_businesses', 0)}")
        print(f"  Categories:       {stats.get('categories', 0)}")
        print(f"  Reviews:          {stats.get('reviews_count', 0)} "
              f"({stats.get('with_reviews', 0)} businesses)")
        print(f"  Logos uploaded:   {stats.get('logos_uploaded', 0)}/{stats.get('logos_total', 0)}")
        print(f"  Photos uploaded:  {stats.get('photos_uploaded', 0)}/{stats.get('photos_total', 0)}")
        size_bytes = stats.get("db_size_bytes", 0)
        if size_bytes > 1024 * 1024:
            print(f"  DB size:          {size_bytes / (1024*1024):.1f} MB")
        else:
            print(f"  DB size:          {size_bytes / 1024:.1f} KB")
    finally:
        db.close()


def _run_categories(config, args):
    """Run the categories command."""
    from bizdir.business_db import BusinessDB

    db = BusinessDB(_get_db_path(config, args))
    try:
        rename = getattr(args, "rename", None)
        delete = getattr(args, "delete", None)
        if rename:
            changed = db.rename_category(rename[0], rename[1])
            print(f"Renamed '{rename[0]}' to '{rename[1]}' on {changed} businesses.")
        elif delete:
            delete_businesses = getattr(args, "delete_businesses", False)
            changed = db.delete_category(delete, delete_businesses)
            action = "Deleted" if delete_businesses else "Cleared category on"
            print(f"{action} {changed} businesses in '{delete}'.")
        else:
            categories = db.list_categories()
            if not categories:
                print("No categories found.")
                return
            for c in categories:
                print(f"  {c['count']:>5}  {c['name']}")
    finally:
        db.close()


def _run_export(config, args):
    """Run the export command."""
    from bizdir.business_db import BusinessDB

    db = BusinessDB(_get_db_path(config, args))
    try:
        data = db.export_all(include_blobs=getattr(args, "include_blobs", False))
        text = json.dumps(data, ensure_ascii=False, indent=2)
        output = getattr(args, "output", None)
        if output:
            with open(output, "w", encoding="utf-8") as f:
                f.write(text)
            print(f"Exported {len(data)} businesses to {output}")
        else:
            print(text)
    finally:
        db.close()


def _run_import(config, args):
    """Run the import command."""
    from bizdir.migration import import_json

    try:
        stats = import_json(args.json_path, _get_db_path(config, args))
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Imported {stats['total']} businesses: {stats['inserted']} new, "
          f"{stats['updated']} updated, {stats['skipped']} skipped, "
          f"{stats['reviews']} reviews")


def _run_clear(config, args):
    """Run the clear command."""
    from bizdir.business_db import BusinessDB

    db = BusinessDB(_get_db_path(config, args))
    try:
        if not getattr(args, "confirm", False):
            answer = input("Delete ALL businesses and reviews? This cannot be undone. [y/N]: ")
            if answer.lower() != "y":
                print("Cancelled.")
                return

        counts = db.clear_all()
        print("Cleared all data:")
        for table, count in counts.items():
            print(f"  {table}: {count} rows")
    finally:
        db.close()


# ------------------------------------------------------------------
# API key management commands
# ------------------------------------------------------------------

def _run_api_key_create(config, args):
    """Create a new API key."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        scope = getattr(args, "scope", "admin")
        key_id, raw_key = db.create_key(args.name, scope)
        print(f"Created {scope} API key #{key_id} for '{args.name}'")
        print(f"Key: {raw_key}")
        print("Store this key securely; it cannot be retrieved later.")
    finally:
        db.close()


def _run_api_key_list(config, args):
    """List all API keys."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        keys = db.list_keys()
        if not keys:
            print("No API keys found.")
            return
        print(f"{'ID':<5} {'Name':<20} {'Prefix':<14} {'Scope':<7} {'Active':<8} "
              f"{'Uses':<8} {'Last Used':<20}")
        print("=" * 86)
        for k in keys:
            active = "yes" if k["is_active"] else "REVOKED"
            last_used = k["last_used_at"] or "never"
            print(f"{k['id']:<5} {k['name']:<20} {k['key_prefix']:<14} {k['scope']:<7} "
                  f"{active:<8} {k['usage_count']:<8} {last_used:<20}")
    finally:
        db.close()


def _run_api_key_revoke(config, args):
    """Revoke an API key."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        if db.revoke_key(args.key_id):
            print(f"API key #{args.key_id} revoked.")
        else:
            print(f"Key #{args.key_id} not found or already revoked.")
    finally:
        db.close()


def _run_api_key_stats(config, args):
    """Show API key usage statistics."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        stats = db.get_key_stats(args.key_id)
        if not stats:
            print(f"Key #{args.key_id} not found.")
            return
        active = "active" if stats["is_active"] else "REVOKED"
        print(f"Key #{stats['id']}: {stats['name']} ({stats['scope']}, {active})")
        print(f"  Prefix:    {stats['key_prefix']}")
        print(f"  Created:   {stats['created_at']}")
        print(f"  Last used: {stats['last_used_at'] or 'never'}")
        print(f"  Requests:  {stats['total_requests']} ({stats['error_requests']} errors)")
        recent = stats.get("recent_requests", [])
        if recent:
            print(f"\n  Recent requests ({len(recent)}):")
            for r in recent:
                print(f"    {r['timestamp']}  {r['method']} {r['endpoint']}  -> {r['status_code']}")
    finally:
        db.close()


def _run_audit_log(config, args):
    """Query the API audit log."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        rows = db.query_audit_log(
            key_id=getattr(args, "key_id", None),
            limit=getattr(args, "limit", 50),
            since=getattr(args, "since", None),
        )
        if not rows:
            print("No audit log entries found.")
            return
        print(f"{'ID':<6} {'Timestamp':<20} {'Key':<12} {'Method':<8} {'Endpoint':<30} {'Status':<7} {'ms':<6}")
        print("=" * 89)
        for r in rows:
            key_label = r.get("key_name") or str(r.get("key_id") or "-")
            print(f"{r['id']:<6} {r['timestamp']:<20} {key_label:<12} "
                  f"{r['method']:<8} {r['endpoint']:<30} "
                  f"{r.get('status_code') or '-':<7} {r.get('response_time_ms') or '-':<6}")
    finally:
        db.close()


def _run_prune_audit(config, args):
    """Prune old API audit log entries."""
    from bizdir.api_keys import ApiKeyDB

    db = ApiKeyDB(_get_db_path(config, args))
    try:
        days = getattr(args, "older_than_days", 90)
        dry_run = getattr(args, "dry_run", False)
        count = db.prune_audit_log(days, dry_run)
        if dry_run:
            print(f"Would prune {count} audit entries older than {days} days.")
        else:
            print(f"Pruned {count} audit entries older than {days} days.")
    finally:
        db.close()


# ------------------------------------------------------------------
# Logs and server
# ------------------------------------------------------------------

def _level_matches(line, level):
    if not level:
        return True
    try:
        return json.loads(line).get("level", "") == level
    except (json.JSONDecodeError, AttributeError):
        return True


def _run_logs(config, args):
    """Run the logs viewer command."""
    from bizdir.log_manager import log_file_path
    log_path = log_file_path(config)

    if not log_path.exists():
        print(f"Log file not found: {log_path}")
        sys.exit(1)

    lines = getattr(args, "lines", 50)
    level_filter = (getattr(args, "level", None) or "").upper()

    with open(log_path, "r", encoding="utf-8") as f:
        all_lines = f.readlines()
    for line in all_lines[-lines:]:
        line = line.rstrip()
        if line and _level_matches(line, level_filter):
            print(line)

    if getattr(args, "follow", False):
        with open(log_path, "r", encoding="utf-8") as f:
            f.seek(0, 2)
            try:
                while True:
                    line = f.readline()
                    if not line:
                        time.sleep(0.3)
                        continue
                    line = line.rstrip()
                    if _level_matches(line, level_filter):
                        print(line)
            except KeyboardInterrupt:
                pass


def _run_serve(config, args):
    """Run the admin API server."""
    import os
    import uvicorn

    if getattr(args, "config", None):
        os.environ["BIZDIR_CONFIG"] = str(args.config)
    if getattr(args, "db_path", None):
        os.environ["BIZDIR_DB_PATH"] = args.db_path
    uvicorn.run(
        "api_server:app",
        host=getattr(args, "host", "0.0.0.0"),
        port=getattr(args, "port", 8000),
        reload=getattr(args, "reload", False),
    )


COMMANDS = {
    "fetch": _run_fetch,
    "sync-reviews": _run_sync_reviews,
    "search": _run_search,
    "sync-images": _run_sync_images,
    "upload-local": _run_upload_local,
    "db-stats": _run_db_stats,
    "categories": _run_categories,
    "export": _run_export,
    "import": _run_import,
    "clear": _run_clear,
    "api-key-create": _run_api_key_create,
    "api-key-list": _run_api_key_list,
    "api-key-revoke": _run_api_key_revoke,
    "api-key-stats": _run_api_key_stats,
    "audit-log": _run_audit_log,
    "prune-audit": _run_prune_audit,
    "logs": _run_logs,
    "serve": _run_serve,
}


def main():
    """Parse arguments, load config and dispatch the command."""
    args = parse_arguments()
    config = load_config(args.config)

    # The log viewer reads raw files; the server configures logging in its lifespan.
    if args.command not in ("logs", "serve"):
        from bizdir.log_manager import setup_logging_from_config
        setup_logging_from_config(config)

    handler = COMMANDS.get(args.command)
    if handler:
        handler(config, args)
    else:
        print(f"Unknown command: {args.command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
