"""
Command line interface for the business directory admin backend.

Subcommands:
  fetch          Fetch businesses from Google Places
  sync-reviews   Refresh stored reviews and ratings
  sync-images    Upload logos and photos to the storage backend
  upload-local   Upload a folder of {business_id}_*.jpg photos
  search         Preview a Places text search without storing anything
  db-stats       Show database statistics
  categories     List, rename or delete categories
  export         Export businesses (with reviews) to JSON
  import         Import a JSON export into SQLite
  clear          Delete all businesses and reviews
  api-key-*      Manage API keys
  audit-log      Query the API audit log
  prune-audit    Prune old audit log entries
  logs           View the structured log file
  serve          Run the admin API server
"""

import argparse
from pathlib import Path

from bizdir.config import DEFAULT_CONFIG_PATH


def _str_to_bool(value: str) -> bool:
    """Parse boolean string for argparse (type=bool is broken)."""
    if value.lower() in ("true", "1", "yes", "on"):
        return True
    if value.lower() in ("false", "0", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"Boolean value expected, got '{value}'")


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    """Add common arguments shared across subcommands."""
    parser.add_argument(
        "--config", type=str, default=None,
        help="path to custom configuration file",
    )
    parser.add_argument(
        "--db-path", type=str, default=None,
        help="path to SQLite database file (default: businesses.db)",
    )


def _add_backend_arg(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--backend", choices=("local", "s3", "netlify"), default=None,
        help="storage backend (default: storage.backend from config)",
    )


def _build_google_parsers(sub: argparse._SubParsersAction) -> None:
    """Build the Places-backed subcommands."""
    sp = sub.add_parser("fetch", help="Fetch businesses from Google Places")
    _add_common_args(sp)
    sp.add_argument(
        "--query", "-q", action="append", dest="queries", default=None,
        help="search query (repeatable; default: one per configured category)",
    )
    sp.add_argument(
        "--max-per-query", type=int, default=20,
        help="maximum places stored per query (default: 20)",
    )
    sp.add_argument(
        "--max-pages", type=int, default=1,
        help="text search result pages per query, 20 results each (default: 1)",
    )
    sp.add_argument(
        "--details", type=_str_to_bool, default=True,
        help="call Place Details for each new business (true/false)",
    )
    sp.add_argument(
        "--update-existing", action="store_true",
        help="refresh businesses that are already stored",
    )
    sp.add_argument(
        "--download-logo", action="store_true",
        help="keep a base64 copy of each logo in the database",
    )

    sp = sub.add_parser("sync-reviews", help="Refresh reviews from Place Details")
    _add_common_args(sp)
    sp.add_argument(
        "business_ids", nargs="*",
        help="business ids to refresh (default: all)",
    )

    sp = sub.add_parser("search", help="Preview a Places text search")
    _add_common_args(sp)
    sp.add_argument("query", help="text search query")
    sp.add_argument("--limit", type=int, default=20, help="results to show")


def _build_image_parsers(sub: argparse._SubParsersAction) -> None:
    """Build the image upload subcommands."""
    sp = sub.add_parser("sync-images", help="Upload business images to storage")
    _add_common_args(sp)
    _add_backend_arg(sp)
    sp.add_argument(
        "--concurrency", type=int, default=None,
        help="parallel uploads (default: sync.concurrency)",
    )
    sp.add_argument(
        "--page-size", type=int, default=None,
        help="businesses read per page (default: sync.page_size)",
    )
    sp.add_argument(
        "--order", choices=("priority", "pages"), default=None,
        help="priority: logos first over all businesses; pages: stream page by page",
    )
    sp.add_argument(
        "--prefer-base64", type=_str_to_bool, default=None,
        help="upload stored base64 copies before fetching URLs (true/false)",
    )

    sp = sub.add_parser("upload-local", help="Upload a folder of business photos")
    _add_common_args(sp)
    _add_backend_arg(sp)
    sp.add_argument("directory", help="folder holding {business_id}_*.jpg files")


def _build_management_parsers(sub: argparse._SubParsersAction) -> None:
    """Build database management subcommands."""
    sp = sub.add_parser("db-stats", help="Show database statistics")
    _add_common_args(sp)

    sp = sub.add_parser("categories", help="List, rename or delete categories")
    _add_common_args(sp)
    group = sp.add_mutually_exclusive_group()
    group.add_argument(
        "--rename", nargs=2, metavar=("OLD", "NEW"), default=None,
        help="rename a category on every business",
    )
    group.add_argument(
        "--delete", metavar="NAME", default=None,
        help="clear a category from its businesses",
    )
    sp.add_argument(
        "--delete-businesses", action="store_true",
        help="with --delete, delete the businesses instead of clearing the category",
    )

    sp = sub.add_parser("export", help="Export businesses to JSON")
    _add_common_args(sp)
    sp.add_argument(
        "--output", "-o", type=str, default=None,
        help="output file (default: stdout)",
    )
    sp.add_argument(
        "--include-blobs", action="store_true",
        help="include base64 image copies",
    )

    sp = sub.add_parser("import", help="Import businesses from a JSON export")
    _add_common_args(sp)
    sp.add_argument(
        "--json-path", type=str, required=True,
        help="path to the JSON file",
    )

    sp = sub.add_parser("clear", help="Delete all businesses and reviews")
    _add_common_args(sp)
    sp.add_argument(
        "--confirm", action="store_true",
        help="skip confirmation prompt",
    )


def _build_api_key_parsers(sub: argparse._SubParsersAction) -> None:
    """Build API key and audit subcommands."""
    sp = sub.add_parser("api-key-create", help="Create an API key")
    _add_common_args(sp)
    sp.add_argument("name", help="label for the key")
    sp.add_argument(
        "--scope", choices=("admin", "read"), default="admin",
        help="admin keys may write; read keys only GET (default: admin)",
    )

    sp = sub.add_parser("api-key-list", help="List API keys")
    _add_common_args(sp)

    sp = sub.add_parser("api-key-revoke", help="Revoke an API key")
    _add_common_args(sp)
    sp.add_argument("key_id", type=int, help="key id to revoke")

    sp = sub.add_parser("api-key-stats", help="Show usage of an API key")
    _add_common_args(sp)
    sp.add_argument("key_id", type=int, help="key id")

    sp = sub.add_parser("audit-log", help="Query the API audit log")
    _add_common_args(sp)
    sp.add_argument("--key-id", type=int, default=None, help="filter by key id")
    sp.add_argument("--limit", type=int, default=50, help="rows to show (default: 50)")
    sp.add_argument("--since", type=str, default=None,
                    help="only entries at or after this timestamp (YYYY-MM-DD HH:MM:SS)")

    sp = sub.add_parser("prune-audit", help="Prune old audit log entries")
    _add_common_args(sp)
    sp.add_argument(
        "--older-than-days", type=int, default=90,
        help="delete entries older than N days (default: 90)",
    )
    sp.add_argument("--dry-run", action="store_true", help="show count without deleting")


def _build_server_parsers(sub: argparse._SubParsersAction) -> None:
    sp = sub.add_parser("logs", help="View the structured log file")
    _add_common_args(sp)
    sp.add_argument("--lines", "-n", type=int, default=50, help="lines to show (default: 50)")
    sp.add_argument("--level", type=str, default=None, help="only show this level")
    sp.add_argument("--follow", "-f", action="store_true", help="keep printing new lines")

    sp = sub.add_parser("serve", help="Run the admin API server")
    _add_common_args(sp)
    sp.add_argument("--host", type=str, default="0.0.0.0", help="bind address")
    sp.add_argument("--port", type=int, default=8000, help="bind port (default: 8000)")
    sp.add_argument("--reload", action="store_true", help="auto-reload on code changes")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Business directory admin backend")
    sub = ap.add_subparsers(dest="command", required=True)

    _build_google_parsers(sub)
    _build_image_parsers(sub)
    _build_management_parsers(sub)
    _build_api_key_parsers(sub)
    _build_server_parsers(sub)
    return ap


def parse_arguments(argv=None):
    """Parse command line arguments with subcommands."""
    args = build_parser().parse_args(argv)

    if getattr(args, "config", None) is not None:
        args.config = Path(args.config)
    else:
        args.config = DEFAULT_CONFIG_PATH

    return args
