"""Shared pytest setup."""

import os
import tempfile

# api_server loads its config at import time and writes a default file when
# none exists; keep that out of the working tree.
os.environ.setdefault(
    "BIZDIR_CONFIG", os.path.join(tempfile.mkdtemp(prefix="bizdir-test-"), "config.yaml")
)
