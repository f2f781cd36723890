from __future__ import annotations

import os
from pathlib import Path

# ---------------------------------------------------------------------------
# Project paths
# ---------------------------------------------------------------------------

# Root of the project (repo root)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Data directory (local snapshot copies live here)
DATA_DIR = PROJECT_ROOT / "data"

# ---------------------------------------------------------------------------
# App identity
# ---------------------------------------------------------------------------

APP_NAME = "Farm Operations Copilot"
APP_VERSION = "0.1.0"

LOG_LEVEL = os.getenv("FARM_COPILOT_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _env_int(name: str, default: int) -> int:
    """Integer environment setting; blank or non-numeric values fall back to `default`."""
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Snapshot source
#
# The copilot never talks to the live document store. It reads a JSON
# snapshot produced by the snapshot build job, either from a local file or
# from an HTTP(S) URL. SNAPSHOT_FILE wins when both are set.
#
# Expected JSON shape (any of):
#   { "data": { "__collections__": { "farms": {...}, "fields": {...}, ... } } }
#   { "__collections__": { ... } }
#   { "farms": {...}, "fields": {...}, ... }
# ---------------------------------------------------------------------------

SNAPSHOT_FILE = os.getenv("SNAPSHOT_FILE", "").strip()
SNAPSHOT_URL = os.getenv("SNAPSHOT_URL", "").strip()

SNAPSHOT_TIMEOUT_SECONDS = _env_int("SNAPSHOT_TIMEOUT_SECONDS", 60)

# ---------------------------------------------------------------------------
# Answer shaping
# ---------------------------------------------------------------------------

# Default number of lines shown before a "show more" continuation kicks in.
# Clamped to [10, 80] by the pagination builder.
PAGE_SIZE_DEFAULT = _env_int("PAGE_SIZE_DEFAULT", 25)
