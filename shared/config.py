"""Shared configuration constants used by the engine, the API and the CLI."""
from __future__ import annotations

import os
from pathlib import Path


# Project root: resolve relative to this file's location
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Data directory for the SQLite state store and exported reports.
# Override: DRIFTGUARD_DATA_DIR, DRIFTGUARD_DB_PATH
DATA_DIR = os.environ.get("DRIFTGUARD_DATA_DIR", str(_PROJECT_ROOT / "data"))
DB_PATH = os.environ.get("DRIFTGUARD_DB_PATH", str(Path(DATA_DIR) / "driftguard.db"))
EXPORT_DIR = os.environ.get("DRIFTGUARD_EXPORT_DIR", str(Path(DATA_DIR) / "exports"))

# Optional YAML settings file merged over the built-in defaults at startup
SETTINGS_FILE = os.environ.get("DRIFTGUARD_SETTINGS_FILE", "").strip()

