"""Runtime settings for the EMS dashboard.

Every value is read once from ``EMSDASH_*`` environment variables at import
time. Tests and scripts override individual attributes on this module.
"""

from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Optional

APP_NAME = "EMS Quality Dashboard"
APP_TAGLINE = "KPIs, QI campaigns and field training for EMS agencies"
BASE_DIR = Path(__file__).resolve().parent.parent
PACKAGE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"
STATIC_DIR = PACKAGE_DIR / "static"

DB_PATH = Path(os.environ.get("EMSDASH_DB_PATH", str(DATA_DIR / "emsdash.db")))
DATABASE_URL = os.environ.get("EMSDASH_DB_URL", os.environ.get("DATABASE_URL", "")).strip()
DB_BACKEND = "postgres" if DATABASE_URL.startswith(("postgres://", "postgresql://")) else "sqlite"
DB_BUSY_TIMEOUT_MS = max(1000, int(os.environ.get("EMSDASH_DB_BUSY_TIMEOUT_MS", "6000")))
DB_JOURNAL_MODE = os.environ.get("EMSDASH_DB_JOURNAL_MODE", "WAL").strip().upper()

# Without an explicit key, signed cookies only survive for the life of the process.
SECRET_KEY = os.environ.get("EMSDASH_SECRET_KEY", "").strip() or secrets.token_hex(32)
COOKIE_SECURE = os.environ.get("EMSDASH_COOKIE_SECURE", "0") == "1"
SESSION_DAYS = int(os.environ.get("EMSDASH_SESSION_DAYS", "7"))

HOST = os.environ.get("EMSDASH_HOST", os.environ.get("HOST", "127.0.0.1"))
PORT = int(os.environ.get("EMSDASH_PORT", os.environ.get("PORT", "8080")))
WSGI_THREADED = os.environ.get("EMSDASH_WSGI_THREADED", "1") == "1"

DEFAULT_ORG_NAME = os.environ.get("EMSDASH_DEFAULT_ORG_NAME", "EMS Department").strip() or "EMS Department"
DEFAULT_ORG_SLUG = os.environ.get("EMSDASH_DEFAULT_ORG_SLUG", "ems").strip().lower() or "ems"
ADMIN_EMAIL = os.environ.get("EMSDASH_ADMIN_EMAIL", "admin@example.org").strip().lower()
ADMIN_PASSWORD = os.environ.get("EMSDASH_ADMIN_PASSWORD", "ChangeMe!2026")
ADMIN_NAME = os.environ.get("EMSDASH_ADMIN_NAME", "Administrator").strip() or "Administrator"

LOG_LEVEL = os.environ.get("EMSDASH_LOG_LEVEL", "INFO").strip().upper()
SNAPSHOT_DAYS = int(os.environ.get("EMSDASH_SNAPSHOT_DAYS", "30"))
SHARE_LINK_DAYS = int(os.environ.get("EMSDASH_SHARE_LINK_DAYS", "90"))
MAX_UPLOAD_ROWS = int(os.environ.get("EMSDASH_MAX_UPLOAD_ROWS", "10000"))
UPLOAD_CHUNK_SIZE = 500

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or LOG_LEVEL), format=LOG_FORMAT)
