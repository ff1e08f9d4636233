from __future__ import annotations

import os
from pathlib import Path


# Root directory for uploads, produced artifacts, the job index and stats data.
# Default: project-local ./var for easier inspection and cleanup.
# Override with env var PDFTOOLS_DATA_ROOT.
_root_raw = os.environ.get("PDFTOOLS_DATA_ROOT")
if _root_raw and _root_raw.strip():
    DATA_ROOT = Path(_root_raw)
else:
    # pdftools_backend/ -> project root
    DATA_ROOT = Path(__file__).resolve().parent.parent / "var"
DATA_ROOT = DATA_ROOT.resolve()

UPLOADS_DIR = DATA_ROOT / "uploads"
ARTIFACTS_DIR = DATA_ROOT / "tmp"
INDEX_DIR = ARTIFACTS_DIR / "index"
STATS_DIR = DATA_ROOT / "data"

for _dir in (UPLOADS_DIR, ARTIFACTS_DIR, INDEX_DIR, STATS_DIR):
    _dir.mkdir(parents=True, exist_ok=True)

# How long a produced file stays downloadable.
FILE_TTL_MINUTES = float(os.environ.get("PDFTOOLS_FILE_TTL_MIN", "15"))

# How often the reaper scans the job index for expired jobs.
REAPER_INTERVAL_SECONDS = float(os.environ.get("PDFTOOLS_REAPER_INTERVAL_SECONDS", "60"))

MB = 1024 * 1024

# Upload limits (align with the reverse proxy's request body limit).
MAX_UPLOAD_MB = int(os.environ.get("PDFTOOLS_MAX_UPLOAD_MB", "100"))
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * MB
MERGE_MAX_FILES = int(os.environ.get("PDFTOOLS_MERGE_MAX_FILES", "50"))
MERGE_MAX_FILE_BYTES = int(os.environ.get("PDFTOOLS_MERGE_MAX_FILE_MB", "50")) * MB

# Ghostscript binary and its hard wall-clock limit.
GHOSTSCRIPT_BIN = os.environ.get("PDFTOOLS_GS_BIN", "gs")
GHOSTSCRIPT_TIMEOUT_SECONDS = float(os.environ.get("PDFTOOLS_GS_TIMEOUT_SECONDS", "180"))

# Fixed-window rate limit per client address.
RATE_LIMIT_MAX_REQUESTS = int(os.environ.get("PDFTOOLS_RATE_LIMIT_MAX", "100"))
RATE_LIMIT_WINDOW_SECONDS = float(os.environ.get("PDFTOOLS_RATE_LIMIT_WINDOW_SECONDS", str(15 * 60)))

ENVIRONMENT = os.environ.get("PDFTOOLS_ENV", "development").strip().lower()
LOG_LEVEL = os.environ.get("PDFTOOLS_LOG_LEVEL", "INFO").upper()

CORS_ALLOWED_ORIGINS = [
    "https://compresspdf.co.za",
    "https://www.compresspdf.co.za",
    "https://mergepdf.co.za",
    "https://www.mergepdf.co.za",
    "https://merge-pdf-react.vercel.app",
]
if ENVIRONMENT != "production":
    # Vite dev server.
    CORS_ALLOWED_ORIGINS += ["http://localhost:5173", "http://127.0.0.1:5173"]

# Stats app keys.
COMPRESS_APP = "compresspdf"
MERGE_APP = "mergepdf"

STATS_FILENAME = "stats.json"
REVIEWS_FILENAME = "reviews.json"
