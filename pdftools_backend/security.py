from __future__ import annotations

import hmac
import re
import secrets
from pathlib import Path


JOB_PREFIXES = ("cpdf", "mpdf", "zip")

_JOB_ID_RE = re.compile(r"^(?:cpdf|mpdf|zip)_[0-9a-f]{16}$")

# 128 random bits rendered as hex.
TOKEN_BYTES = 16


def new_job_id(prefix: str) -> str:
    if prefix not in JOB_PREFIXES:
        raise ValueError(f"Unknown job prefix: {prefix}")
    return f"{prefix}_{secrets.token_hex(8)}"


def normalize_job_id(job_id: str) -> str:
    """Validate a job id taken from a URL or request body.

    Job ids double as index filenames, so only the exact generated shape is
    accepted.
    """
    if not isinstance(job_id, str):
        raise ValueError("Invalid job id")
    job_id = job_id.strip().lower()
    if not _JOB_ID_RE.match(job_id):
        raise ValueError("Invalid job id")
    return job_id


def issue_token() -> str:
    """Return a fresh download token.

    Drawn from the OS CSPRNG, independent of job id and time. Uniqueness is
    probabilistic and never checked against existing jobs.
    """
    return secrets.token_hex(TOKEN_BYTES)


def tokens_match(presented: str | None, expected: str) -> bool:
    if not isinstance(presented, str) or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def is_safe_basename(name: str) -> bool:
    """Allow only simple filenames (no directories)."""
    if not isinstance(name, str) or not name:
        return False
    if name != Path(name).name:
        return False
    if "/" in name or "\\" in name:
        return False
    if name in (".", ".."):
        return False
    return True


_UNSAFE_FILENAME_CHARS_RE = re.compile(r"[^A-Za-z0-9._ ()\-]+")


def safe_filename(name: str | None, default: str = "file.pdf") -> str:
    """Reduce a client-supplied filename to something safe on disk and in headers."""
    base = Path(str(name or "").replace("\\", "/")).name
    base = _UNSAFE_FILENAME_CHARS_RE.sub("_", base).strip(" .")
    if not base or not is_safe_basename(base):
        return default
    return base[:200]


def safe_join(base_dir: Path, *parts: str) -> Path:
    """Join paths and ensure the result stays within base_dir."""
    base_dir = base_dir.resolve()
    candidate = base_dir
    for part in parts:
        candidate = candidate / part
    resolved = candidate.resolve()
    if resolved == base_dir:
        return resolved
    if base_dir not in resolved.parents:
        raise ValueError("Path traversal attempt")
    return resolved
