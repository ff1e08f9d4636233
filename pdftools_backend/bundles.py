from __future__ import annotations

import logging
import os
import zipfile
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Iterable

from .jobs import (
    KIND_ARCHIVE,
    EmptyBundleError,
    JobError,
    JobRecord,
    JobRegistry,
)
from .security import new_job_id, safe_join


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BundleItem:
    job_id: str
    token: str


@dataclass(frozen=True)
class Bundle:
    record: JobRecord
    count: int


def dedupe_name(name: str, taken: set[str]) -> str:
    """Return name, or name with " (2)", " (3)"... before the extension if taken."""
    if name not in taken:
        return name
    path = Path(name)
    stem, suffix = path.stem, path.suffix
    n = 2
    while f"{stem} ({n}){suffix}" in taken:
        n += 1
    return f"{stem} ({n}){suffix}"


def collect_bundle_sources(registry: JobRegistry, items: Iterable[BundleItem]) -> list[JobRecord]:
    """Return the records that are valid right now, in request order.

    Invalid items (unknown, wrong token, expired, file gone) are skipped.
    """
    sources: list[JobRecord] = []
    seen: set[str] = set()
    for item in items:
        try:
            record = registry.validate(item.job_id, item.token)
        except JobError as e:
            logger.debug("Skipping bundle item %s: %s", item.job_id, type(e).__name__)
            continue
        if record.job_id in seen:
            continue
        if not Path(record.artifact_path).is_file():
            logger.debug("Skipping bundle item %s: artifact missing", item.job_id)
            continue
        seen.add(record.job_id)
        sources.append(record)
    return sources


def write_bundle_archive(dest: Path, sources: list[JobRecord]) -> int:
    """Write sources into a zip at dest. Returns the number of entries written.

    The archive is built under a .part name and renamed into place only after
    the zip is closed, so dest never holds a partial archive.
    """
    part = dest.with_name(dest.name + ".part")
    taken: set[str] = set()
    written = 0
    try:
        with zipfile.ZipFile(part, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for record in sources:
                arcname = dedupe_name(record.filename, taken)
                try:
                    zf.write(record.artifact_path, arcname=arcname)
                except FileNotFoundError:
                    # Reaped between validation and packing.
                    continue
                taken.add(arcname)
                written += 1
        if written:
            os.replace(part, dest)
    finally:
        if part.exists():
            part.unlink()
    return written


def build_bundle(
    registry: JobRegistry,
    items: Iterable[BundleItem],
    output_dir: Path,
    ttl: timedelta | None = None,
) -> Bundle:
    """Package every valid item into one zip and register it as a new job.

    Source jobs keep their own expiry. Raises EmptyBundleError (and registers
    nothing) if no item is valid.
    """
    sources = collect_bundle_sources(registry, items)
    if not sources:
        raise EmptyBundleError("no valid files")

    job_id = new_job_id("zip")
    zip_path = safe_join(output_dir, f"{job_id}.zip")
    count = write_bundle_archive(zip_path, sources)
    if not count:
        raise EmptyBundleError("no valid files")

    try:
        record = registry.register(
            job_id,
            zip_path,
            ttl,
            filename=f"{job_id}.zip",
            kind=KIND_ARCHIVE,
        )
    except Exception:
        zip_path.unlink(missing_ok=True)
        raise
    return Bundle(record=record, count=count)
