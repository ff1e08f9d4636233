from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import BinaryIO, Callable, Iterable

from .security import issue_token, tokens_match
from .store import RecordExistsError, RecordStore


logger = logging.getLogger(__name__)

KIND_DOCUMENT = "document"
KIND_ARCHIVE = "archive"

CONTENT_TYPES = {
    KIND_DOCUMENT: "application/pdf",
    KIND_ARCHIVE: "application/zip",
}


class JobError(Exception):
    pass


class JobNotFound(JobError):
    pass


class JobForbidden(JobError):
    pass


class DuplicateJobError(JobError):
    pass


class EmptyBundleError(JobNotFound):
    pass


def now_ms() -> int:
    return int(time.time() * 1000)


def iso_from_ms(ms: int) -> str:
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class JobRecord:
    job_id: str
    artifact_path: str
    filename: str
    kind: str
    byte_size: int
    token: str
    created_at: int
    expires_at: int
    extra_paths: tuple[str, ...] = ()

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.kind]

    @property
    def download_url(self) -> str:
        return f"/v1/jobs/{self.job_id}/download?token={self.token}"

    def owned_paths(self) -> list[str]:
        return [self.artifact_path, *self.extra_paths]

    def to_dict(self) -> dict:
        data = asdict(self)
        data["extra_paths"] = list(self.extra_paths)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "JobRecord":
        kind = str(data["kind"])
        if kind not in CONTENT_TYPES:
            raise ValueError(f"Unknown job kind: {kind}")
        return cls(
            job_id=str(data["job_id"]),
            artifact_path=str(data["artifact_path"]),
            filename=str(data["filename"]),
            kind=kind,
            byte_size=int(data["byte_size"]),
            token=str(data["token"]),
            created_at=int(data["created_at"]),
            expires_at=int(data["expires_at"]),
            extra_paths=tuple(str(p) for p in data.get("extra_paths") or ()),
        )


def _delete_file(path: str) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not delete %s: %s", path, e)


class JobRegistry:
    """Job id -> JobRecord, one persisted record per job.

    A record is registered only once its artifact is complete on disk, and is
    read-only afterwards; the only later write is removal.
    """

    def __init__(
        self,
        store: RecordStore,
        default_ttl: timedelta,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.default_ttl = default_ttl
        self.clock = clock

    def now(self) -> int:
        return self.clock()

    def register(
        self,
        job_id: str,
        artifact_path: Path | str,
        ttl: timedelta | None = None,
        *,
        filename: str | None = None,
        kind: str = KIND_DOCUMENT,
        byte_size: int | None = None,
        extra_paths: Iterable[Path | str] = (),
    ) -> JobRecord:
        if kind not in CONTENT_TYPES:
            raise ValueError(f"Unknown job kind: {kind}")
        ttl = self.default_ttl if ttl is None else ttl
        artifact_path = Path(artifact_path)
        if byte_size is None:
            byte_size = artifact_path.stat().st_size

        created_at = self.now()
        record = JobRecord(
            job_id=job_id,
            artifact_path=str(artifact_path),
            filename=filename or artifact_path.name,
            kind=kind,
            byte_size=int(byte_size),
            token=issue_token(),
            created_at=created_at,
            expires_at=created_at + int(ttl.total_seconds() * 1000),
            extra_paths=tuple(str(p) for p in extra_paths),
        )
        try:
            self.store.create(job_id, record.to_dict())
        except RecordExistsError:
            raise DuplicateJobError(f"Job {job_id} already exists") from None
        logger.info("Registered job %s (%s, %d bytes)", job_id, record.kind, record.byte_size)
        return record

    def lookup(self, job_id: str) -> JobRecord:
        try:
            data = self.store.get(job_id)
        except (KeyError, ValueError):
            # ValueError covers both bad keys and undecodable JSON.
            raise JobNotFound(job_id) from None
        try:
            return JobRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Unreadable job record %s: %s", job_id, e)
            raise JobNotFound(job_id) from None

    def job_ids(self) -> list[str]:
        return self.store.keys()

    def is_expired(self, record: JobRecord, now: int | None = None) -> bool:
        now = self.now() if now is None else now
        return now > record.expires_at

    def validate(self, job_id: str, token: str | None) -> JobRecord:
        """Check existence, token and expiry, in that order.

        A wrong token and an expired one raise the same JobForbidden so callers
        cannot tell them apart.
        """
        record = self.lookup(job_id)
        if not tokens_match(token, record.token):
            raise JobForbidden("Forbidden")
        if self.is_expired(record):
            raise JobForbidden("Forbidden")
        return record

    def remove(self, job_id: str) -> bool:
        """Delete a job's files and its record. Never raises.

        Returns True if a record was deleted.
        """
        try:
            record = self.lookup(job_id)
        except JobNotFound:
            record = None
        except OSError as e:
            logger.warning("Could not read job record %s: %s", job_id, e)
            record = None
        if record is not None:
            for path in record.owned_paths():
                _delete_file(path)
        try:
            return self.store.delete(job_id)
        except (OSError, ValueError) as e:
            logger.warning("Could not delete job record %s: %s", job_id, e)
            return False


@dataclass(frozen=True)
class Download:
    stream: BinaryIO
    content_type: str
    filename: str
    byte_size: int


def resolve_download(registry: JobRegistry, job_id: str, token: str | None) -> Download:
    """Validate a download request and open the artifact for streaming.

    Tokens are reusable until expiry; nothing is consumed or extended here.
    """
    record = registry.validate(job_id, token)
    try:
        stream = open(record.artifact_path, "rb")
    except OSError:
        # Lost a race with the reaper, or the file was removed externally.
        raise JobNotFound(job_id) from None
    byte_size = os.fstat(stream.fileno()).st_size
    return Download(
        stream=stream,
        content_type=record.content_type,
        filename=record.filename,
        byte_size=byte_size,
    )
