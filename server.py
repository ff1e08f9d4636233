from __future__ import annotations

import logging
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Iterator, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from pdftools_backend.bundles import BundleItem, build_bundle
from pdftools_backend.config import (
    ARTIFACTS_DIR,
    COMPRESS_APP,
    CORS_ALLOWED_ORIGINS,
    FILE_TTL_MINUTES,
    GHOSTSCRIPT_BIN,
    GHOSTSCRIPT_TIMEOUT_SECONDS,
    INDEX_DIR,
    LOG_LEVEL,
    MAX_UPLOAD_BYTES,
    MERGE_APP,
    MERGE_MAX_FILE_BYTES,
    MERGE_MAX_FILES,
    RATE_LIMIT_MAX_REQUESTS,
    RATE_LIMIT_WINDOW_SECONDS,
    REAPER_INTERVAL_SECONDS,
    REVIEWS_FILENAME,
    STATS_DIR,
    STATS_FILENAME,
    UPLOADS_DIR,
)
from pdftools_backend.jobs import (
    EmptyBundleError,
    JobForbidden,
    JobNotFound,
    JobRecord,
    JobRegistry,
    iso_from_ms,
    now_ms,
    resolve_download,
)
from pdftools_backend.processing import (
    CompressionError,
    CompressOptions,
    MergeError,
    UploadTooLarge,
    compress_pdf,
    is_pdf_upload,
    merge_pdfs,
    save_upload_limited,
)
from pdftools_backend.ratelimit import RateLimiter
from pdftools_backend.reaper import Reaper
from pdftools_backend.security import new_job_id, normalize_job_id, safe_filename, safe_join
from pdftools_backend.stats import ReviewStore, StatsStore
from pdftools_backend.store import DirectoryRecordStore


logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("pdftools")

STARTED_AT = time.monotonic()

registry = JobRegistry(DirectoryRecordStore(INDEX_DIR), default_ttl=timedelta(minutes=FILE_TTL_MINUTES))
reaper = Reaper(registry, interval_seconds=REAPER_INTERVAL_SECONDS)
stats = StatsStore(STATS_DIR / STATS_FILENAME)
reviews = ReviewStore(STATS_DIR / REVIEWS_FILENAME)
rate_limiter = RateLimiter(RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS)


class ApiError(HTTPException):
    def __init__(self, status_code: int, code: str, message: str, **extra: Any):
        super().__init__(status_code=status_code, detail=message)
        self.code = code
        self.extra = extra


class ZipRequest(BaseModel):
    # Entries are checked one by one in the handler; malformed ones are skipped.
    items: Optional[list[Any]] = None


class ReviewRequest(BaseModel):
    rating: Any = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Run a sweep at startup, then start the periodic reaper.
    try:
        reaper.sweep()
    except Exception:
        logger.exception("Startup sweep failed")
    reaper.start()
    try:
        yield
    finally:
        await reaper.stop()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ApiError)
async def _api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": {"code": exc.code, "message": exc.detail, **exc.extra}},
    )


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": {"code": "internal_error", "message": "Unexpected server error."}},
    )


def _client_id(request: Request) -> str:
    # Behind a reverse proxy: first hop of X-Forwarded-For is the client.
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded.strip():
        return forwarded.split(",")[0].strip()
    return getattr(request.client, "host", "") if request.client else ""


@app.middleware("http")
async def _rate_limit(request: Request, call_next):
    if not rate_limiter.hit(_client_id(request)):
        return JSONResponse(
            status_code=429,
            content={"error": "Too Many Requests", "message": "Rate limit exceeded. Please try again later."},
        )
    return await call_next(request)


@app.middleware("http")
async def _access_log(request: Request, call_next):
    logger.info("%s %s", request.method, request.url.path)
    return await call_next(request)


# Added last so it wraps everything, including 429 responses.
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=86400,
)


def _iso_now() -> str:
    return iso_from_ms(now_ms())


def _too_large(max_bytes: int) -> ApiError:
    return ApiError(
        413,
        "file_too_large",
        "This PDF exceeds the maximum upload size.",
        maxBytes=max_bytes,
        maxMB=round(max_bytes / 1e6),
    )


def _bump(app_key: str) -> None:
    # Counting is best effort; never fail a finished job over it.
    try:
        stats.bump(app_key)
    except Exception:
        logger.exception("Stats bump failed for %s", app_key)


def _job_output(record: JobRecord) -> dict:
    return {
        "filename": record.filename,
        "bytes": record.byte_size,
        "download_url": record.download_url,
        "expires_at": iso_from_ms(record.expires_at),
    }


def _upload_path(filename: str) -> str:
    return f"{now_ms()}-{uuid.uuid4().hex[:8]}-{filename}"


@app.get("/health")
async def health() -> JSONResponse:
    return JSONResponse({"ok": True, "uptime": round(time.monotonic() - STARTED_AT, 3), "ts": _iso_now()})


# ----------------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------------


@app.post("/v1/pdf/compress")
async def compress(
    file: Optional[UploadFile] = File(None),
    compression: str = Form("medium"),
    downsample_dpi: str = Form("150"),
    remove_metadata: str = Form("false"),
) -> JSONResponse:
    if file is None or not file.filename:
        raise ApiError(400, "invalid_request", "No file uploaded")
    if not is_pdf_upload(file.filename, file.content_type):
        raise ApiError(400, "invalid_file_type", "Only .pdf files are allowed.")

    original_name = safe_filename(file.filename)
    in_path = safe_join(UPLOADS_DIR, _upload_path(original_name))
    try:
        in_size = await save_upload_limited(file, in_path, MAX_UPLOAD_BYTES)
    except UploadTooLarge:
        raise _too_large(MAX_UPLOAD_BYTES)
    logger.info("Compress start: %s (%.2f MB)", original_name, in_size / 1e6)

    options = CompressOptions.from_form(compression, downsample_dpi, remove_metadata)
    job_id = new_job_id("cpdf")
    out_name = re.sub(r"\.pdf$", "", original_name, flags=re.IGNORECASE) + "-compressed.pdf"
    out_path = safe_join(ARTIFACTS_DIR, f"{job_id}-{out_name}")

    try:
        out_size = await compress_pdf(
            in_path,
            out_path,
            options,
            gs_bin=GHOSTSCRIPT_BIN,
            timeout=GHOSTSCRIPT_TIMEOUT_SECONDS,
        )
    except CompressionError as e:
        in_path.unlink(missing_ok=True)
        out_path.unlink(missing_ok=True)
        raise ApiError(422, "processing_failed", str(e))

    try:
        record = registry.register(
            job_id,
            out_path,
            filename=out_name,
            byte_size=out_size,
            extra_paths=[in_path],
        )
    except Exception:
        # No record means nothing would ever reap these files.
        in_path.unlink(missing_ok=True)
        out_path.unlink(missing_ok=True)
        raise
    _bump(COMPRESS_APP)
    logger.info("Compress done: %s -> %s", original_name, out_name)

    ratio = 1 - (out_size / in_size) if in_size else 0.0
    return JSONResponse(
        {
            "job_id": record.job_id,
            "status": "completed",
            "input": {"filename": original_name, "bytes": in_size},
            "output": {**_job_output(record), "compression_ratio": round(ratio, 2)},
            "options": {
                "compression": options.compression,
                "downsample_dpi": options.downsample_dpi,
                "remove_metadata": options.remove_metadata,
            },
        }
    )


@app.post("/v1/pdf/merge")
async def merge(files: Optional[list[UploadFile]] = File(None, alias="files[]")) -> JSONResponse:
    files = [f for f in (files or []) if f.filename]
    if len(files) < 2:
        raise ApiError(422, "invalid_request", "Need at least 2 PDFs")
    if len(files) > MERGE_MAX_FILES:
        raise ApiError(400, "too_many_files", f"At most {MERGE_MAX_FILES} PDFs can be merged at once")
    for f in files:
        if not is_pdf_upload(f.filename, f.content_type):
            raise ApiError(415, "invalid_file_type", "Only PDF files are supported")

    saved = []
    try:
        for f in files:
            dest = safe_join(UPLOADS_DIR, _upload_path(safe_filename(f.filename)))
            try:
                await save_upload_limited(f, dest, MERGE_MAX_FILE_BYTES)
            except UploadTooLarge:
                raise _too_large(MERGE_MAX_FILE_BYTES)
            saved.append(dest)

        job_id = new_job_id("mpdf")
        out_path = safe_join(ARTIFACTS_DIR, f"{job_id}-merged.pdf")
        try:
            out_size = await run_in_threadpool(merge_pdfs, saved, out_path)
        except MergeError as e:
            raise ApiError(422, "processing_failed", str(e))
    finally:
        for path in saved:
            path.unlink(missing_ok=True)

    try:
        record = registry.register(job_id, out_path, filename="merged.pdf", byte_size=out_size)
    except Exception:
        out_path.unlink(missing_ok=True)
        raise
    _bump(MERGE_APP)
    return JSONResponse({"job_id": record.job_id, "status": "completed", "output": _job_output(record)})


# ----------------------------------------------------------------------------
# Shared download + zip endpoints (used by both apps)
# ----------------------------------------------------------------------------


def _iter_file(stream, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    with stream:
        while True:
            chunk = stream.read(chunk_size)
            if not chunk:
                break
            yield chunk


@app.get("/v1/jobs/{job_id}/download")
async def download(job_id: str, token: Optional[str] = None) -> Response:
    try:
        jid = normalize_job_id(job_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")
    try:
        dl = resolve_download(registry, jid, token)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Not found")
    except JobForbidden:
        raise HTTPException(status_code=403, detail="Forbidden")

    headers = {
        "Content-Disposition": f'attachment; filename="{dl.filename}"',
        "Content-Length": str(dl.byte_size),
        "Cache-Control": "no-store",
        "X-Content-Type-Options": "nosniff",
    }
    return StreamingResponse(_iter_file(dl.stream), media_type=dl.content_type, headers=headers)


@app.post("/v1/jobs/zip")
async def zip_jobs(payload: ZipRequest) -> JSONResponse:
    if not payload.items:
        raise ApiError(400, "invalid_request", "items required")

    items = []
    for item in payload.items:
        if not isinstance(item, dict):
            continue
        job_id, token = item.get("job_id"), item.get("token")
        if not isinstance(job_id, str) or not isinstance(token, str):
            continue
        try:
            items.append(BundleItem(job_id=normalize_job_id(job_id), token=token))
        except ValueError:
            continue

    try:
        bundle = await run_in_threadpool(build_bundle, registry, items, ARTIFACTS_DIR)
    except EmptyBundleError:
        raise ApiError(404, "not_found", "no valid files")

    record = bundle.record
    return JSONResponse(
        {
            "job_id": record.job_id,
            "status": "completed",
            "download_url": record.download_url,
            "expires_at": iso_from_ms(record.expires_at),
            "count": bundle.count,
        }
    )


# ----------------------------------------------------------------------------
# Stats & reviews
# ----------------------------------------------------------------------------


def _compress_stats() -> dict:
    s = stats.summary(COMPRESS_APP)
    return {"tool": "compress-pdf", "total_compressed": s["total"], "updated_at": s["updated_at"]}


def _merge_stats() -> dict:
    s = stats.summary(MERGE_APP)
    return {"tool": "merge-pdf", "total_merged": s["total"], "updated_at": s["updated_at"]}


def _reviews_summary(tool: str) -> dict:
    return {"tool": tool, **reviews.summary()}


@app.get("/v1/compress-pdf/stats")
async def compress_stats() -> JSONResponse:
    return JSONResponse(_compress_stats())


@app.get("/v1/merge-pdf/stats")
async def merge_stats() -> JSONResponse:
    return JSONResponse(_merge_stats())


@app.post("/v1/compress-pdf/stats/bump")
async def bump_compress_stats() -> JSONResponse:
    s = stats.bump(COMPRESS_APP)
    return JSONResponse({"ok": True, "new_total": s["total"]})


@app.post("/v1/merge-pdf/stats/bump")
async def bump_merge_stats() -> JSONResponse:
    s = stats.bump(MERGE_APP)
    return JSONResponse({"ok": True, "new_total": s["total"]})


@app.get("/v1/compress-pdf/reviews")
async def compress_reviews() -> JSONResponse:
    return JSONResponse(_reviews_summary("compress-pdf"))


# Merge shares the compress aggregate for now.
@app.get("/v1/merge-pdf/reviews")
async def merge_reviews() -> JSONResponse:
    return JSONResponse(_reviews_summary("merge-pdf"))


def _coerce_rating(value: Any) -> Any:
    # Accept 4, 4.0 and "4"; anything else is passed through and rejected.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return value


@app.post("/v1/reviews")
async def add_review(payload: ReviewRequest) -> JSONResponse:
    try:
        result = reviews.add(_coerce_rating(payload.rating))
    except ValueError as e:
        raise ApiError(400, "invalid_rating", str(e))
    return JSONResponse({"ok": True, **result})


# Backward compatibility: older frontends still call these.
@app.get("/v1/stats/summary")
async def legacy_compress_stats() -> JSONResponse:
    return JSONResponse(_compress_stats())


@app.get("/v1/mergepdf/stats/summary")
async def legacy_merge_stats() -> JSONResponse:
    return JSONResponse(_merge_stats())


@app.get("/v1/reviews/summary")
async def legacy_reviews() -> JSONResponse:
    return JSONResponse(_reviews_summary("compress-pdf"))


if __name__ == "__main__":
    # Convenience: python server.py
    import uvicorn

    port = int(os.environ.get("PORT", "4000"))
    uvicorn.run("server:app", host="127.0.0.1", port=port, reload=False)
