"""Artifact producers: Ghostscript compression and PyPDF2 merging.

Neither validates PDF content beyond what the underlying tool rejects.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from PyPDF2 import PdfReader, PdfWriter


logger = logging.getLogger(__name__)

# Form value -> Ghostscript PDFSETTINGS preset.
COMPRESSION_PRESETS = {
    "low": "prepress",
    "medium": "printer",
    "high": "screen",
}
DEFAULT_PRESET = "printer"
DEFAULT_DPI = 150


class ProcessingError(Exception):
    pass


class CompressionError(ProcessingError):
    pass


class MergeError(ProcessingError):
    pass


@dataclass(frozen=True)
class CompressOptions:
    compression: str = "medium"
    downsample_dpi: int = DEFAULT_DPI
    remove_metadata: bool = False

    @property
    def preset(self) -> str:
        return COMPRESSION_PRESETS.get(self.compression, DEFAULT_PRESET)

    @classmethod
    def from_form(cls, compression: str | None, downsample_dpi: str | None, remove_metadata: str | None) -> "CompressOptions":
        try:
            dpi = int(str(downsample_dpi).strip())
        except (TypeError, ValueError):
            dpi = DEFAULT_DPI
        return cls(
            compression=(compression or "medium").strip().lower(),
            downsample_dpi=dpi,
            remove_metadata=str(remove_metadata).strip().lower() == "true",
        )


def gs_args(input_path: Path, output_path: Path, options: CompressOptions) -> list[str]:
    dpi = options.downsample_dpi
    args = [
        "-sDEVICE=pdfwrite",
        f"-dPDFSETTINGS=/{options.preset}",
        "-dDetectDuplicateImages=true",
        "-dCompressFonts=true",
        "-dDownsampleColorImages=true",
        f"-dColorImageResolution={dpi}",
        "-dDownsampleGrayImages=true",
        f"-dGrayImageResolution={dpi}",
        "-dDownsampleMonoImages=true",
        f"-dMonoImageResolution={dpi}",
        "-dNOPAUSE",
        "-dBATCH",
        f"-sOutputFile={output_path}",
        str(input_path),
    ]
    if options.remove_metadata:
        args.insert(0, "-dDiscardDocInfo=true")
    return args


async def compress_pdf(
    input_path: Path,
    output_path: Path,
    options: CompressOptions,
    gs_bin: str = "gs",
    timeout: float = 180.0,
) -> int:
    """Run Ghostscript on input_path. Returns the output size in bytes.

    The process is killed if it outlives `timeout` seconds.
    """
    cmd = [gs_bin, "-q", *gs_args(input_path, output_path, options)]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise CompressionError(f"Could not start Ghostscript: {e}") from e

    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise CompressionError("Ghostscript timed out") from None

    if stderr:
        logger.warning("gs: %s", stderr.decode("utf-8", errors="replace").strip())
    if proc.returncode != 0 or not output_path.is_file():
        raise CompressionError("Ghostscript failed")
    return output_path.stat().st_size


def merge_pdfs(sources: Iterable[Path], output_path: Path) -> int:
    """Concatenate every page of sources into output_path. Returns its size."""
    writer = PdfWriter()
    try:
        for source in sources:
            reader = PdfReader(str(source))
            for page in reader.pages:
                writer.add_page(page)
        with output_path.open("wb") as fp:
            writer.write(fp)
    except Exception as e:
        output_path.unlink(missing_ok=True)
        raise MergeError(f"Merge failed: {e}") from e
    return output_path.stat().st_size


def is_pdf_upload(filename: str | None, content_type: str | None) -> bool:
    if content_type and "pdf" in content_type.lower():
        return True
    return bool(filename) and filename.lower().endswith(".pdf")


class UploadTooLarge(Exception):
    def __init__(self, max_bytes: int):
        super().__init__(f"Upload exceeds {max_bytes} bytes")
        self.max_bytes = max_bytes


async def save_upload_limited(upload, dest: Path, max_bytes: int, chunk_size: int = 1024 * 1024) -> int:
    """Stream an UploadFile to dest, refusing anything over max_bytes."""
    written = 0
    try:
        with dest.open("wb") as fp:
            while True:
                chunk = await upload.read(chunk_size)
                if not chunk:
                    break
                written += len(chunk)
                if written > max_bytes:
                    raise UploadTooLarge(max_bytes)
                fp.write(chunk)
    except BaseException:
        dest.unlink(missing_ok=True)
        raise
    return written
