"""
Test configuration and fixtures
"""
import io
import os
import tempfile
from datetime import timedelta

# Point the app at a throwaway data root before anything imports config.
os.environ["PDFTOOLS_DATA_ROOT"] = tempfile.mkdtemp(prefix="pdftools-test-")
os.environ["PDFTOOLS_RATE_LIMIT_MAX"] = "1000000"
os.environ["PDFTOOLS_ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from PyPDF2 import PdfWriter

from pdftools_backend.jobs import JobRegistry
from pdftools_backend.stats import ReviewStore, StatsStore
from pdftools_backend.store import DirectoryRecordStore, MemoryRecordStore


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class UnreadableStore(MemoryRecordStore):
    """Memory store whose reads fail with PermissionError for chosen keys."""

    def __init__(self, unreadable=()):
        super().__init__()
        self.unreadable = set(unreadable)

    def get(self, key):
        if key in self.unreadable:
            raise PermissionError(f"permission denied: {key}")
        return super().get(key)


def make_pdf(pages: int = 1) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=72, height=72)
    buf = io.BytesIO()
    writer.write(buf)
    return buf.getvalue()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def registry(tmp_path, clock) -> JobRegistry:
    return JobRegistry(DirectoryRecordStore(tmp_path / "index"), default_ttl=timedelta(minutes=15), clock=clock)


@pytest.fixture
def make_artifact(tmp_path):
    """Write a file under tmp_path/artifacts and return its path."""
    root = tmp_path / "artifacts"
    root.mkdir(exist_ok=True)

    def _make(name: str, data: bytes = b"%PDF-1.4\n" + b"x" * 91):
        path = root / name
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def app_state(tmp_path, monkeypatch, clock):
    """Fresh registry/stats/reviews behind the module-level app."""
    import server

    monkeypatch.setattr(server.registry, "clock", clock)
    monkeypatch.setattr(server, "stats", StatsStore(tmp_path / "stats.json"))
    monkeypatch.setattr(server, "reviews", ReviewStore(tmp_path / "reviews.json"))
    return server


@pytest.fixture
async def client(app_state):
    transport = ASGITransport(app=app_state.app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
