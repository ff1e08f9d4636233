from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .store import write_json_atomic


logger = logging.getLogger(__name__)

RATINGS = ("1", "2", "3", "4", "5")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_json(path: Path) -> dict | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except ValueError as e:
        logger.warning("Ignoring unreadable %s: %s", path.name, e)
        return None
    return data if isinstance(data, dict) else None


class StatsStore:
    """Per-app usage counters kept in one JSON file: {app: {total, updated_at}}."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read_all(self) -> dict:
        return _read_json(self.path) or {}

    def summary(self, app: str) -> dict:
        entry = self._read_all().get(app) or {}
        return {
            "app": app,
            "total": int(entry.get("total") or 0),
            "updated_at": entry.get("updated_at") or _now_iso(),
        }

    def bump(self, app: str) -> dict:
        data = self._read_all()
        entry = data.get(app) or {}
        entry["total"] = int(entry.get("total") or 0) + 1
        entry["updated_at"] = _now_iso()
        data[app] = entry
        write_json_atomic(self.path, data)
        return {"app": app, "total": entry["total"], "updated_at": entry["updated_at"]}


class ReviewStore:
    """Star-rating aggregate: count, sum and a 1..5 distribution."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _read(self) -> dict:
        data = _read_json(self.path) or {}
        distribution = data.get("distribution") or {}
        return {
            "count": int(data.get("count") or 0),
            "sum": int(data.get("sum") or 0),
            "distribution": {r: int(distribution.get(r) or 0) for r in RATINGS},
            "updated_at": data.get("updated_at") or _now_iso(),
        }

    @staticmethod
    def _average(data: dict) -> float:
        if not data["count"]:
            return 0.0
        return round(data["sum"] / data["count"], 2)

    def summary(self) -> dict:
        data = self._read()
        return {
            "reviewCount": data["count"],
            "ratingValue": self._average(data),
            "distribution": data["distribution"],
            "updated_at": data["updated_at"],
        }

    def add(self, rating: object) -> dict:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValueError("rating must be 1..5")
        data = self._read()
        data["count"] += 1
        data["sum"] += rating
        data["distribution"][str(rating)] += 1
        data["updated_at"] = _now_iso()
        write_json_atomic(self.path, data)
        return {"reviewCount": data["count"], "ratingValue": self._average(data)}
