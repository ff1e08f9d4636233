"""Key-value storage for small JSON records.

The job registry only needs five operations (create, put, get, delete, keys), so
storage mechanics live behind `RecordStore` and the lifecycle logic never
touches files directly. `DirectoryRecordStore` keeps one JSON file per key;
`MemoryRecordStore` backs tests and single-run tools.
"""
from __future__ import annotations

import json
import os
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from .security import safe_join


class RecordExistsError(Exception):
    pass


class RecordStore(ABC):
    @abstractmethod
    def create(self, key: str, record: dict[str, Any]) -> None:
        """Store a new record; raise RecordExistsError if the key is taken."""

    @abstractmethod
    def put(self, key: str, record: dict[str, Any]) -> None:
        """Replace the whole record stored under key."""

    @abstractmethod
    def get(self, key: str) -> dict[str, Any]:
        """Return the record or raise KeyError."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a record. Returns False when it was already gone."""

    @abstractmethod
    def keys(self) -> list[str]:
        pass


def _temp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to a temp file next to path, then rename over it.

    Readers see either the old or the new document, never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _temp_sibling(path)
    try:
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


class DirectoryRecordStore(RecordStore):
    """One `<key>.json` file per record inside a directory."""

    suffix = ".json"

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return safe_join(self.root, f"{key}{self.suffix}")

    def create(self, key: str, record: dict[str, Any]) -> None:
        path = self._path(key)
        tmp = _temp_sibling(path)
        try:
            tmp.write_text(json.dumps(record, indent=2, sort_keys=True), encoding="utf-8")
            # link() refuses to overwrite, so publish and duplicate check are one step.
            try:
                os.link(tmp, path)
            except FileExistsError:
                raise RecordExistsError(key) from None
        finally:
            if tmp.exists():
                tmp.unlink()

    def put(self, key: str, record: dict[str, Any]) -> None:
        write_json_atomic(self._path(key), record)

    def get(self, key: str) -> dict[str, Any]:
        try:
            text = self._path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            raise KeyError(key) from None
        return json.loads(text)

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return False
        return True

    def keys(self) -> list[str]:
        if not self.root.exists():
            return []
        found = []
        for child in self.root.iterdir():
            name = child.name
            if name.startswith(".") or not name.endswith(self.suffix):
                continue
            if not child.is_file():
                continue
            found.append(name[: -len(self.suffix)])
        return sorted(found)


class MemoryRecordStore(RecordStore):
    def __init__(self):
        self._records: dict[str, str] = {}

    def create(self, key: str, record: dict[str, Any]) -> None:
        if key in self._records:
            raise RecordExistsError(key)
        self._records[key] = json.dumps(record)

    def put(self, key: str, record: dict[str, Any]) -> None:
        self._records[key] = json.dumps(record)

    def get(self, key: str) -> dict[str, Any]:
        return json.loads(self._records[key])

    def delete(self, key: str) -> bool:
        return self._records.pop(key, None) is not None

    def keys(self) -> list[str]:
        return sorted(self._records)
