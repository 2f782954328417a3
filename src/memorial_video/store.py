"""Keyed transient status store.

Generation status lives behind the small ``StatusStore`` interface instead of
global state. Both implementations expire entries after a per-entry TTL and
offer ``add`` (set-if-absent), which the job runner uses to claim a cache key.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class StatusStore(Protocol):
    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None: ...

    def add(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> bool: ...

    def delete(self, key: str) -> None: ...


def _expiry(clock: Clock, ttl: Optional[float]) -> Optional[float]:
    return None if ttl is None else clock() + float(ttl)


class MemoryStatusStore:
    """In-process store; suitable when one long-lived process serves every request."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[Dict[str, Any], Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._live(key)
            return json.loads(json.dumps(value)) if value is not None else None

    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (json.loads(json.dumps(value)), _expiry(self._clock, ttl))

    def add(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (json.loads(json.dumps(value)), _expiry(self._clock, ttl))
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


def _sanitize_key(key: str) -> str:
    # Keep only safe characters
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in key)


class FileStatusStore:
    """One JSON file per key; shared by every process using the same directory.

    ``set`` replaces the file atomically. ``add`` hard-links a fully written
    temp file into place, which fails if the key already exists, so readers
    never observe a partial record.
    """

    def __init__(self, directory: Path, clock: Clock = time.time) -> None:
        self.directory = Path(directory)
        self._clock = clock

    def _path(self, key: str) -> Path:
        return self.directory / f"{_sanitize_key(key)}.json"

    def _write_temp(self, value: Dict[str, Any], ttl: Optional[float]) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        record = {"value": value, "expires_at": _expiry(self._clock, ttl)}
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp_", suffix=".json")
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(record, fh)
        return Path(tmp)

    def _read(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable status record %s: %s", path, exc)
            return None
        expires_at = record.get("expires_at")
        if expires_at is not None and self._clock() >= float(expires_at):
            path.unlink(missing_ok=True)
            return None
        return record.get("value")

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read(self._path(key))

    def set(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> None:
        tmp = self._write_temp(value, ttl)
        os.replace(tmp, self._path(key))

    def add(self, key: str, value: Dict[str, Any], ttl: Optional[float] = None) -> bool:
        path = self._path(key)
        tmp = self._write_temp(value, ttl)
        try:
            for _ in range(2):
                try:
                    os.link(tmp, path)
                    return True
                except FileExistsError:
                    # An expired record is dropped by _read; retry once.
                    if self._read(path) is not None:
                        return False
            return False
        finally:
            tmp.unlink(missing_ok=True)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
