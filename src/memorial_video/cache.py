"""Output cache, sidecar metadata and generation status.

Rendered videos live at ``<cache_dir>/<cache_key>.mp4`` next to a JSON
sidecar describing the selection that produced them. A cached video is valid
for ``ttl_seconds`` after its modification time; expired files are removed
when they are looked up or by an explicit ``sweep``.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .selection import Selection
from .store import StatusStore
from .utils import stable_hash

logger = logging.getLogger(__name__)

STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

KEY_PREFIX = "memorial_video"
DEFAULT_TTL_SECONDS = 24 * 3600
DEFAULT_STATUS_TTL_SECONDS = 3600

_KEY_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class CacheEntry:
    cache_key: str
    path: Path
    url: str
    size: int
    created: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "cache_key": self.cache_key,
            "filename": self.path.name,
            "url": self.url,
            "size": self.size,
            "created": self.created,
        }
        for key, value in self.metadata.items():
            data.setdefault(key, value)
        return data


def is_valid_key(cache_key: str) -> bool:
    return bool(cache_key) and _KEY_RE.match(cache_key) is not None


class CacheManager:
    def __init__(
        self,
        cache_dir: Path,
        store: StatusStore,
        cache_url: str = "/cache/",
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        status_ttl_seconds: float = DEFAULT_STATUS_TTL_SECONDS,
        clock=time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.store = store
        self.cache_url = cache_url if cache_url.endswith("/") else cache_url + "/"
        self.ttl_seconds = float(ttl_seconds)
        self.status_ttl_seconds = float(status_ttl_seconds)
        self._clock = clock

    @property
    def temp_dir(self) -> Path:
        return self.cache_dir / "temp"

    def ensure_dirs(self) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)

    # -- keys and paths -------------------------------------------------

    def fingerprint(self, selection: Selection) -> str:
        """Stable key over template, ordered ids, audio, background and settings."""
        return f"{KEY_PREFIX}_{selection.template}_{stable_hash(selection.to_dict())}"

    def video_path(self, cache_key: str) -> Path:
        return self.cache_dir / f"{cache_key}.mp4"

    def metadata_path(self, cache_key: str) -> Path:
        return self.cache_dir / f"{cache_key}.json"

    def video_url(self, video_path: Path) -> str:
        return self.cache_url + Path(video_path).name

    # -- cached output ---------------------------------------------------

    def _expired(self, path: Path) -> bool:
        return (self._clock() - path.stat().st_mtime) >= self.ttl_seconds

    def get_cached(self, cache_key: str) -> Optional[Path]:
        """Return the cached video if it exists and is younger than the TTL.

        An expired video is deleted together with its sidecar.
        """
        if not is_valid_key(cache_key):
            return None
        path = self.video_path(cache_key)
        try:
            if not path.is_file() or path.stat().st_size == 0:
                return None
            if not self._expired(path):
                return path
        except FileNotFoundError:
            return None
        logger.info("Cached video %s expired; removing", path.name)
        self.remove_output(cache_key)
        return None

    def remove_output(self, cache_key: str) -> bool:
        removed = False
        for path in (self.video_path(cache_key), self.metadata_path(cache_key)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
        return removed

    # -- status ------------------------------------------------------------

    def _status_record(self, status: str, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        return {"status": status, "timestamp": self._clock(), "data": dict(data or {})}

    def get_status(self, cache_key: str) -> Optional[Dict[str, Any]]:
        return self.store.get(f"gen:{cache_key}")

    def set_status(self, cache_key: str, status: str, data: Optional[Dict[str, Any]] = None) -> None:
        self.store.set(f"gen:{cache_key}", self._status_record(status, data), self.status_ttl_seconds)

    def claim_status(self, cache_key: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Atomically mark ``cache_key`` as generating unless a record exists."""
        return self.store.add(
            f"gen:{cache_key}", self._status_record(STATUS_GENERATING, data), self.status_ttl_seconds
        )

    def clear_status(self, cache_key: str) -> None:
        self.store.delete(f"gen:{cache_key}")

    def remember_latest(self, template: str, cache_key: str) -> None:
        self.store.set(f"latest:{template}", {"cache_key": cache_key}, self.status_ttl_seconds)

    def latest_key(self, template: str) -> Optional[str]:
        record = self.store.get(f"latest:{template}")
        return record.get("cache_key") if record else None

    # -- metadata -----------------------------------------------------------

    def save_metadata(self, cache_key: str, metadata: Dict[str, Any]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        payload = dict(metadata)
        payload.setdefault("generated_at", self._clock())
        self.metadata_path(cache_key).write_text(
            json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8"
        )

    def load_metadata(self, cache_key: str) -> Optional[Dict[str, Any]]:
        path = self.metadata_path(cache_key)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as exc:
            logger.warning("Corrupt metadata %s: %s", path, exc)
            return None
        return data if isinstance(data, dict) else None

    def update_metadata(self, cache_key: str, **fields: Any) -> None:
        metadata = self.load_metadata(cache_key) or {}
        metadata.update(fields)
        self.save_metadata(cache_key, metadata)

    # -- history ------------------------------------------------------------

    def list_all(self) -> List[CacheEntry]:
        if not self.cache_dir.is_dir():
            return []
        entries: List[CacheEntry] = []
        for path in self.cache_dir.glob("*.mp4"):
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            cache_key = path.stem
            entries.append(
                CacheEntry(
                    cache_key=cache_key,
                    path=path,
                    url=self.video_url(path),
                    size=stat.st_size,
                    created=stat.st_mtime,
                    metadata=self.load_metadata(cache_key) or {},
                )
            )
        entries.sort(key=lambda e: e.created, reverse=True)
        return entries

    def delete(self, cache_key: str) -> Dict[str, Any]:
        if not is_valid_key(cache_key):
            return {"success": False, "message": "Invalid cache key"}
        if self.remove_output(cache_key):
            logger.info("Deleted cached video %s", cache_key)
            return {"success": True, "message": "Video deleted successfully"}
        return {"success": False, "message": "Video not found"}

    def sweep(self) -> int:
        """Delete cache and temp files older than the TTL. Returns the number removed."""
        deleted = 0
        for directory in (self.cache_dir, self.temp_dir):
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                try:
                    if not path.is_file() or not self._expired(path):
                        continue
                    path.unlink()
                    deleted += 1
                except FileNotFoundError:
                    continue
        if deleted:
            logger.info("Swept %d expired cache files", deleted)
        return deleted

    def cache_size(self) -> int:
        if not self.cache_dir.is_dir():
            return 0
        return sum(p.stat().st_size for p in self.cache_dir.iterdir() if p.is_file())
