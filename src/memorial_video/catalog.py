"""Media catalog.

Lists the selectable images, videos, audio tracks and background images from
fixed directories under the media root and resolves the ids a user picked
(file names) back to paths. Video durations are probed lazily with ffprobe.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from PIL import Image

from .errors import InvalidMediaId, ProbeFailed
from .ffmpeg import probe_duration
from .presets import REQUIREMENTS
from .utils import parse_exif_datetime

logger = logging.getLogger(__name__)

DEFAULT_VIDEO_SECONDS = 4.0
MIN_VIDEO_SECONDS = 0.1
MAX_VIDEO_SECONDS = 300.0


class MediaKind(str, Enum):
    image = "image"
    video = "video"
    audio = "audio"
    background = "background"


MEDIA_DIRS: Dict[MediaKind, str] = {
    MediaKind.image: "images",
    MediaKind.video: "videos",
    MediaKind.audio: "audio",
    MediaKind.background: "bg_images",
}

MEDIA_EXTS: Dict[MediaKind, frozenset] = {
    MediaKind.image: frozenset({".png", ".jpg", ".jpeg"}),
    MediaKind.video: frozenset({".mp4", ".mov", ".avi"}),
    MediaKind.audio: frozenset({".mp3", ".wav", ".aac"}),
    MediaKind.background: frozenset({".png", ".jpg", ".jpeg"}),
}

_PAYLOAD_KEYS = {
    MediaKind.image: "images",
    MediaKind.video: "videos",
    MediaKind.audio: "audio",
    MediaKind.background: "backgrounds",
}


@dataclass(frozen=True)
class MediaItem:
    id: str
    kind: MediaKind
    path: Path
    timestamp: datetime
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "id": self.id,
            "filename": self.path.name,
            "path": str(self.path),
            "taken": self.timestamp.isoformat(timespec="seconds"),
        }
        if self.duration is not None:
            data["duration"] = self.duration
        return data


ProbeFn = Callable[[Path], float]


def _read_photo_exif_timestamp(path: Path) -> datetime | None:
    try:
        with Image.open(path) as img:
            exif = img.getexif()
            if not exif:
                return None

            # DateTimeOriginal tag (36867) or DateTime (306)
            dts = exif.get(36867) or exif.get(306)
            if not dts:
                return None

            try:
                return parse_exif_datetime(dts)
            except ValueError:
                logger.warning("Unparseable EXIF DateTime for %s: %r", path, dts)
                return None
    except Exception as exc:
        logger.warning("Failed to read EXIF from %s: %s", path, exc)
        return None


def _file_mtime_timestamp(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime)


class MediaCatalog:
    """Read-only view over ``<media_dir>/{images,videos,audio,bg_images}``."""

    def __init__(
        self,
        media_dir: Path,
        ffprobe: str = "ffprobe",
        probe: Optional[ProbeFn] = None,
        default_video_duration: float = DEFAULT_VIDEO_SECONDS,
    ) -> None:
        self.media_dir = Path(media_dir)
        self._probe: ProbeFn = probe or (lambda p: probe_duration(p, ffprobe))
        self.default_video_duration = float(default_video_duration)
        self._durations: Dict[Path, float] = {}

    def directory(self, kind: MediaKind) -> Path:
        return self.media_dir / MEDIA_DIRS[MediaKind(kind)]

    def list(self, kind: MediaKind, probe_durations: bool = False) -> List[MediaItem]:
        """List one media kind sorted by file name.

        Video items carry a duration once it has been probed; with
        ``probe_durations`` every video is probed now.
        """
        kind = MediaKind(kind)
        directory = self.directory(kind)
        if not directory.is_dir():
            logger.debug("Media directory %s missing; treating as empty", directory)
            return []

        items: List[MediaItem] = []
        for p in sorted(directory.iterdir(), key=lambda p: p.name):
            if not _is_candidate(p, MEDIA_EXTS[kind]):
                continue
            ts: datetime | None = None
            if kind in (MediaKind.image, MediaKind.background):
                ts = _read_photo_exif_timestamp(p)
            if ts is None:
                ts = _file_mtime_timestamp(p)
            duration: Optional[float] = None
            if kind is MediaKind.video:
                duration = self.video_duration(p) if probe_durations else self._durations.get(p)
            items.append(MediaItem(id=p.name, kind=kind, path=p, timestamp=ts, duration=duration))
        return items

    def resolve(self, ids: Iterable[str], kind: MediaKind) -> List[Path]:
        """Map ids to paths in input order; an unknown id raises InvalidMediaId."""
        kind = MediaKind(kind)
        by_id = {item.id: item.path for item in self.list(kind)}
        paths: List[Path] = []
        for media_id in ids:
            path = by_id.get(media_id)
            if path is None:
                raise InvalidMediaId(kind.value, media_id)
            paths.append(path)
        return paths

    def resolve_one(self, media_id: Optional[str], kind: MediaKind) -> Optional[Path]:
        if not media_id:
            return None
        return self.resolve([media_id], kind)[0]

    def video_duration(self, path: Path) -> float:
        """Return the probed duration of a video, or the default when probing fails.

        Durations outside 0.1..300 seconds are treated as probe failures.
        """
        path = Path(path)
        cached = self._durations.get(path)
        if cached is not None:
            return cached
        duration = safe_video_duration(path, self._probe, self.default_video_duration)
        self._durations[path] = duration
        return duration

    def all_media(self) -> Dict[str, object]:
        payload: Dict[str, object] = {}
        for kind, key in _PAYLOAD_KEYS.items():
            payload[key] = [item.to_dict() for item in self.list(kind)]
        payload["requirements"] = {k: dict(v) for k, v in REQUIREMENTS.items()}
        return payload


def plausible_duration(value: float) -> bool:
    return math.isfinite(value) and MIN_VIDEO_SECONDS <= value <= MAX_VIDEO_SECONDS


def safe_video_duration(
    path: Path,
    probe: Optional[ProbeFn] = None,
    default: float = DEFAULT_VIDEO_SECONDS,
) -> float:
    """Probe a video's duration, never raising.

    A ProbeFailed from the probe, or a value outside 0.1..300 seconds, is
    logged and replaced by ``default``.
    """
    probe = probe or probe_duration
    try:
        probed = float(probe(path))
    except ProbeFailed as exc:
        logger.warning(
            "Failed to detect video duration for %s (%s); using default %ss",
            Path(path).name, exc, default,
        )
        return float(default)
    if not plausible_duration(probed):
        logger.warning(
            "Implausible duration %r for %s; using default %ss", probed, Path(path).name, default
        )
        return float(default)
    logger.debug("Video duration detected: %.3fs for %s", probed, Path(path).name)
    return probed


def _is_candidate(p: Path, exts: frozenset) -> bool:
    try:
        if not p.is_file():
            return False
        if p.suffix.lower() not in exts:
            return False
        return p.stat().st_size > 0
    except OSError:
        return False
