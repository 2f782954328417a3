"""Utility helpers for memorial_video."""

from __future__ import annotations

import hashlib
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, List

_EXIF_DT_RE = re.compile(r"^(\d{4}):(\d{2}):(\d{2}) (\d{2}):(\d{2}):(\d{2})")

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def parse_exif_datetime(value: Any) -> datetime:
    """Parse an EXIF ``YYYY:MM:DD HH:MM:SS`` string.

    Raises
    -----
    ValueError
        If the value does not follow the EXIF layout or is not a real date.
    """
    if isinstance(value, bytes):
        value = value.decode("ascii", errors="ignore")
    m = _EXIF_DT_RE.match(str(value).strip())
    if not m:
        raise ValueError(f"Invalid EXIF datetime: {value!r}")
    return datetime(*(int(g) for g in m.groups()))


def stable_hash(payload: Any, length: int = 12) -> str:
    """Hex digest of the canonical JSON form of ``payload`` (sorted keys)."""
    text = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:length]


def format_bytes(size: float) -> str:
    value = float(size)
    idx = 0
    while value > 1024 and idx < len(_SIZE_UNITS) - 1:
        value /= 1024
        idx += 1
    return f"{round(value, 2):g} {_SIZE_UNITS[idx]}"


def read_tail(path: Path, max_bytes: int = 65536) -> str:
    """Return the last ``max_bytes`` of a text file ('' if it does not exist)."""
    try:
        with path.open("rb") as fh:
            fh.seek(0, 2)
            size = fh.tell()
            fh.seek(max(0, size - max_bytes))
            data = fh.read()
    except FileNotFoundError:
        return ""
    return data.decode("utf-8", errors="replace")


def split_log_lines(text: str) -> List[str]:
    # ffmpeg terminates its periodic stats lines with '\r' rather than '\n'
    return [line for line in re.split(r"[\r\n]+", text) if line.strip()]
