"""Log-based progress estimation for a running ffmpeg encode."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterable, Optional

from .utils import read_tail, split_log_lines

_TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2})(?:\.(\d+))?")

# Reported while ffmpeg has not produced a log yet (just launched).
STARTING_PROGRESS = 5
# Reported once the log has content but no time= token (still initialising).
INITIALIZING_PROGRESS = 8
MAX_RUNNING_PROGRESS = 99
TAIL_LINES = 50


def parse_time_token(line: str) -> Optional[float]:
    """Return the last ``time=HH:MM:SS.ms`` value in ``line`` as seconds."""
    matches = _TIME_RE.findall(line)
    if not matches:
        return None
    hours, minutes, seconds, frac = matches[-1]
    value = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if frac:
        value += int(frac) / (10 ** len(frac))
    return float(value)


def latest_encoded_seconds(lines: Iterable[str]) -> Optional[float]:
    for line in reversed(list(lines)):
        value = parse_time_token(line)
        if value is not None:
            return value
    return None


def estimate_progress(log_path: Path, expected_duration: float) -> int:
    """Estimate completion percentage (5..99) from the tail of an ffmpeg log.

    100 is never returned: only the job runner reports completion, after it
    has confirmed the output file.
    """
    text = read_tail(Path(log_path))
    if not text.strip():
        return STARTING_PROGRESS

    lines = split_log_lines(text)[-TAIL_LINES:]
    seconds = latest_encoded_seconds(lines)
    if seconds is None or seconds <= 0 or expected_duration <= 0:
        return INITIALIZING_PROGRESS

    pct = int(seconds / float(expected_duration) * 100)
    return max(1, min(pct, MAX_RUNNING_PROGRESS))
