"""ffmpeg/ffprobe helpers: binary lookup, duration probe and an argv builder."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import ProbeFailed

PROBE_TIMEOUT_SECONDS = 30


def resolve_binary(name: str) -> Optional[str]:
    """Return the full path of an executable, or None when it is not on PATH."""
    if not name:
        return None
    if Path(name).is_absolute():
        return name if Path(name).is_file() else None
    return shutil.which(name)


def probe_duration(path: Path, ffprobe: str = "ffprobe") -> float:
    """Read a media file's duration in seconds with ffprobe.

    Raises ProbeFailed when the binary is missing, exits non-zero, times out
    or prints something that is not a float.
    """
    binary = resolve_binary(ffprobe)
    if binary is None:
        raise ProbeFailed(f"ffprobe not found: {ffprobe}")
    try:
        proc = subprocess.run(
            [
                binary,
                "-v", "error",
                "-show_entries", "format=duration",
                "-of", "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise ProbeFailed(f"ffprobe failed for {path}: {exc}") from exc
    if proc.returncode != 0 or not proc.stdout.strip():
        raise ProbeFailed(
            f"ffprobe exited {proc.returncode} for {path}",
            detail=(proc.stderr or "").strip()[-500:],
        )
    try:
        return float(proc.stdout.strip().splitlines()[0])
    except ValueError as exc:
        raise ProbeFailed(f"Unparseable ffprobe duration for {path}: {proc.stdout!r}") from exc


def fmt_seconds(value: float) -> str:
    """Format seconds for ffmpeg arguments without float noise (4.0 -> '4', 1/3 -> '0.333')."""
    text = f"{float(value):.3f}".rstrip("0").rstrip(".")
    return text or "0"


@dataclass
class FFmpegInput:
    path: str
    options: List[str] = field(default_factory=list)


@dataclass
class FFmpegCommand:
    """Ordered ffmpeg argument list.

    Inputs, the filter graph, stream maps and output options are collected as
    flag/value pairs and only serialized to argv at spawn time, so paths never
    pass through a shell.
    """

    binary: str = "ffmpeg"
    global_options: List[str] = field(default_factory=list)
    inputs: List[FFmpegInput] = field(default_factory=list)
    filters: List[str] = field(default_factory=list)
    maps: List[str] = field(default_factory=list)
    output_options: List[str] = field(default_factory=list)
    output: Optional[str] = None

    def add_global(self, *args: object) -> "FFmpegCommand":
        self.global_options.extend(str(a) for a in args)
        return self

    def add_input(self, path: Path | str, *options: object) -> int:
        """Append an input and return its ffmpeg input index."""
        self.inputs.append(FFmpegInput(path=str(path), options=[str(o) for o in options]))
        return len(self.inputs) - 1

    def add_filter(self, chain: str) -> "FFmpegCommand":
        self.filters.append(chain)
        return self

    def map(self, label: str) -> "FFmpegCommand":
        self.maps.append(label)
        return self

    def add_output_options(self, *args: object) -> "FFmpegCommand":
        self.output_options.extend(str(a) for a in args)
        return self

    def set_output(self, path: Path | str) -> "FFmpegCommand":
        self.output = str(path)
        return self

    @property
    def filter_graph(self) -> str:
        return ";".join(self.filters)

    def argv(self) -> List[str]:
        if self.output is None:
            raise ValueError("FFmpegCommand has no output path")
        args: List[str] = [self.binary, *self.global_options]
        for item in self.inputs:
            args.extend(item.options)
            args.extend(["-i", item.path])
        if self.filters:
            args.extend(["-filter_complex", self.filter_graph])
        for label in self.maps:
            args.extend(["-map", label])
        args.extend(self.output_options)
        args.append(self.output)
        return args

    def __str__(self) -> str:
        return join_argv(self.argv())


def join_argv(argv: Sequence[str]) -> str:
    return shlex.join(list(argv))
