"""Test configuration to ensure local `src/` is discoverable during tests."""

from __future__ import annotations

import shutil
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Prepend the project's `src/` directory so local package modules are used
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def ffmpeg_available() -> bool:
    """Return True when both `ffmpeg` and `ffprobe` are available on PATH."""
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def make_image(path: Path, size=(64, 96), color=(120, 80, 40)) -> Path:
    from PIL import Image

    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path)
    return path


def make_file(path: Path, data: bytes = b"\x00" * 16) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    return path


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    """Media root with 20 images, 3 videos, 1 audio track and 1 background."""
    root = tmp_path / "media"
    for i in range(20):
        make_image(root / "images" / f"img_{i:02d}.jpg", color=(10 * i, 40, 90))
    for i in range(3):
        make_file(root / "videos" / f"clip_{i}.mp4")
    make_file(root / "audio" / "song.mp3")
    make_image(root / "bg_images" / "paper.png", size=(32, 32))
    return root


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeProcess:
    """Stands in for subprocess.Popen; ``finish`` simulates ffmpeg exiting."""

    _next_pid = 40000

    def __init__(self, argv: List[str], **kwargs) -> None:
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = argv
        self.kwargs = kwargs
        self.returncode: Optional[int] = None

    def poll(self) -> Optional[int]:
        return self.returncode

    def finish(self, returncode: int = 0) -> None:
        self.returncode = returncode


class FakePopen:
    def __init__(self) -> None:
        self.calls: List[FakeProcess] = []
        self.by_output: Dict[str, FakeProcess] = {}

    def __call__(self, argv, **kwargs) -> FakeProcess:
        proc = FakeProcess(list(argv), **kwargs)
        self.calls.append(proc)
        self.by_output[argv[-1]] = proc
        return proc


@pytest.fixture
def fake_popen() -> FakePopen:
    return FakePopen()
