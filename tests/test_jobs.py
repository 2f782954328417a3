"""Tests for the background job runner."""

from __future__ import annotations

import os
import subprocess
import sys
import textwrap
import time
from pathlib import Path

import pytest

from memorial_video.cache import CacheManager
from memorial_video.errors import ProcessSpawnFailed
from memorial_video import jobs
from memorial_video.jobs import JobHandle, JobRunner, PidFileJobHandle, StartOutcome
from memorial_video.store import FileStatusStore, MemoryStatusStore

KEY = "memorial_video_classic_0123456789ab"

FAKE_FFMPEG_OK = textwrap.dedent(
    """
    import sys
    out = sys.argv[1]
    sys.stderr.write("frame=  30 fps=30 time=00:00:01.00 bitrate=N/A speed=1x\\r")
    with open(out, "wb") as fh:
        fh.write(b"\\x00" * 2048)
    sys.stderr.write("video:1kB audio:1kB subtitle:0kB muxing overhead: 0.5%\\n")
    """
)

FAKE_FFMPEG_FAIL = textwrap.dedent(
    """
    import sys
    sys.stderr.write("img_00.jpg: No such file or directory\\n")
    sys.exit(1)
    """
)


@pytest.fixture
def cache(tmp_path: Path, clock) -> CacheManager:
    return CacheManager(tmp_path / "cache", MemoryStatusStore(clock=clock), clock=clock)


def _dead_pid() -> int:
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait()
    return proc.pid


def test_poll_without_status_is_idle(cache: CacheManager) -> None:
    assert JobRunner(cache).poll(KEY) == {"status": "idle", "progress": 0}


def test_real_process_completes(cache: CacheManager) -> None:
    runner = JobRunner(cache)
    output = cache.video_path(KEY)
    argv = [sys.executable, "-c", FAKE_FFMPEG_OK, str(output)]

    result = runner.start(KEY, argv, output, expected_duration=51.0)
    assert result.outcome is StartOutcome.STARTED
    assert runner.pid_path(KEY).read_text(encoding="utf-8") == str(result.pid)
    assert sys.executable in runner.command_path(KEY).read_text(encoding="utf-8")

    final = runner.wait(KEY, timeout=30, interval=0.05)

    assert final == {"status": "completed", "progress": 100, "video_url": f"/cache/{KEY}.mp4"}
    record = cache.get_status(KEY)
    assert record["data"]["file_size"] == 2048
    assert record["data"]["video_path"] == str(output)
    assert cache.load_metadata(KEY)["video_url"] == f"/cache/{KEY}.mp4"
    for path in (runner.log_path(KEY), runner.command_path(KEY), runner.pid_path(KEY)):
        assert not path.exists()
    # completed is sticky
    assert runner.poll(KEY)["status"] == "completed"


def test_real_process_failure(cache: CacheManager) -> None:
    runner = JobRunner(cache)
    output = cache.video_path(KEY)
    runner.start(KEY, [sys.executable, "-c", FAKE_FFMPEG_FAIL], output, expected_duration=51.0)

    final = runner.wait(KEY, timeout=30, interval=0.05)

    assert final["status"] == "failed"
    assert "exited with status 1" in final["error"]
    data = cache.get_status(KEY)["data"]
    assert "No such file or directory" in data["log_tail"]
    assert len(data["log_tail"]) <= 2000
    assert not runner.log_path(KEY).exists()


def test_second_start_is_already_in_progress(cache: CacheManager, fake_popen) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)

    first = runner.start(KEY, ["ffmpeg", str(output)], output, 51.0)
    second = runner.start(KEY, ["ffmpeg", str(output)], output, 51.0)

    assert first.started
    assert second.outcome is StartOutcome.ALREADY_IN_PROGRESS
    assert len(fake_popen.calls) == 1
    kwargs = fake_popen.calls[0].kwargs
    assert kwargs["start_new_session"] is True
    assert kwargs["stderr"] is subprocess.STDOUT
    assert kwargs["stdin"] is subprocess.DEVNULL


def test_spawn_failure_marks_failed(cache: CacheManager) -> None:
    def broken_popen(argv, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", argv[0])

    runner = JobRunner(cache, popen=broken_popen)
    output = cache.video_path(KEY)
    with pytest.raises(ProcessSpawnFailed):
        runner.start(KEY, ["/missing/ffmpeg", str(output)], output, 51.0)

    assert cache.get_status(KEY)["status"] == "failed"
    assert runner.poll(KEY)["status"] == "failed"
    assert not runner.pid_path(KEY).exists()


def test_terminal_status_can_be_restarted(cache: CacheManager, fake_popen) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)
    cache.set_status(KEY, "failed", {"error": "old"})

    assert runner.start(KEY, ["ffmpeg", str(output)], output, 51.0).started
    assert cache.get_status(KEY)["status"] == "generating"


def test_progress_is_non_decreasing(cache: CacheManager, fake_popen) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)
    runner.start(KEY, ["ffmpeg", str(output)], output, 50.0)
    log = runner.log_path(KEY)

    assert runner.poll(KEY) == {"status": "generating", "progress": 5}
    log.write_text("time=00:00:25.00\r", encoding="utf-8")
    assert runner.poll(KEY)["progress"] == 50
    log.write_text("time=00:00:10.00\r", encoding="utf-8")
    assert runner.poll(KEY)["progress"] == 50
    assert cache.get_status(KEY)["data"]["progress"] == 50


def test_exit_without_output_fails(cache: CacheManager, fake_popen) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)
    runner.start(KEY, ["ffmpeg", str(output)], output, 50.0)
    fake_popen.calls[0].finish(0)

    result = runner.poll(KEY)

    assert result["status"] == "failed"
    assert "missing or empty" in result["error"]


def test_pid_handle_detects_dead_process(tmp_path: Path) -> None:
    assert PidFileJobHandle(os.getpid(), tmp_path / "x.log").is_alive() is True
    assert PidFileJobHandle(_dead_pid(), tmp_path / "x.log").is_alive() is False
    assert PidFileJobHandle(None, tmp_path / "x.log").is_alive() is False


def _started_elsewhere(tmp_path: Path, clock, fake_popen, log_text: str):
    """Start a job in one runner and return a second runner sharing only the status files."""
    # log mtimes are wall-clock times
    clock.now = time.time()
    store_dir = tmp_path / "cache" / "status"
    owner_cache = CacheManager(tmp_path / "cache", FileStatusStore(store_dir, clock=clock), clock=clock)
    owner = JobRunner(owner_cache, popen=fake_popen)
    output = owner_cache.video_path(KEY)
    owner.start(KEY, ["ffmpeg", str(output)], output, 50.0)

    record = owner_cache.get_status(KEY)
    owner_cache.set_status(KEY, "generating", dict(record["data"], pid=_dead_pid()))
    owner.log_path(KEY).write_text(log_text, encoding="utf-8")
    output.write_bytes(b"\x00" * 4096)

    other_cache = CacheManager(tmp_path / "cache", FileStatusStore(store_dir, clock=clock), clock=clock)
    return JobRunner(other_cache, marker_grace_seconds=30, clock=clock)


def test_pid_handle_with_marker_completes(tmp_path: Path, clock, fake_popen) -> None:
    other = _started_elsewhere(tmp_path, clock, fake_popen, "time=00:00:50.00\rmuxing overhead: 0.3%\n")
    assert other.poll(KEY)["status"] == "completed"


def test_pid_handle_without_marker_waits_for_grace(tmp_path: Path, clock, fake_popen) -> None:
    other = _started_elsewhere(tmp_path, clock, fake_popen, "time=00:00:49.00\r")
    log_mtime = other.log_path(KEY).stat().st_mtime

    clock.now = log_mtime + 5
    assert other.poll(KEY)["status"] == "generating"

    clock.now = log_mtime + 31
    assert other.poll(KEY)["status"] == "completed"


def test_concurrent_completion_is_not_reverted(cache: CacheManager, fake_popen, monkeypatch) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)
    runner.start(KEY, ["ffmpeg", str(output)], output, 50.0)
    seen = {}

    def finish_during_estimate(log_path, expected):
        # a second poller observes the exit while this one is still reading the log
        output.write_bytes(b"\x00" * 2048)
        fake_popen.calls[0].finish(0)
        seen["other"] = runner.poll(KEY)
        return 50

    monkeypatch.setattr(jobs, "estimate_progress", finish_during_estimate)

    result = runner.poll(KEY)

    assert seen["other"]["status"] == "completed"
    assert result["status"] == "completed"
    assert cache.get_status(KEY)["status"] == "completed"


def test_failed_status_is_not_reverted(cache: CacheManager, fake_popen, monkeypatch) -> None:
    runner = JobRunner(cache, popen=fake_popen)
    output = cache.video_path(KEY)
    runner.start(KEY, ["ffmpeg", str(output)], output, 50.0)

    def fail_during_estimate(log_path, expected):
        fake_popen.calls[0].finish(1)
        runner.poll(KEY)
        return 50

    monkeypatch.setattr(jobs, "estimate_progress", fail_during_estimate)

    assert runner.poll(KEY)["status"] == "failed"
    assert cache.get_status(KEY)["status"] == "failed"


def test_job_handle_is_abstract(tmp_path: Path) -> None:
    with pytest.raises(TypeError):
        JobHandle(tmp_path / "x.log")
