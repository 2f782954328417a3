"""Background ffmpeg job lifecycle.

A job is identified by its cache key and moves through
``idle -> generating -> completed | failed``. ``start`` spawns ffmpeg detached
from the caller and returns immediately; ``poll`` is called repeatedly by
clients and performs the state transitions (progress updates, completion and
failure detection, artifact cleanup).
"""

from __future__ import annotations

import logging
import subprocess
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import psutil

from .cache import CacheManager, STATUS_COMPLETED, STATUS_FAILED, STATUS_GENERATING
from .errors import EncodeFailed, ProcessSpawnFailed
from .ffmpeg import join_argv
from .progress import STARTING_PROGRESS, estimate_progress
from .utils import read_tail

logger = logging.getLogger(__name__)

DEFAULT_COMPLETION_MARKER = "muxing overhead:"
DEFAULT_MARKER_GRACE_SECONDS = 30.0
LOG_TAIL_CHARS = 2000


class JobStatus(str, Enum):
    idle = "idle"
    generating = "generating"
    completed = "completed"
    failed = "failed"


class StartOutcome(str, Enum):
    STARTED = "started"
    ALREADY_IN_PROGRESS = "already_in_progress"


@dataclass
class StartResult:
    outcome: StartOutcome
    cache_key: str
    pid: Optional[int] = None

    @property
    def started(self) -> bool:
        return self.outcome is StartOutcome.STARTED


@dataclass
class Job:
    """Snapshot of a job as stored in the status record's ``data``."""

    cache_key: str
    status: JobStatus
    output_path: Path
    expected_duration: float
    progress: int = 0
    pid: Optional[int] = None
    started_at: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update(
            {
                "cache_key": self.cache_key,
                "output_path": str(self.output_path),
                "expected_duration": self.expected_duration,
                "progress": self.progress,
                "pid": self.pid,
                "started_at": self.started_at,
            }
        )
        return data

    @classmethod
    def from_record(cls, cache_key: str, record: Dict[str, Any]) -> "Job":
        data = dict(record.get("data") or {})
        known = {"cache_key", "output_path", "expected_duration", "progress", "pid", "started_at"}
        return cls(
            cache_key=cache_key,
            status=JobStatus(record.get("status", JobStatus.idle.value)),
            output_path=Path(data.get("output_path", "")),
            expected_duration=float(data.get("expected_duration") or 0.0),
            progress=int(data.get("progress") or 0),
            pid=data.get("pid"),
            started_at=data.get("started_at"),
            extra={k: v for k, v in data.items() if k not in known},
        )


class JobHandle(ABC):
    """Liveness view of a running encoder process."""

    # Whether process exit alone is authoritative. Pid lookups are not: the
    # pid may have been reused, so the log marker is consulted as well.
    authoritative = False

    def __init__(self, log_path: Path) -> None:
        self.log_path = Path(log_path)

    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @property
    def returncode(self) -> Optional[int]:
        return None

    def tail_log(self, max_chars: int = LOG_TAIL_CHARS) -> str:
        return read_tail(self.log_path)[-max_chars:]


class PopenJobHandle(JobHandle):
    authoritative = True

    def __init__(self, process: subprocess.Popen, log_path: Path) -> None:
        super().__init__(log_path)
        self.process = process

    def is_alive(self) -> bool:
        return self.process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()


class PidFileJobHandle(JobHandle):
    def __init__(self, pid: Optional[int], log_path: Path) -> None:
        super().__init__(log_path)
        self.pid = pid

    def is_alive(self) -> bool:
        if not self.pid:
            return False
        try:
            return psutil.Process(int(self.pid)).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # owned by another user but present in the process table
            return True


class JobRunner:
    def __init__(
        self,
        cache: CacheManager,
        completion_marker: str = DEFAULT_COMPLETION_MARKER,
        marker_grace_seconds: float = DEFAULT_MARKER_GRACE_SECONDS,
        clock: Callable[[], float] = time.time,
        popen: Callable[..., Any] = subprocess.Popen,
    ) -> None:
        self.cache = cache
        self.completion_marker = completion_marker
        self.marker_grace_seconds = float(marker_grace_seconds)
        self._clock = clock
        self._popen = popen
        self._children: Dict[str, Any] = {}

    # -- artifacts ------------------------------------------------------------

    def log_path(self, cache_key: str) -> Path:
        return self.cache.temp_dir / f"ffmpeg_{cache_key}.log"

    def command_path(self, cache_key: str) -> Path:
        return self.cache.temp_dir / f"command_{cache_key}.txt"

    def pid_path(self, cache_key: str) -> Path:
        return self.cache.temp_dir / f"pid_{cache_key}.txt"

    def _cleanup(self, cache_key: str) -> None:
        for path in (self.log_path(cache_key), self.command_path(cache_key), self.pid_path(cache_key)):
            path.unlink(missing_ok=True)
        self._children.pop(cache_key, None)

    # -- start --------------------------------------------------------------

    def _claim(self, cache_key: str, data: Dict[str, Any]) -> bool:
        if self.cache.claim_status(cache_key, data):
            return True
        existing = self.cache.get_status(cache_key)
        if existing and existing.get("status") == STATUS_GENERATING:
            return False
        # A terminal (or just expired) record is replaced by the new job.
        self.cache.clear_status(cache_key)
        return self.cache.claim_status(cache_key, data)

    def start(
        self,
        cache_key: str,
        argv: Sequence[str],
        output_path: Path,
        expected_duration: float,
        data: Optional[Dict[str, Any]] = None,
    ) -> StartResult:
        """Spawn ``argv`` detached and mark ``cache_key`` as generating.

        Returns ALREADY_IN_PROGRESS without spawning when a job for the key is
        still generating. Raises ProcessSpawnFailed if the process cannot be
        started; the status is then ``failed``.
        """
        job = Job(
            cache_key=cache_key,
            status=JobStatus.generating,
            output_path=Path(output_path),
            expected_duration=float(expected_duration),
            progress=STARTING_PROGRESS,
            started_at=self._clock(),
            extra=dict(data or {}),
        )
        if not self._claim(cache_key, job.to_dict()):
            logger.info("Generation already in progress for %s", cache_key)
            return StartResult(StartOutcome.ALREADY_IN_PROGRESS, cache_key)

        self.cache.ensure_dirs()
        argv = [str(a) for a in argv]
        self.command_path(cache_key).write_text(join_argv(argv) + "\n", encoding="utf-8")
        log_path = self.log_path(cache_key)

        try:
            with log_path.open("wb") as log_fh:
                process = self._popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log_fh,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as exc:
            self._fail_spawn(job, f"Failed to start ffmpeg: {exc}")
            raise ProcessSpawnFailed(f"Failed to start ffmpeg: {exc}") from exc

        pid = getattr(process, "pid", None)
        if not pid:
            self._fail_spawn(job, "Failed to start ffmpeg: no process id")
            raise ProcessSpawnFailed("Failed to start ffmpeg: no process id")

        self._children[cache_key] = process
        self.pid_path(cache_key).write_text(str(pid), encoding="utf-8")
        job.pid = int(pid)
        self.cache.set_status(cache_key, STATUS_GENERATING, job.to_dict())
        logger.info("Started ffmpeg pid=%s for %s (%.1fs expected)", pid, cache_key, expected_duration)
        return StartResult(StartOutcome.STARTED, cache_key, pid=int(pid))

    def _fail_spawn(self, job: Job, message: str) -> None:
        logger.error("%s (%s)", message, job.cache_key)
        data = job.to_dict()
        data["error"] = message
        self.cache.set_status(job.cache_key, STATUS_FAILED, data)
        self.cache.remove_output(job.cache_key)
        self._cleanup(job.cache_key)

    # -- poll ---------------------------------------------------------------

    def handle_for(self, cache_key: str, job: Job) -> JobHandle:
        log_path = self.log_path(cache_key)
        process = self._children.get(cache_key)
        if process is not None:
            return PopenJobHandle(process, log_path)
        pid = job.pid
        if pid is None:
            try:
                pid = int(self.pid_path(cache_key).read_text(encoding="utf-8").strip())
            except (FileNotFoundError, ValueError):
                pid = None
        return PidFileJobHandle(pid, log_path)

    def _finished(self, handle: JobHandle, job: Job) -> bool:
        if handle.is_alive():
            return False
        if isinstance(handle, PidFileJobHandle) and handle.pid is None:
            # claimed by another process that has not spawned yet
            started = job.started_at or 0.0
            return self._clock() - started >= self.marker_grace_seconds
        if handle.authoritative:
            return True
        text = read_tail(handle.log_path)
        if self.completion_marker and self.completion_marker in text:
            return True
        try:
            idle = self._clock() - handle.log_path.stat().st_mtime
        except FileNotFoundError:
            return True
        if idle >= self.marker_grace_seconds:
            logger.warning(
                "Process gone and no %r in log after %.0fs; finishing job",
                self.completion_marker, idle,
            )
            return True
        return False

    def poll(self, cache_key: str) -> Dict[str, Any]:
        """Return ``{status, progress, video_url?, error?}`` for ``cache_key``."""
        record = self.cache.get_status(cache_key)
        if record is None:
            return {"status": JobStatus.idle.value, "progress": 0}

        status = record.get("status")
        data = record.get("data") or {}
        if status == STATUS_COMPLETED:
            return {"status": status, "progress": 100, "video_url": data.get("video_url")}
        if status == STATUS_FAILED:
            return {"status": status, "progress": 0, "error": data.get("error", "Video generation failed")}

        job = Job.from_record(cache_key, record)
        handle = self.handle_for(cache_key, job)
        if not self._finished(handle, job):
            current = estimate_progress(handle.log_path, job.expected_duration)
            if current > job.progress:
                job.progress = current
                if not self._still_current(job):
                    # another poller finished the job meanwhile
                    return self.poll(cache_key)
                self.cache.set_status(cache_key, STATUS_GENERATING, job.to_dict())
            return {"status": STATUS_GENERATING, "progress": job.progress}

        if not self._still_current(job):
            return self.poll(cache_key)
        return self._finalize(job, handle)

    def _still_current(self, job: Job) -> bool:
        """Whether the stored record is still this generating job.

        Status only moves forward; a record that went terminal or belongs to
        a newer start must not be overwritten.
        """
        record = self.cache.get_status(job.cache_key)
        if record is None or record.get("status") != STATUS_GENERATING:
            return False
        data = record.get("data") or {}
        return data.get("pid") == job.pid and data.get("started_at") == job.started_at

    def _finalize(self, job: Job, handle: JobHandle) -> Dict[str, Any]:
        cache_key = job.cache_key
        output = job.output_path
        returncode = handle.returncode
        size = output.stat().st_size if output.is_file() else 0

        if size > 0 and not returncode:
            video_url = self.cache.video_url(output)
            result = {
                "video_url": video_url,
                "video_path": str(output),
                "file_size": size,
                "completion_time": self._clock(),
            }
            data = job.to_dict()
            data.update(result)
            data["progress"] = 100
            self.cache.set_status(cache_key, STATUS_COMPLETED, data)
            self.cache.update_metadata(cache_key, **result)
            self._cleanup(cache_key)
            logger.info("Video generation completed for %s (%d bytes)", cache_key, size)
            return {"status": STATUS_COMPLETED, "progress": 100, "video_url": video_url}

        log_tail = handle.tail_log(LOG_TAIL_CHARS)
        if returncode:
            reason = f"ffmpeg exited with status {returncode}"
        else:
            reason = "output file is missing or empty"
        error = EncodeFailed(f"Video generation failed: {reason}", detail=log_tail)
        data = job.to_dict()
        data.update({"error": error.message, "log_tail": log_tail})
        self.cache.set_status(cache_key, STATUS_FAILED, data)
        self.cache.remove_output(cache_key)
        self._cleanup(cache_key)
        logger.error("Video generation failed for %s: %s", cache_key, reason)
        return {"status": STATUS_FAILED, "progress": 0, "error": error.message}

    def wait(
        self,
        cache_key: str,
        timeout: Optional[float] = None,
        interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Dict[str, Any]:
        """Poll until the job leaves ``generating`` or ``timeout`` elapses."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            result = self.poll(cache_key)
            if result["status"] != STATUS_GENERATING:
                return result
            if deadline is not None and time.monotonic() >= deadline:
                return result
            sleep(interval)

