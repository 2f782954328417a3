"""Exception taxonomy for memorial_video.

Library code raises these; the service facade in ``app`` turns them into
``{"success": False, "status": "failed", ...}`` payloads.
"""

from __future__ import annotations


class MemorialVideoError(Exception):
    """Base class for every error the engine reports to a caller."""

    code = "error"

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail


class ValidationError(MemorialVideoError, ValueError):
    """Bad selection counts, ids or settings. Reported before any job starts."""

    code = "invalid_selection"


class InvalidMediaId(ValidationError):
    code = "invalid_media"

    def __init__(self, kind: str, media_id: str) -> None:
        super().__init__(f"Invalid {kind} ID: {media_id}")
        self.kind = kind
        self.media_id = media_id


class InsufficientMedia(MemorialVideoError):
    """The catalog or the timeline has too little media to build a safe video."""

    code = "insufficient_media"


class TooFewImages(InsufficientMedia):
    code = "too_few_images"

    def __init__(self, count: int, minimum: int = 3) -> None:
        super().__init__(
            f"Not enough images to create video. Need at least {minimum} images, got {count}."
        )
        self.count = count
        self.minimum = minimum


class ProcessSpawnFailed(MemorialVideoError, RuntimeError):
    code = "spawn_failed"


class EncodeFailed(MemorialVideoError, RuntimeError):
    """The encoder ran but left no (or an empty) output file."""

    code = "encode_failed"


class ProbeFailed(MemorialVideoError, RuntimeError):
    """ffprobe could not report a duration. Always recovered by the catalog."""

    code = "probe_failed"
