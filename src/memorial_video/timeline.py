"""Timeline planning utilities.

Turn the selected images and videos into an ordered list of slots: every
image in input order at a fixed duration, with videos spread evenly through
the middle so the compilation never opens or closes on a video clip.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Literal, Optional, Sequence

from .catalog import DEFAULT_VIDEO_SECONDS, plausible_duration, safe_video_duration
from .errors import InsufficientMedia, ValidationError

if TYPE_CHECKING:
    from .effects import KenBurnsEffect

# Number of slots at each end of the timeline that must stay images.
EDGE_SLOTS = 3
MIN_IMAGES = 3

SlotType = Literal["image", "video"]


@dataclass
class Slot:
    type: SlotType
    source_path: Path
    duration: float
    effect: Optional["KenBurnsEffect"] = None
    # Transition used to blend the previous slot into this one.
    transition: Optional[str] = None

    def frame_count(self, fps: int) -> int:
        return max(1, int(round(self.duration * fps)))


@dataclass
class Timeline:
    slots: List[Slot] = field(default_factory=list)
    transition_duration: float = 1.0

    def __len__(self) -> int:
        return len(self.slots)

    def __iter__(self):
        return iter(self.slots)

    @property
    def image_slots(self) -> List[Slot]:
        return [s for s in self.slots if s.type == "image"]

    @property
    def video_slots(self) -> List[Slot]:
        return [s for s in self.slots if s.type == "video"]

    @property
    def total_duration(self) -> float:
        """Output length: every crossfade overlaps two neighbours by the transition."""
        if not self.slots:
            return 0.0
        overlap = (len(self.slots) - 1) * self.transition_duration
        return sum(s.duration for s in self.slots) - overlap

    def validate(self) -> None:
        total = self.total_duration
        if not math.isfinite(total) or total <= 0:
            raise ValidationError(f"Timeline duration must be positive, got {total}")
        for idx, slot in enumerate(self.slots):
            if len(self.slots) > 1 and slot.duration <= self.transition_duration:
                raise ValidationError(
                    f"Slot {idx} ({slot.source_path.name}) lasts {slot.duration}s, "
                    f"not longer than the {self.transition_duration}s transition"
                )


def video_positions(image_count: int, video_count: int) -> List[int]:
    """Final timeline indices of the videos for ``image_count`` images.

    The safe zone ``[3, N-3]`` is split into ``video_count + 1`` equal
    intervals; video ``i`` lands at the end of interval ``i``, shifted by the
    ``i`` videos already spliced in before it.
    """
    safe_range = max(image_count - 2 * EDGE_SLOTS, 0)
    interval = safe_range // (video_count + 1)
    return [EDGE_SLOTS + interval * (i + 1) + i for i in range(video_count)]


def plan_timeline(
    images: Sequence[Path],
    videos: Sequence[Path],
    image_duration: float = 4.0,
    transition_duration: float = 1.0,
    video_duration: Callable[[Path], float] | None = None,
) -> Timeline:
    """Build the slot sequence for a compilation.

    Rules:
    - One image slot per image, input order, ``image_duration`` each.
    - Videos are spliced in at ``video_positions`` with their probed duration;
      missing or implausible durations fall back to 4 seconds.
    - Fewer than 3 images raises InsufficientMedia.
    """
    if len(images) < MIN_IMAGES:
        raise InsufficientMedia(
            f"Need at least {MIN_IMAGES} images to plan a timeline, got {len(images)}"
        )
    if image_duration <= 0:
        raise ValidationError("image_duration must be > 0")

    probe = video_duration or safe_video_duration
    slots: List[Slot] = [Slot(type="image", source_path=Path(p), duration=float(image_duration)) for p in images]

    durations: Dict[Path, float] = {}
    for position, path in zip(video_positions(len(images), len(videos)), videos):
        path = Path(path)
        if path not in durations:
            durations[path] = _clamped(probe(path))
        slots.insert(position, Slot(type="video", source_path=path, duration=durations[path]))

    timeline = Timeline(slots=slots, transition_duration=float(transition_duration))
    timeline.validate()
    return timeline


def _clamped(value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return DEFAULT_VIDEO_SECONDS
    return value if plausible_duration(value) else DEFAULT_VIDEO_SECONDS


def summarize_timeline(timeline: Timeline) -> Dict[str, float]:
    image_slots = timeline.image_slots
    video_slots = timeline.video_slots
    return {
        "slot_count": float(len(timeline)),
        "image_count": float(len(image_slots)),
        "video_count": float(len(video_slots)),
        "video_seconds": float(sum(s.duration for s in video_slots)),
        "transition_duration": float(timeline.transition_duration),
        "total_duration": float(timeline.total_duration),
    }
