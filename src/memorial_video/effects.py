"""Pan/zoom (Ken Burns) patterns and crossfade transitions per template."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .selection import AdvancedOverride, Settings, normalize_template
from .timeline import Timeline

TEMPLATE_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "classic": ("fade", "dissolve", "smoothleft", "smoothright"),
    "modern": ("smoothleft", "smoothright", "circleopen", "circleclose", "pixelize"),
    "elegant": ("fade", "fadeblack", "fadewhite", "dissolve", "circleopen", "circleclose"),
}

# xfade transitions a user may pick in the advanced options.
ALL_TRANSITIONS = frozenset(
    {
        "fade", "fadeblack", "fadewhite", "dissolve", "pixelize", "radial", "distance",
        "smoothleft", "smoothright", "smoothup", "smoothdown",
        "circleopen", "circleclose", "circlecrop",
        "wipeleft", "wiperight", "wipeup", "wipedown",
        "slideleft", "slideright", "slideup", "slidedown",
        "hblur", "zoomin",
    }
)

_CENTER_X = "iw/2-(iw/zoom/2)"
_CENTER_Y = "ih/2-(ih/zoom/2)"


@dataclass(frozen=True)
class KenBurnsPattern:
    """One camera move.

    ``x``/``y`` are zoompan position expressions where ``{F}`` is replaced by
    the slot's frame count; ``on`` is zoompan's output frame number.
    """

    name: str
    base_speed: float
    base_zoom_delta: float
    zoom_out: bool = False
    x: str = _CENTER_X
    y: str = _CENTER_Y


PATTERNS: Tuple[KenBurnsPattern, ...] = (
    KenBurnsPattern("zoom_in", 0.0015, 0.3),
    KenBurnsPattern("zoom_out", 0.0015, 0.3, zoom_out=True),
    KenBurnsPattern("pan_left", 0.001, 0.2, x=_CENTER_X + "-((iw/zoom/2)*0.5*on/{F})"),
    KenBurnsPattern("pan_right", 0.001, 0.2, x=_CENTER_X + "+((iw/zoom/2)*0.5*on/{F})"),
    KenBurnsPattern(
        "zoom_from_top_left", 0.002, 0.4,
        x=_CENTER_X + "-(iw/10)+(on*(iw/10)/{F})",
        y=_CENTER_Y + "-(ih/10)+(on*(ih/10)/{F})",
    ),
    KenBurnsPattern(
        "zoom_from_bottom_right", 0.002, 0.4,
        x=_CENTER_X + "+(iw/10)-(on*(iw/10)/{F})",
        y=_CENTER_Y + "+(ih/10)-(on*(ih/10)/{F})",
    ),
    KenBurnsPattern("pan_up", 0.0012, 0.25, y=_CENTER_Y + "-((ih/zoom/2)*0.3*on/{F})"),
    KenBurnsPattern("pan_down", 0.0012, 0.25, y=_CENTER_Y + "+((ih/zoom/2)*0.3*on/{F})"),
)

PATTERNS_BY_NAME: Dict[str, KenBurnsPattern] = {p.name: p for p in PATTERNS}
PATTERN_NAMES = frozenset(PATTERNS_BY_NAME)


def _num(value: float) -> str:
    return f"{value:.6g}"


@dataclass(frozen=True)
class KenBurnsEffect:
    pattern: KenBurnsPattern
    intensity: float = 1.0

    @property
    def name(self) -> str:
        return self.pattern.name

    @property
    def speed(self) -> float:
        return self.pattern.base_speed * self.intensity

    @property
    def max_zoom(self) -> float:
        return 1.0 + self.pattern.base_zoom_delta * self.intensity

    def zoom_expr(self) -> str:
        if self.pattern.zoom_out:
            return f"max(1.0,{_num(self.max_zoom)}-{_num(self.speed)}*on)"
        return f"min(1.0+{_num(self.speed)}*on,{_num(self.max_zoom)})"

    def zoompan(self, frame_count: int, width: int, height: int, fps: int) -> str:
        """zoompan filter emitting one frame per input frame for ``frame_count`` frames.

        The looped still input already yields ``duration * fps`` frames, so
        ``d=1`` keeps the output frame count equal to the slot's.
        """
        frames = max(1, int(frame_count))
        x = self.pattern.x.replace("{F}", str(frames))
        y = self.pattern.y.replace("{F}", str(frames))
        return (
            f"zoompan=z='{self.zoom_expr()}':x='{x}':y='{y}'"
            f":d=1:s={width}x{height}:fps={fps}"
        )


class EffectSelector:
    """Assign a Ken Burns effect to every image slot and a transition to every pair."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def transitions_for(self, template: str, advanced: Optional[AdvancedOverride] = None) -> Sequence[str]:
        if advanced is not None and advanced.enabled and advanced.transitions:
            return advanced.transitions
        return TEMPLATE_TRANSITIONS[normalize_template(template)]

    def patterns_for(self, advanced: Optional[AdvancedOverride] = None) -> List[KenBurnsPattern]:
        if advanced is not None and advanced.enabled and advanced.ken_burns_patterns:
            return [PATTERNS_BY_NAME[name] for name in advanced.ken_burns_patterns]
        return list(PATTERNS)

    def annotate(
        self,
        timeline: Timeline,
        template: str,
        settings: Settings,
        advanced: Optional[AdvancedOverride] = None,
    ) -> Timeline:
        transitions = self.transitions_for(template, advanced)
        patterns = self.patterns_for(advanced)

        for idx, slot in enumerate(timeline.slots):
            if slot.type == "image":
                slot.effect = KenBurnsEffect(patterns[idx % len(patterns)], settings.ken_burns_intensity)
            else:
                slot.effect = None
            slot.transition = self.rng.choice(list(transitions)) if idx > 0 else None
        return timeline
