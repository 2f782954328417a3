"""User selection and generation settings.

Parses the loosely typed generate request coming from the web layer into
frozen dataclasses and enforces the selection bounds before any job starts.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .errors import ValidationError
from .presets import DEFAULTS, FRAME_RATES, QUALITY_PRESETS, REQUIREMENTS, RESOLUTIONS

logger = logging.getLogger(__name__)

TEMPLATES = ("classic", "modern", "elegant")
DEFAULT_TEMPLATE = "classic"

_RESOLUTION_RE = re.compile(r"^(\d{2,5})x(\d{2,5})$")
_HEX_COLOR_RE = re.compile(r"^(?:#|0x)?([0-9a-fA-F]{6})$")
_NAMED_COLOR_RE = re.compile(r"^[a-zA-Z]{3,20}$")

# camelCase names used by the browser UI -> setting field names
_SETTING_ALIASES = {
    "imageDuration": "image_duration",
    "transitionDuration": "transition_duration",
    "kenBurnsIntensity": "ken_burns_intensity",
    "imageScale": "image_scale",
    "videoScale": "video_scale",
    "paddingColor": "padding_color",
    "frameRate": "frame_rate",
    "musicVolume": "music_volume",
    "audioFade": "audio_fade",
}

# (min, max) for numeric settings
_RANGES: Dict[str, Tuple[float, float]] = {
    "image_duration": (2.0, 10.0),
    "transition_duration": (0.2, 3.0),
    "ken_burns_intensity": (0.0, 2.0),
    "image_scale": (0.5, 1.0),
    "video_scale": (0.5, 1.0),
    "blur": (0.0, 50.0),
    "music_volume": (0.0, 1.0),
}


@dataclass(frozen=True)
class Settings:
    image_duration: float = float(DEFAULTS["image_duration"])
    transition_duration: float = float(DEFAULTS["transition_duration"])
    ken_burns_intensity: float = float(DEFAULTS["ken_burns_intensity"])
    image_scale: float = float(DEFAULTS["image_scale"])
    video_scale: float = float(DEFAULTS["video_scale"])
    blur: float = float(DEFAULTS["blur"])
    shadow: bool = bool(DEFAULTS["shadow"])
    padding_color: str = str(DEFAULTS["padding_color"])
    quality: str = str(DEFAULTS["quality"])
    resolution: Tuple[int, int] = RESOLUTIONS[str(DEFAULTS["resolution"])]
    frame_rate: int = int(DEFAULTS["frame_rate"])  # type: ignore[call-overload]
    music_volume: float = float(DEFAULTS["music_volume"])
    audio_fade: bool = bool(DEFAULTS["audio_fade"])

    @property
    def width(self) -> int:
        return self.resolution[0]

    @property
    def height(self) -> int:
        return self.resolution[1]

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "Settings":
        """Build settings from a request mapping, applying defaults for missing keys.

        Accepts snake_case and the UI's camelCase keys. Unknown keys are ignored
        so older clients keep working; invalid values raise ValidationError.
        """
        if not raw:
            return cls()
        if not isinstance(raw, Mapping):
            raise ValidationError("settings must be a mapping")

        values: Dict[str, Any] = {}
        for key, value in raw.items():
            name = _SETTING_ALIASES.get(key, key)
            if value is None or value == "":
                continue
            if name in _RANGES:
                values[name] = _parse_ranged(name, value)
            elif name in {"shadow", "audio_fade"}:
                values[name] = _parse_bool(name, value)
            elif name == "padding_color":
                values[name] = parse_color(value)
            elif name == "quality":
                if str(value) not in QUALITY_PRESETS:
                    raise ValidationError(f"Unknown quality preset: {value}")
                values[name] = str(value)
            elif name == "resolution":
                values[name] = parse_resolution(value)
            elif name == "frame_rate":
                values[name] = _parse_frame_rate(value)
            else:
                logger.debug("Ignoring unknown setting %r", key)

        settings = cls(**values)
        if settings.transition_duration >= settings.image_duration:
            raise ValidationError(
                "transition_duration must be shorter than image_duration "
                f"({settings.transition_duration} >= {settings.image_duration})"
            )
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_duration": self.image_duration,
            "transition_duration": self.transition_duration,
            "ken_burns_intensity": self.ken_burns_intensity,
            "image_scale": self.image_scale,
            "video_scale": self.video_scale,
            "blur": self.blur,
            "shadow": self.shadow,
            "padding_color": self.padding_color,
            "quality": self.quality,
            "resolution": f"{self.width}x{self.height}",
            "frame_rate": self.frame_rate,
            "music_volume": self.music_volume,
            "audio_fade": self.audio_fade,
        }


@dataclass(frozen=True)
class AdvancedOverride:
    enabled: bool = False
    transitions: Tuple[str, ...] = ()
    ken_burns_patterns: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "AdvancedOverride":
        if not raw:
            return cls()
        if not isinstance(raw, Mapping):
            raise ValidationError("advancedOptions must be a mapping")
        # imported here: effects imports selection for its type hints
        from .effects import ALL_TRANSITIONS, PATTERN_NAMES

        enabled = _parse_bool("enabled", raw.get("enabled", False))
        transitions = _str_list("transitions", raw.get("transitions"))
        patterns = _str_list(
            "kenBurnsPatterns",
            raw.get("kenBurnsPatterns", raw.get("ken_burns_patterns")),
        )
        for name in transitions:
            if name not in ALL_TRANSITIONS:
                raise ValidationError(f"Unknown transition: {name}")
        for name in patterns:
            if name not in PATTERN_NAMES:
                raise ValidationError(f"Unknown Ken Burns pattern: {name}")
        return cls(enabled=enabled, transitions=tuple(transitions), ken_burns_patterns=tuple(patterns))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "transitions": list(self.transitions),
            "ken_burns_patterns": list(self.ken_burns_patterns),
        }


@dataclass(frozen=True)
class Selection:
    template: str
    image_ids: Tuple[str, ...]
    video_ids: Tuple[str, ...]
    audio_id: Optional[str] = None
    background_id: Optional[str] = None
    settings: Settings = field(default_factory=Settings)
    advanced: AdvancedOverride = field(default_factory=AdvancedOverride)

    def to_dict(self) -> Dict[str, Any]:
        """Canonical form used for fingerprints and sidecar metadata."""
        return {
            "template": self.template,
            "images": list(self.image_ids),
            "videos": list(self.video_ids),
            "audio": self.audio_id,
            "background": self.background_id,
            "settings": self.settings.to_dict(),
            "advanced": self.advanced.to_dict(),
        }


def normalize_template(template: Optional[str]) -> str:
    name = (template or "").strip().lower()
    if name in TEMPLATES:
        return name
    if name:
        logger.warning("Unknown template %r; falling back to %s", template, DEFAULT_TEMPLATE)
    return DEFAULT_TEMPLATE


def parse_generate_request(request: Mapping[str, Any]) -> Tuple[Selection, bool]:
    """Turn a generate request into a Selection plus the force flag.

    Accepts ``images``/``videos`` lists (a single ``video`` string is treated
    as a one-item list), optional ``audio`` and ``background`` ids, a
    ``settings`` mapping and ``advancedOptions``.
    """
    if not isinstance(request, Mapping):
        raise ValidationError("request must be a mapping")

    videos_raw = request.get("videos")
    if videos_raw is None and request.get("video"):
        videos_raw = [request.get("video")]

    selection = Selection(
        template=normalize_template(request.get("template")),
        image_ids=tuple(_str_list("images", request.get("images"))),
        video_ids=tuple(_str_list("videos", videos_raw)),
        audio_id=_optional_id(request.get("audio")),
        background_id=_optional_id(request.get("background")),
        settings=Settings.from_mapping(request.get("settings")),
        advanced=AdvancedOverride.from_mapping(
            request.get("advancedOptions", request.get("advanced_options"))
        ),
    )
    force = _parse_bool("force", request.get("force", False))
    return selection, force


def validate_selection(selection: Selection) -> None:
    """Enforce image/video count bounds. Raises ValidationError."""
    bounds = REQUIREMENTS["images"]
    count = len(selection.image_ids)
    if count < bounds["min"] or count > bounds["max"]:
        raise ValidationError(
            f"Images must be between {bounds['min']} and {bounds['max']}. Received: {count}"
        )

    bounds = REQUIREMENTS["videos"]
    count = len(selection.video_ids)
    if count < bounds["min"] or count > bounds["max"]:
        raise ValidationError(
            f"Videos must be between {bounds['min']} and {bounds['max']}. Received: {count}"
        )


def parse_resolution(value: Any) -> Tuple[int, int]:
    if isinstance(value, str):
        text = value.strip().lower()
        if text in RESOLUTIONS:
            return RESOLUTIONS[text]
        m = _RESOLUTION_RE.match(text)
        if not m:
            raise ValidationError(
                "resolution must be one of 480p/720p/1080p or WIDTHxHEIGHT, e.g. 1080x1920"
            )
        w, h = int(m.group(1)), int(m.group(2))
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        w, h = int(value[0]), int(value[1])
    else:
        raise ValidationError("resolution must be a preset name, WIDTHxHEIGHT or [width, height]")
    if w < 240 or h < 240 or w > 4096 or h > 4096:
        raise ValidationError("resolution out of supported range (240..4096)")
    # libx264 with yuv420p needs even dimensions
    if w % 2 or h % 2:
        raise ValidationError("resolution width and height must be even")
    return w, h


def parse_color(value: Any) -> str:
    text = str(value).strip()
    m = _HEX_COLOR_RE.match(text)
    if m:
        return "0x" + m.group(1).upper()
    if _NAMED_COLOR_RE.match(text):
        return text.lower()
    raise ValidationError(f"Invalid padding color: {value!r}")


def _parse_ranged(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be finite")
    low, high = _RANGES[name]
    if number < low or number > high:
        raise ValidationError(f"{name} must be between {low} and {high}, got {number}")
    return number


def _parse_frame_rate(value: Any) -> int:
    try:
        fps = int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValidationError("frame_rate must be an integer") from exc
    if fps not in FRAME_RATES:
        raise ValidationError(f"frame_rate must be one of {', '.join(map(str, FRAME_RATES))}")
    return fps


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
    raise ValidationError(f"{name} must be a boolean")


def _str_list(name: str, value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        raise ValidationError(f"{name} must be a list of ids")
    if not isinstance(value, Sequence):
        raise ValidationError(f"{name} must be a list of ids")
    out = []
    for item in value:
        text = str(item).strip()
        if not text:
            raise ValidationError(f"{name} contains an empty id")
        out.append(text)
    return out


def _optional_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
