from __future__ import annotations

from typing import Dict, Optional, Tuple

# Default generation settings; every key can be overridden per request.
DEFAULTS: Dict[str, object] = {
    "image_duration": 4.0,
    "transition_duration": 1.0,
    "ken_burns_intensity": 1.0,
    "image_scale": 1.0,
    "video_scale": 1.0,
    "blur": 10.0,
    "shadow": False,
    "padding_color": "black",
    "quality": "medium",
    "resolution": "1080p",
    "frame_rate": 30,
    "music_volume": 0.3,
    "audio_fade": True,
}

# Selection bounds shown in the media library and enforced before a job starts.
REQUIREMENTS: Dict[str, Dict[str, int]] = {
    "images": {"min": 15, "max": 40},
    "videos": {"min": 1, "max": 5},
    "audio": {"min": 0, "max": 1},
    "background": {"min": 0, "max": 1},
}

# Portrait output sizes (width, height) for full-screen mobile playback.
RESOLUTIONS: Dict[str, Tuple[int, int]] = {
    "480p": (480, 854),
    "720p": (720, 1280),
    "1080p": (1080, 1920),
}

# Quality preset -> x264 rate control and audio bitrate.
# - low: quick previews
# - medium: the historical default (crf 23, medium, 192k)
# - high/ultra: archival copies, slower to encode
QUALITY_PRESETS: Dict[str, Dict[str, object]] = {
    "low": {
        "crf": 28,
        "preset": "veryfast",
        "maxrate": "2M",
        "bufsize": "4M",
        "audio_bitrate": "128k",
    },
    "medium": {
        "crf": 23,
        "preset": "medium",
        "maxrate": "5M",
        "bufsize": "10M",
        "audio_bitrate": "192k",
    },
    "high": {
        "crf": 20,
        "preset": "slow",
        "maxrate": "8M",
        "bufsize": "16M",
        "audio_bitrate": "192k",
    },
    "ultra": {
        "crf": 18,
        "preset": "slow",
        "maxrate": "12M",
        "bufsize": "24M",
        "audio_bitrate": "256k",
    },
}

FRAME_RATES = (24, 25, 30, 60)

AUDIO_SAMPLE_RATE = 48000


def quality_params(name: Optional[str]) -> Dict[str, object]:
    """Return encoding parameters for a quality preset.

    Rules:
    - None or an empty name selects the default preset.
    - Unknown names raise ValueError so callers can report a validation error.
    """
    key = name or str(DEFAULTS["quality"])
    preset = QUALITY_PRESETS.get(key)
    if preset is None:
        raise ValueError(f"Unknown quality preset: {name}")
    return dict(preset)


def h264_level(fps: int) -> str:
    # Level 4.1 tops out at 1080p30; higher frame rates need 4.2.
    return "4.2" if int(fps) > 30 else "4.1"
