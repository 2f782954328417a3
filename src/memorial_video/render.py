"""ffmpeg command construction for a planned timeline.

Everything is rendered by a single ffmpeg process: one input per slot, a
per-slot normalisation chain (frame rate, timestamps, scale/letterbox,
pan/zoom, pixel format), an xfade chain joining the slots, and an audio
branch that is either the selected music track or generated silence.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .errors import TooFewImages
from .ffmpeg import FFmpegCommand, fmt_seconds, join_argv
from .presets import AUDIO_SAMPLE_RATE, h264_level, quality_params
from .selection import Settings
from .timeline import MIN_IMAGES, Slot, Timeline

logger = logging.getLogger(__name__)

AUDIO_FADE_SECONDS = 2.0
SHADOW_OFFSET = 12
SHADOW_OPACITY = 0.5


@dataclass
class RenderCommand:
    command: FFmpegCommand
    total_duration: float

    @property
    def argv(self) -> List[str]:
        return self.command.argv()

    @property
    def filter_graph(self) -> str:
        return self.command.filter_graph

    def __str__(self) -> str:
        return join_argv(self.argv)


def _even(value: float) -> int:
    return max(2, int(value) // 2 * 2)


def _fit_filter(width: int, height: int, scale: float) -> str:
    fw = _even(width * scale)
    fh = _even(height * scale)
    return f"scale={fw}:{fh}:force_original_aspect_ratio=decrease:force_divisible_by=2"


def _source_filter(input_idx: int, slot: Slot, fps: int) -> str:
    base = f"[{input_idx}:v]fps={fps},setpts=PTS-STARTPTS"
    if slot.type == "video":
        # Keep exactly duration*fps frames by index: longer sources are cut,
        # shorter ones are not looped. Timestamps are then regenerated.
        frames = slot.frame_count(fps)
        base += f",select='lt(n,{frames})',setpts=N/({fps}*TB)"
    return base


def _composited(settings: Settings, background: bool) -> bool:
    return background or settings.shadow


def _slot_filters(
    idx: int,
    slot: Slot,
    input_idx: int,
    bg_idx: Optional[int],
    settings: Settings,
) -> List[str]:
    W, H, fps = settings.width, settings.height, settings.frame_rate
    scale = settings.image_scale if slot.type == "image" else settings.video_scale
    head = f"{_source_filter(input_idx, slot, fps)},{_fit_filter(W, H, scale)}"

    tail: List[str] = []
    if slot.type == "image" and slot.effect is not None:
        tail.append(slot.effect.zoompan(slot.frame_count(fps), W, H, fps))
    tail.append("setpts=PTS-STARTPTS,settb=AVTB,setsar=1,format=yuv420p")
    out = f"[v{idx}]"

    if not _composited(settings, bg_idx is not None):
        pad = f"pad={W}:{H}:(ow-iw)/2:(oh-ih)/2:color={settings.padding_color},setsar=1"
        return [",".join([head, pad, *tail]) + out]

    chains: List[str] = []
    if bg_idx is not None:
        canvas = (
            f"[{bg_idx}:v]fps={fps},setpts=PTS-STARTPTS,"
            f"scale={W}:{H}:force_original_aspect_ratio=increase,crop={W}:{H}"
        )
        if settings.blur > 0:
            canvas += f",boxblur={fmt_seconds(settings.blur)}:1"
    else:
        canvas = f"color=c={settings.padding_color}:s={W}x{H}:r={fps}:d={fmt_seconds(slot.duration)}"
    chains.append(f"{canvas},setsar=1[bg{idx}]")
    chains.append(f"{head},setsar=1[fg{idx}]")

    center = "(main_w-overlay_w)/2:(main_h-overlay_h)/2"
    base = f"bg{idx}"
    if settings.shadow:
        chains.append(f"[fg{idx}]format=rgba,split[fg{idx}a][fg{idx}b]")
        chains.append(
            f"[fg{idx}b]colorchannelmixer=rr=0:gg=0:bb=0:aa={SHADOW_OPACITY}[sh{idx}]"
        )
        chains.append(
            f"[bg{idx}][sh{idx}]overlay=(main_w-overlay_w)/2+{SHADOW_OFFSET}:"
            f"(main_h-overlay_h)/2+{SHADOW_OFFSET}:shortest=1[bs{idx}]"
        )
        base = f"bs{idx}"
        fg = f"fg{idx}a"
    else:
        fg = f"fg{idx}"
    chains.append(f"[{base}][{fg}]overlay={center}:shortest=1," + ",".join(tail) + out)
    return chains


def _audio_filter(audio_idx: Optional[int], total: float, settings: Settings) -> str:
    if audio_idx is None:
        return (
            f"anullsrc=channel_layout=stereo:sample_rate={AUDIO_SAMPLE_RATE}"
            f":duration={fmt_seconds(total)}[aout]"
        )
    parts = [
        f"[{audio_idx}:a]aresample={AUDIO_SAMPLE_RATE}",
        f"volume={settings.music_volume:g}",
    ]
    if settings.audio_fade:
        fade = min(AUDIO_FADE_SECONDS, total / 2.0)
        parts.append(f"afade=t=in:st=0:d={fmt_seconds(fade)}")
        parts.append(f"afade=t=out:st={fmt_seconds(total - fade)}:d={fmt_seconds(fade)}")
    # short tracks are padded with silence; the output -t cuts the rest
    parts.append("apad")
    return ",".join(parts) + "[aout]"


def _encoding_options(settings: Settings, total: float) -> List[str]:
    q = quality_params(settings.quality)
    fps = settings.frame_rate
    return [
        "-t", fmt_seconds(total),
        "-c:v", "libx264",
        "-preset", str(q["preset"]),
        "-crf", str(q["crf"]),
        "-maxrate", str(q["maxrate"]),
        "-bufsize", str(q["bufsize"]),
        "-profile:v", "main",
        "-level", h264_level(fps),
        "-g", str(fps * 2),
        "-bf", "2",
        "-r", str(fps),
        "-pix_fmt", "yuv420p",
        "-c:a", "aac",
        "-b:a", str(q["audio_bitrate"]),
        "-ar", str(AUDIO_SAMPLE_RATE),
        "-ac", "2",
        "-f", "mp4",
        "-movflags", "+faststart",
    ]


def build_render_command(
    timeline: Timeline,
    settings: Settings,
    output_path: Path,
    audio_path: Optional[Path] = None,
    background_path: Optional[Path] = None,
    ffmpeg: str = "ffmpeg",
) -> RenderCommand:
    """Translate an annotated timeline into a complete ffmpeg invocation.

    Raises TooFewImages when fewer than 3 image slots are present, and
    ValidationError when the timeline's total duration is not positive.
    """
    image_count = len(timeline.image_slots)
    if image_count < MIN_IMAGES:
        raise TooFewImages(image_count, MIN_IMAGES)
    timeline.validate()

    fps = settings.frame_rate
    T = timeline.transition_duration
    total = timeline.total_duration

    cmd = FFmpegCommand(binary=ffmpeg)
    cmd.add_global("-y", "-hide_banner", "-stats_period", "0.5")

    for idx, slot in enumerate(timeline.slots):
        if slot.type == "image":
            input_idx = cmd.add_input(
                slot.source_path, "-loop", "1", "-framerate", fps, "-t", fmt_seconds(slot.duration)
            )
        else:
            input_idx = cmd.add_input(slot.source_path)
        bg_idx = None
        if background_path is not None:
            bg_idx = cmd.add_input(
                background_path, "-loop", "1", "-framerate", fps, "-t", fmt_seconds(slot.duration)
            )
        for chain in _slot_filters(idx, slot, input_idx, bg_idx, settings):
            cmd.add_filter(chain)

    # xfade overlaps neighbours by T, so each later slot advances the running
    # offset by (duration - T); the first contributes its full duration.
    slots = timeline.slots
    current = "v0"
    running = slots[0].duration
    if len(slots) == 1:
        cmd.add_filter("[v0]null[vout]")
    for i in range(1, len(slots)):
        label = f"vt{i}" if i < len(slots) - 1 else "vout"
        transition = slots[i].transition or "fade"
        cmd.add_filter(
            f"[{current}][v{i}]xfade=transition={transition}"
            f":duration={fmt_seconds(T)}:offset={fmt_seconds(running - T)}[{label}]"
        )
        current = label
        running += slots[i].duration - T

    audio_idx = None
    if audio_path is not None:
        audio_idx = cmd.add_input(audio_path, "-t", fmt_seconds(total))
    cmd.add_filter(_audio_filter(audio_idx, total, settings))

    cmd.map("[vout]").map("[aout]")
    cmd.add_output_options(*_encoding_options(settings, total))
    cmd.set_output(output_path)

    logger.info(
        "Built ffmpeg command: %d slots (%d images, %d videos), %.2fs output",
        len(slots), image_count, len(timeline.video_slots), total,
    )
    return RenderCommand(command=cmd, total_duration=total)
