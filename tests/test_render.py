"""Tests for ffmpeg command construction."""

from __future__ import annotations

import random
import re
from pathlib import Path

import pytest

from memorial_video.effects import EffectSelector
from memorial_video.errors import TooFewImages
from memorial_video.render import build_render_command
from memorial_video.selection import Settings
from memorial_video.timeline import Slot, Timeline, plan_timeline


def _annotated(n_images=15, n_videos=1, settings=None, video_seconds=6.0):
    settings = settings or Settings()
    images = [Path(f"/media/images/img_{i:02d}.jpg") for i in range(n_images)]
    videos = [Path(f"/media/videos/clip_{i}.mp4") for i in range(n_videos)]
    timeline = plan_timeline(
        images,
        videos,
        settings.image_duration,
        settings.transition_duration,
        video_duration=lambda p: video_seconds,
    )
    return EffectSelector(random.Random(3)).annotate(timeline, "classic", settings), settings


def _opt(argv, flag):
    return argv[argv.index(flag) + 1]


def _output_opt(argv, flag):
    # input options repeat flags like -t; output options come last
    return argv[len(argv) - 1 - argv[::-1].index(flag) + 1]


def test_scenario_a_offsets_and_total() -> None:
    timeline, settings = _annotated()
    render = build_render_command(timeline, settings, Path("/cache/out.mp4"))

    assert render.total_duration == pytest.approx(51.0)
    offsets = [float(x) for x in re.findall(r"offset=([\d.]+)", render.filter_graph)]
    assert len(offsets) == 15
    assert offsets[0] == pytest.approx(3.0)
    # consecutive offsets differ by the slot duration minus the overlap;
    # slot 7 is the 6s clip
    assert offsets[6] - offsets[5] == pytest.approx(3.0)
    assert offsets[7] - offsets[6] == pytest.approx(5.0)
    assert offsets[8] - offsets[7] == pytest.approx(3.0)
    # last transition ends exactly at the output length
    assert offsets[-1] + 1.0 + 3.0 == pytest.approx(render.total_duration)
    assert render.filter_graph.count("xfade=") == 15
    assert "[vout]" in render.filter_graph


def test_inputs_and_output_options() -> None:
    timeline, settings = _annotated()
    argv = build_render_command(timeline, settings, Path("/cache/out.mp4"), ffmpeg="/usr/bin/ffmpeg").argv

    assert argv[0] == "/usr/bin/ffmpeg"
    assert argv[-1] == "/cache/out.mp4"
    assert argv.count("-i") == 16
    assert argv.count("-loop") == 15
    assert _opt(argv, "-stats_period") == "0.5"
    assert _opt(argv, "-movflags") == "+faststart"
    assert _opt(argv, "-pix_fmt") == "yuv420p"
    assert _opt(argv, "-c:v") == "libx264"
    assert _opt(argv, "-crf") == "23"
    assert _output_opt(argv, "-t") == "51"
    assert _opt(argv, "-g") == "60"
    assert _opt(argv, "-level") == "4.1"
    assert argv[argv.index("-map") + 1] == "[vout]"
    assert "[aout]" in argv


def test_silence_when_no_audio() -> None:
    timeline, settings = _annotated()
    graph = build_render_command(timeline, settings, Path("out.mp4")).filter_graph
    assert "anullsrc=channel_layout=stereo:sample_rate=48000:duration=51[aout]" in graph


def test_music_is_faded_and_padded() -> None:
    timeline, settings = _annotated()
    render = build_render_command(timeline, settings, Path("out.mp4"), audio_path=Path("/media/audio/song.mp3"))
    argv = render.argv

    audio_at = argv.index("/media/audio/song.mp3")
    assert argv[audio_at - 3:audio_at - 1] == ["-t", "51"]
    assert "[16:a]aresample=48000,volume=0.3" in render.filter_graph
    assert "afade=t=in:st=0:d=2" in render.filter_graph
    assert "afade=t=out:st=49:d=2" in render.filter_graph
    assert "apad[aout]" in render.filter_graph


def test_background_and_shadow_composite() -> None:
    settings = Settings(shadow=True, image_scale=0.8)
    timeline, settings = _annotated(settings=settings)
    render = build_render_command(timeline, settings, Path("out.mp4"), background_path=Path("/media/bg_images/paper.png"))

    assert render.argv.count("/media/bg_images/paper.png") == 16
    assert render.filter_graph.count("boxblur=10:1") == 16
    assert "colorchannelmixer" in render.filter_graph
    assert "scale=864:1536:force_original_aspect_ratio=decrease" in render.filter_graph


def test_plain_letterbox_uses_padding_color() -> None:
    settings = Settings(padding_color="0x202020")
    timeline, settings = _annotated(settings=settings)
    graph = build_render_command(timeline, settings, Path("out.mp4")).filter_graph
    assert "pad=1080:1920:(ow-iw)/2:(oh-ih)/2:color=0x202020" in graph
    assert "overlay" not in graph


def test_video_slots_are_trimmed_without_zoompan() -> None:
    timeline, settings = _annotated()
    chains = build_render_command(timeline, settings, Path("out.mp4")).command.filters
    video_chain = next(c for c in chains if c.endswith("[v7]"))
    assert "select='lt(n,180)'" in video_chain
    assert "zoompan" not in video_chain
    assert "zoompan" in next(c for c in chains if c.endswith("[v0]"))


def test_high_frame_rate_level() -> None:
    timeline, settings = _annotated(settings=Settings(frame_rate=60, quality="high"))
    argv = build_render_command(timeline, settings, Path("out.mp4")).argv
    assert _opt(argv, "-level") == "4.2"
    assert _opt(argv, "-g") == "120"
    assert _opt(argv, "-preset") == "slow"


def test_too_few_images_rejected_before_building() -> None:
    timeline = Timeline(
        slots=[Slot("image", Path("a.jpg"), 4.0), Slot("video", Path("v.mp4"), 5.0), Slot("image", Path("b.jpg"), 4.0)],
        transition_duration=1.0,
    )
    with pytest.raises(TooFewImages):
        build_render_command(timeline, Settings(), Path("out.mp4"))


def test_str_is_shell_quoted() -> None:
    timeline, settings = _annotated()
    text = str(build_render_command(timeline, settings, Path("/cache/my video.mp4")))
    assert text.endswith("'/cache/my video.mp4'")
