"""Command-line interface for the memorial_video package.

Each subcommand maps onto one service operation and prints its result as
JSON on stdout; logs go to stderr.
"""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .app import MemorialVideoService
from .config import (
    build_config_defaults,
    build_effective_config,
    env_config_values,
    format_effective_config,
    load_yaml_config,
    normalize_config,
)
from .errors import EncodeFailed
from .logging_setup import setup_logging
from .presets import FRAME_RATES, QUALITY_PRESETS
from .selection import TEMPLATES

# CLI flag dest -> settings key
_SETTING_FLAGS = {
    "image_duration": "image_duration",
    "transition_duration": "transition_duration",
    "ken_burns_intensity": "ken_burns_intensity",
    "image_scale": "image_scale",
    "video_scale": "video_scale",
    "blur": "blur",
    "shadow": "shadow",
    "padding_color": "padding_color",
    "quality": "quality",
    "resolution": "resolution",
    "frame_rate": "frame_rate",
    "music_volume": "music_volume",
    "audio_fade": "audio_fade",
}


def _id_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memorial_video",
        description="Compile photos, video clips and music into a memorial video with ffmpeg.",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to a YAML config file")
    parser.add_argument("--media-dir", type=Path, default=None, help="Media root (default: ./media)")
    parser.add_argument("--cache-dir", type=Path, default=None, help="Cache directory (default: ./cache)")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("media", help="List selectable media and selection requirements")

    gen = sub.add_parser("generate", help="Start generating a video for a selection")
    gen.add_argument("--request", type=Path, default=None, help="JSON file with a full generate request")
    gen.add_argument("--template", type=str, default=None, choices=list(TEMPLATES))
    gen.add_argument("--images", type=_id_list, default=None, help="Comma-separated image ids, in order")
    gen.add_argument("--videos", type=_id_list, default=None, help="Comma-separated video ids")
    gen.add_argument("--audio", type=str, default=None, help="Audio track id")
    gen.add_argument("--background", type=str, default=None, help="Background image id")
    gen.add_argument("--image-duration", type=float, default=None)
    gen.add_argument("--transition-duration", type=float, default=None)
    gen.add_argument("--ken-burns-intensity", type=float, default=None)
    gen.add_argument("--image-scale", type=float, default=None)
    gen.add_argument("--video-scale", type=float, default=None)
    gen.add_argument("--blur", type=float, default=None, help="Background blur radius")
    gen.add_argument("--shadow", action="store_true", default=None, help="Drop shadow under media")
    gen.add_argument("--padding-color", type=str, default=None)
    gen.add_argument("--quality", type=str, default=None, choices=sorted(QUALITY_PRESETS))
    gen.add_argument("--resolution", type=str, default=None, help="480p, 720p, 1080p or WIDTHxHEIGHT")
    gen.add_argument("--frame-rate", type=int, default=None, choices=list(FRAME_RATES))
    gen.add_argument("--music-volume", type=float, default=None)
    gen.add_argument("--no-audio-fade", dest="audio_fade", action="store_false", default=None)
    gen.add_argument("--transitions", type=_id_list, default=None, help="Override transition set")
    gen.add_argument("--ken-burns-patterns", type=_id_list, default=None, help="Override pan/zoom patterns")
    gen.add_argument("--force", action="store_true", help="Ignore and replace a cached video")
    gen.add_argument("--wait", action="store_true", help="Block until the encode finishes")
    gen.add_argument("--timeout", type=float, default=None, help="Seconds to wait with --wait")

    prog = sub.add_parser("progress", help="Report progress of a generation job")
    target = prog.add_mutually_exclusive_group(required=True)
    target.add_argument("--cache-key", type=str)
    target.add_argument("--template", type=str)

    sub.add_parser("history", help="List cached videos, newest first")

    delete = sub.add_parser("delete", help="Delete a cached video")
    delete.add_argument("cache_key", type=str)

    sub.add_parser("sweep", help="Delete expired cache files")
    sub.add_parser("print-config", help="Print the effective configuration")

    return parser


def load_effective_config(args: argparse.Namespace, environ=None) -> Dict[str, Any]:
    config_values: Dict[str, Any] = {}
    if args.config is not None:
        config_values = load_yaml_config(args.config)
    cli_values = normalize_config(
        {k: v for k, v in {
            "media_dir": args.media_dir,
            "cache_dir": args.cache_dir,
            "log_level": args.log_level,
        }.items() if v is not None},
        Path.cwd(),
    )
    return build_effective_config(
        build_config_defaults(),
        config_values,
        env_config_values(environ),
        cli_values,
        cli_values.keys(),
    )


def build_generate_request(args: argparse.Namespace) -> Dict[str, Any]:
    request: Dict[str, Any] = {}
    if args.request is not None:
        request = json.loads(args.request.read_text(encoding="utf-8"))
        if not isinstance(request, dict):
            raise ValueError("--request file must contain a JSON object")

    for key in ("template", "images", "videos", "audio", "background"):
        value = getattr(args, key)
        if value is not None:
            request[key] = value

    settings = dict(request.get("settings") or {})
    for dest, key in _SETTING_FLAGS.items():
        value = getattr(args, dest)
        if value is not None:
            settings[key] = value
    if settings:
        request["settings"] = settings

    if args.transitions is not None or args.ken_burns_patterns is not None:
        request["advancedOptions"] = {
            "enabled": True,
            "transitions": args.transitions or [],
            "kenBurnsPatterns": args.ken_burns_patterns or [],
        }
    if args.force:
        request["force"] = True
    return request


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        effective = load_effective_config(args)
    except (FileNotFoundError, ValueError) as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return 2

    setup_logging(effective.get("log_level") or "INFO", effective.get("log_file"))

    if args.command == "print-config":
        _emit(format_effective_config(effective))
        return 0

    service = MemorialVideoService(effective)

    if args.command == "media":
        _emit(service.media())
        return 0

    if args.command == "generate":
        try:
            request = build_generate_request(args)
        except ValueError as exc:
            print(f"invalid request: {exc}", file=sys.stderr)
            return 2
        result = service.generate(request)
        if args.wait and result.get("status") == "generating":
            try:
                result = service.wait(result["cache_key"], timeout=args.timeout)
            except EncodeFailed as exc:
                result = {"success": False, "status": "failed", "message": exc.message}
        _emit(result)
        return 0 if result.get("success", result.get("status") != "failed") else 1

    if args.command == "progress":
        result = service.progress(cache_key=args.cache_key, template=args.template)
        _emit(result)
        return 1 if result.get("status") == "failed" else 0

    if args.command == "history":
        _emit(service.history())
        return 0

    if args.command == "delete":
        result = service.delete(args.cache_key)
        _emit(result)
        return 0 if result["success"] else 1

    if args.command == "sweep":
        _emit({"deleted": service.sweep()})
        return 0

    parser.error(f"unknown command {args.command}")
    return 2
