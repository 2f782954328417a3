from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

import yaml

CONFIG_KEYS = {
    "media_dir",
    "cache_dir",
    "cache_url",
    "cache_ttl_hours",
    "status_ttl_seconds",
    "ffmpeg",
    "ffprobe",
    "completion_marker",
    "marker_grace_seconds",
    "log_level",
    "log_file",
}

PATH_KEYS = {"media_dir", "cache_dir", "log_file"}

FLOAT_KEYS = {"cache_ttl_hours", "status_ttl_seconds", "marker_grace_seconds"}

ENV_OVERRIDES = {
    "MEMORIAL_VIDEO_FFMPEG": "ffmpeg",
    "MEMORIAL_VIDEO_FFPROBE": "ffprobe",
    "MEMORIAL_VIDEO_LOG_LEVEL": "log_level",
    "MEMORIAL_VIDEO_MEDIA_DIR": "media_dir",
    "MEMORIAL_VIDEO_CACHE_DIR": "cache_dir",
}

CONFIG_PRINT_ORDER = [
    "media_dir",
    "cache_dir",
    "cache_url",
    "cache_ttl_hours",
    "status_ttl_seconds",
    "ffmpeg",
    "ffprobe",
    "completion_marker",
    "marker_grace_seconds",
    "log_level",
    "log_file",
]


def build_config_defaults() -> Dict[str, Any]:
    return {
        "media_dir": Path("./media"),
        "cache_dir": Path("./cache"),
        "cache_url": "/cache/",
        "cache_ttl_hours": 24.0,
        "status_ttl_seconds": 3600.0,
        "ffmpeg": "ffmpeg",
        "ffprobe": "ffprobe",
        # ffmpeg prints this trailer only after the muxer has finished writing.
        "completion_marker": "muxing overhead:",
        "marker_grace_seconds": 30.0,
        "log_level": "INFO",
        "log_file": None,
    }


def load_yaml_config(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping")
    return normalize_config(data, path.parent)


def normalize_config(raw: Mapping[str, Any], base_dir: Path) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}

    for key, value in raw.items():
        if not isinstance(key, str):
            raise ValueError("Config keys must be strings")
        norm_key = key.strip().lower().replace("-", "_")
        if norm_key not in CONFIG_KEYS:
            raise ValueError(f"Unknown config key: {key}")

        if value is None:
            normalized[norm_key] = None
            continue

        if norm_key in PATH_KEYS:
            if not isinstance(value, (str, Path)):
                raise ValueError(f"Config key {key} must be a string path")
            normalized[norm_key] = _resolve_path(Path(value), base_dir)
            continue

        if norm_key in FLOAT_KEYS:
            parsed = _parse_float_value(key, value)
            if parsed < 0:
                raise ValueError(f"Config key {key} must be >= 0")
            normalized[norm_key] = parsed
            continue

        if norm_key == "log_level":
            normalized[norm_key] = str(value).strip().upper()
            continue

        if not isinstance(value, str):
            raise ValueError(f"Config key {key} must be a string")
        normalized[norm_key] = value

    return normalized


def env_config_values(environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Collect config overrides from MEMORIAL_VIDEO_* environment variables."""
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        value = env.get(var, "").strip()
        if value:
            raw[key] = value
    return normalize_config(raw, Path.cwd())


def build_effective_config(
    base: Dict[str, Any],
    config_values: Dict[str, Any],
    env_values: Dict[str, Any],
    cli_values: Dict[str, Any],
    cli_provided: Iterable[str],
) -> Dict[str, Any]:
    """Layer defaults < config file < environment < explicit CLI flags."""
    effective = dict(base)

    for layer in (config_values, env_values):
        for key, value in layer.items():
            if value is not None:
                effective[key] = value

    for key in cli_provided:
        if key in cli_values and cli_values[key] is not None:
            effective[key] = cli_values[key]

    return effective


def format_effective_config(effective: Dict[str, Any]) -> Dict[str, Any]:
    output: Dict[str, Any] = {}
    for key in CONFIG_PRINT_ORDER:
        if key not in effective:
            continue
        value = effective[key]
        if isinstance(value, Path):
            output[key] = str(value)
        else:
            output[key] = value
    return output


def _resolve_path(path: Path, base_dir: Path) -> Path:
    path = path.expanduser()
    if path.is_absolute():
        return path
    return (base_dir / path).resolve(strict=False)


def _parse_float_value(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"Config key {name} must be a number")
    try:
        return float(value)
    except Exception as exc:
        raise ValueError(f"Config key {name} must be a number") from exc
