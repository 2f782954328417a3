"""Service facade for memorial video generation.

Wires the catalog, planner, effect selector, command builder, cache and job
runner together behind the generate / progress / history / delete / media
operations. Every method returns plain dicts so a web layer can serialise
them directly; library errors never escape as tracebacks.
"""
from __future__ import annotations

import logging
import random
import subprocess
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from .cache import CacheManager, STATUS_FAILED, STATUS_GENERATING, is_valid_key
from .catalog import MediaCatalog, MediaKind
from .config import build_config_defaults
from .effects import EffectSelector
from .errors import EncodeFailed, MemorialVideoError
from .jobs import JobRunner
from .render import build_render_command
from .selection import normalize_template, parse_generate_request, validate_selection
from .store import FileStatusStore, StatusStore
from .timeline import plan_timeline, summarize_timeline
from .utils import format_bytes

logger = logging.getLogger(__name__)


def _seeded_selector(cache_key: str) -> EffectSelector:
    # a cache key always renders with the same effects
    return EffectSelector(random.Random(cache_key))


def _failure(exc: MemorialVideoError) -> Dict[str, Any]:
    return {
        "success": False,
        "status": STATUS_FAILED,
        "message": exc.message,
        "error": exc.code,
    }


class MemorialVideoService:
    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        *,
        store: Optional[StatusStore] = None,
        probe: Optional[Callable[[Path], float]] = None,
        popen: Callable[..., Any] = subprocess.Popen,
        clock: Callable[[], float] = time.time,
        selector_factory: Callable[[str], EffectSelector] = _seeded_selector,
    ) -> None:
        cfg = build_config_defaults()
        cfg.update({k: v for k, v in (config or {}).items() if v is not None})
        self.config = cfg

        cache_dir = Path(cfg["cache_dir"])
        self.ffmpeg = str(cfg["ffmpeg"])
        self.catalog = MediaCatalog(Path(cfg["media_dir"]), ffprobe=str(cfg["ffprobe"]), probe=probe)
        self.cache = CacheManager(
            cache_dir,
            store if store is not None else FileStatusStore(cache_dir / "status", clock=clock),
            cache_url=str(cfg["cache_url"]),
            ttl_seconds=float(cfg["cache_ttl_hours"]) * 3600,
            status_ttl_seconds=float(cfg["status_ttl_seconds"]),
            clock=clock,
        )
        self.runner = JobRunner(
            self.cache,
            completion_marker=str(cfg["completion_marker"]),
            marker_grace_seconds=float(cfg["marker_grace_seconds"]),
            clock=clock,
            popen=popen,
        )
        self.selector_factory = selector_factory

    # -- generate -----------------------------------------------------------

    def generate(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        """Start (or reuse) a compilation for the selection in ``request``.

        Returns ``{success, status: cached|generating|failed, ...}``.
        """
        try:
            return self._generate(request)
        except MemorialVideoError as exc:
            logger.warning("Video generation rejected: %s", exc.message)
            return _failure(exc)
        except Exception:
            logger.exception("Unexpected error while starting video generation")
            return {
                "success": False,
                "status": STATUS_FAILED,
                "message": "Video generation failed due to an internal error",
                "error": "internal_error",
            }

    def _generate(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        selection, force = parse_generate_request(request)
        validate_selection(selection)

        images = self.catalog.resolve(selection.image_ids, MediaKind.image)
        videos = self.catalog.resolve(selection.video_ids, MediaKind.video)
        audio = self.catalog.resolve_one(selection.audio_id, MediaKind.audio)
        background = self.catalog.resolve_one(selection.background_id, MediaKind.background)

        cache_key = self.cache.fingerprint(selection)
        self.cache.remember_latest(selection.template, cache_key)

        status = self.cache.get_status(cache_key)
        if status and status.get("status") == STATUS_GENERATING:
            return self._in_progress(cache_key)

        if force:
            if self.cache.remove_output(cache_key):
                logger.info("Forced regeneration of %s; cached output removed", cache_key)
        else:
            cached = self.cache.get_cached(cache_key)
            if cached is not None:
                logger.info("Serving %s from cache", cache_key)
                return {
                    "success": True,
                    "status": "cached",
                    "video_url": self.cache.video_url(cached),
                    "message": "Video loaded from cache",
                    "cache_key": cache_key,
                }

        settings = selection.settings
        timeline = plan_timeline(
            images,
            videos,
            image_duration=settings.image_duration,
            transition_duration=settings.transition_duration,
            video_duration=self.catalog.video_duration,
        )
        self.selector_factory(cache_key).annotate(
            timeline, selection.template, settings, selection.advanced
        )

        output_path = self.cache.video_path(cache_key)
        render = build_render_command(
            timeline,
            settings,
            output_path,
            audio_path=audio,
            background_path=background,
            ffmpeg=self.ffmpeg,
        )

        summary = summarize_timeline(timeline)
        canonical = selection.to_dict()
        metadata = {
            "template": selection.template,
            "selection": {
                "images": canonical["images"],
                "videos": canonical["videos"],
                "audio": canonical["audio"],
                "background": canonical["background"],
            },
            "settings": canonical["settings"],
            "advanced": canonical["advanced"],
        }
        metadata.update(
            {
                "cache_key": cache_key,
                "image_count": len(images),
                "video_count": len(videos),
                "total_duration": summary["total_duration"],
            }
        )
        self.cache.save_metadata(cache_key, metadata)

        result = self.runner.start(
            cache_key,
            render.argv,
            output_path,
            render.total_duration,
            data={"template": selection.template},
        )
        if not result.started:
            return self._in_progress(cache_key)

        return {
            "success": True,
            "status": STATUS_GENERATING,
            "message": "Video generation started",
            "cache_key": cache_key,
            "expected_duration": render.total_duration,
        }

    @staticmethod
    def _in_progress(cache_key: str) -> Dict[str, Any]:
        return {
            "success": True,
            "status": STATUS_GENERATING,
            "message": "Video generation already in progress",
            "cache_key": cache_key,
        }

    # -- progress -----------------------------------------------------------

    def progress(self, cache_key: Optional[str] = None, template: Optional[str] = None) -> Dict[str, Any]:
        """Poll a job by cache key, or the latest job started for ``template``."""
        if not cache_key and template:
            cache_key = self.cache.latest_key(normalize_template(template))
        if not cache_key or not is_valid_key(cache_key):
            return {"status": "idle", "progress": 0}

        try:
            result = self.runner.poll(cache_key)
        except Exception:
            logger.exception("Failed to poll generation status for %s", cache_key)
            return {"status": STATUS_FAILED, "progress": 0, "error": "Unable to read generation status"}

        if result["status"] == "idle":
            # Status records expire well before cached output does.
            cached = self.cache.get_cached(cache_key)
            if cached is not None:
                return {"status": "completed", "progress": 100, "video_url": self.cache.video_url(cached)}
        return result

    def wait(self, cache_key: str, timeout: Optional[float] = None, interval: float = 0.5) -> Dict[str, Any]:
        """Block until the job finishes. Raises EncodeFailed if it failed."""
        result = self.runner.wait(cache_key, timeout=timeout, interval=interval)
        if result["status"] == STATUS_FAILED:
            raise EncodeFailed(result.get("error") or "Video generation failed")
        return result

    # -- history ------------------------------------------------------------

    def history(self) -> Dict[str, Any]:
        videos = []
        for entry in self.cache.list_all():
            item = entry.to_dict()
            item["size_formatted"] = format_bytes(entry.size)
            videos.append(item)
        return {"success": True, "videos": videos, "count": len(videos)}

    def delete(self, cache_key: str) -> Dict[str, Any]:
        if not is_valid_key(cache_key or ""):
            return {"success": False, "message": "Invalid cache key"}
        status = self.cache.get_status(cache_key)
        if status and status.get("status") == STATUS_GENERATING:
            return {"success": False, "message": "Video is still being generated"}
        result = self.cache.delete(cache_key)
        if result["success"]:
            self.cache.clear_status(cache_key)
        return result

    # -- media / maintenance -------------------------------------------------

    def media(self) -> Dict[str, Any]:
        return self.catalog.all_media()

    def sweep(self) -> int:
        return self.cache.sweep()
