"""End-to-end tests for the service facade with a stand-in encoder."""

from __future__ import annotations

from pathlib import Path

import pytest

from memorial_video.app import MemorialVideoService
from memorial_video.errors import EncodeFailed


def _request(images=15, videos=1, **extra):
    req = {
        "template": "classic",
        "images": [f"img_{i:02d}.jpg" for i in range(images)],
        "videos": [f"clip_{i}.mp4" for i in range(videos)],
    }
    req.update(extra)
    return req


@pytest.fixture
def service(tmp_path: Path, media_dir: Path, fake_popen, clock) -> MemorialVideoService:
    config = {"media_dir": media_dir, "cache_dir": tmp_path / "cache", "ffmpeg": "ffmpeg"}
    return MemorialVideoService(config, probe=lambda p: 6.0, popen=fake_popen, clock=clock)


def _finish(service: MemorialVideoService, fake_popen, cache_key: str, data: bytes = b"\x00" * 1024) -> None:
    service.cache.video_path(cache_key).write_bytes(data)
    fake_popen.calls[-1].finish(0)


def test_generate_starts_job(service, fake_popen) -> None:
    result = service.generate(_request())

    assert result["success"] is True
    assert result["status"] == "generating"
    assert result["cache_key"].startswith("memorial_video_classic_")
    assert result["expected_duration"] == pytest.approx(51.0)
    assert len(fake_popen.calls) == 1
    argv = fake_popen.calls[0].argv
    assert argv[0] == "ffmpeg"
    assert argv[-1] == str(service.cache.video_path(result["cache_key"]))
    metadata = service.cache.load_metadata(result["cache_key"])
    assert metadata["image_count"] == 15
    assert metadata["selection"]["images"][0] == "img_00.jpg"
    assert "images" not in metadata


def test_scenario_b_too_few_images(service, fake_popen, tmp_path: Path) -> None:
    result = service.generate(_request(images=14))

    assert result == {
        "success": False,
        "status": "failed",
        "message": "Images must be between 15 and 40. Received: 14",
        "error": "invalid_selection",
    }
    assert fake_popen.calls == []
    assert not (tmp_path / "cache" / "status").exists()


def test_scenario_c_probe_failure_uses_default(tmp_path: Path, media_dir: Path, fake_popen, clock) -> None:
    service = MemorialVideoService(
        {"media_dir": media_dir, "cache_dir": tmp_path / "cache"},
        probe=lambda p: -1.0,
        popen=fake_popen,
        clock=clock,
    )
    result = service.generate(_request())
    # 15 x 4s + 4s fallback clip - 15 x 1s transitions
    assert result["expected_duration"] == pytest.approx(49.0)


def test_scenario_d_duplicate_generate_spawns_once(service, fake_popen) -> None:
    first = service.generate(_request())
    second = service.generate(_request())

    assert first["status"] == second["status"] == "generating"
    assert second["message"] == "Video generation already in progress"
    assert second["cache_key"] == first["cache_key"]
    assert len(fake_popen.calls) == 1


def test_full_lifecycle_and_cache_hit(service, fake_popen) -> None:
    key = service.generate(_request())["cache_key"]
    assert service.progress(cache_key=key) == {"status": "generating", "progress": 5}

    _finish(service, fake_popen, key)
    done = service.progress(cache_key=key)
    assert done == {"status": "completed", "progress": 100, "video_url": f"/cache/{key}.mp4"}
    assert service.progress(cache_key=key) == done

    cached = service.generate(_request())
    assert cached["status"] == "cached"
    assert cached["video_url"] == done["video_url"]
    assert len(fake_popen.calls) == 1


def test_force_regenerates(service, fake_popen) -> None:
    key = service.generate(_request())["cache_key"]
    _finish(service, fake_popen, key)
    service.progress(cache_key=key)

    result = service.generate(_request(force=True))

    assert result["status"] == "generating"
    assert len(fake_popen.calls) == 2
    assert not service.cache.video_path(key).exists()


def test_progress_by_template(service) -> None:
    assert service.progress(template="modern") == {"status": "idle", "progress": 0}
    service.generate(_request(template="modern"))
    assert service.progress(template="modern")["status"] == "generating"
    assert service.progress() == {"status": "idle", "progress": 0}


def test_completed_video_reported_after_status_expiry(service, fake_popen, clock) -> None:
    key = service.generate(_request())["cache_key"]
    _finish(service, fake_popen, key)
    service.progress(cache_key=key)
    service.cache.clear_status(key)

    assert service.progress(cache_key=key)["status"] == "completed"


def test_invalid_media_id(service, fake_popen) -> None:
    result = service.generate(_request(audio="missing.mp3"))
    assert result["status"] == "failed"
    assert result["error"] == "invalid_media"
    assert result["message"] == "Invalid audio ID: missing.mp3"
    assert fake_popen.calls == []


def test_unexpected_error_is_reported_generically(service, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(service.catalog, "resolve", boom)
    result = service.generate(_request())
    assert result["status"] == "failed"
    assert result["error"] == "internal_error"
    assert "disk on fire" not in result["message"]


def test_history_and_delete(service, fake_popen) -> None:
    key = service.generate(_request())["cache_key"]
    assert service.delete(key) == {"success": False, "message": "Video is still being generated"}

    _finish(service, fake_popen, key, b"\x00" * 2048)
    service.progress(cache_key=key)

    history = service.history()
    assert history["count"] == 1
    video = history["videos"][0]
    assert video["cache_key"] == key
    assert video["size_formatted"] == "2 KB"
    assert video["template"] == "classic"
    assert video["selection"]["images"] == [f"img_{i:02d}.jpg" for i in range(15)]
    assert set(video["selection"]) == {"images", "videos", "audio", "background"}
    assert video["settings"]["image_duration"] == 4.0

    assert service.delete(key)["success"] is True
    assert service.history()["count"] == 0
    assert service.progress(cache_key=key) == {"status": "idle", "progress": 0}
    assert service.delete("not/a/key")["message"] == "Invalid cache key"


def test_wait_raises_on_failure(service, fake_popen) -> None:
    key = service.generate(_request())["cache_key"]
    fake_popen.calls[-1].finish(1)
    with pytest.raises(EncodeFailed):
        service.wait(key, timeout=1, interval=0)


def test_media_payload(service) -> None:
    media = service.media()
    assert len(media["images"]) == 20
    assert media["requirements"]["videos"] == {"min": 1, "max": 5}
