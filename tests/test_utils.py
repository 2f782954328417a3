"""Tests for `memorial_video.utils` utilities."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

import pytest

from memorial_video.utils import format_bytes, parse_exif_datetime, read_tail, split_log_lines, stable_hash


def test_parse_exif_datetime() -> None:
    assert parse_exif_datetime("2023:05:17 14:03:22") == datetime(2023, 5, 17, 14, 3, 22)
    assert parse_exif_datetime(b"2023:05:17 14:03:22\x00") == datetime(2023, 5, 17, 14, 3, 22)


@pytest.mark.parametrize("invalid", ["2023-05-17 14:03:22", "", "0000:00:00 00:00:00"])
def test_parse_exif_datetime_invalid(invalid: str) -> None:
    with pytest.raises(ValueError):
        parse_exif_datetime(invalid)


def test_stable_hash_ignores_key_order() -> None:
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})
    assert stable_hash({"a": [1, 2]}) != stable_hash({"a": [2, 1]})
    assert len(stable_hash({"a": 1})) == 12


@pytest.mark.parametrize(
    "size,expected",
    [(0, "0 B"), (512, "512 B"), (2048, "2 KB"), (5 * 1024 * 1024, "5 MB"), (1536, "1.5 KB")],
)
def test_format_bytes(size: int, expected: str) -> None:
    assert format_bytes(size) == expected


def test_read_tail_missing_and_truncated(tmp_path: Path) -> None:
    assert read_tail(tmp_path / "missing.log") == ""
    log = tmp_path / "ffmpeg.log"
    log.write_text("a" * 100 + "END", encoding="utf-8")
    assert read_tail(log, max_bytes=3) == "END"


def test_split_log_lines_handles_carriage_returns() -> None:
    text = "header\nframe=1 time=00:00:01.00\rframe=2 time=00:00:02.00\r\n\nfooter"
    assert split_log_lines(text) == [
        "header",
        "frame=1 time=00:00:01.00",
        "frame=2 time=00:00:02.00",
        "footer",
    ]
