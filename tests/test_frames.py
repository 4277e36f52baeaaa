"""Tests for frame sampling, ffmpeg output parsing and extraction retries."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_png
from mediaclassify.errors import FfmpegUnavailableError
from mediaclassify.media.frames import (
    FfmpegFrameExtractor,
    clamp_timestamps,
    pair_frames,
    parse_duration,
    resolve_ffmpeg,
    sample_timestamps,
    split_png_stream,
)

# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


class TestSampleTimestamps:
    def test_midpoints_of_equal_intervals(self) -> None:
        assert sample_timestamps(10.0, 4) == pytest.approx([1.25, 3.75, 6.25, 8.75])

    def test_single_frame_is_the_middle(self) -> None:
        assert sample_timestamps(3.0, 1) == pytest.approx([1.5])

    def test_strictly_increasing_and_inside_duration(self) -> None:
        stamps = sample_timestamps(7.3, 9)
        assert len(stamps) == 9
        assert all(a < b for a, b in zip(stamps, stamps[1:]))
        assert 0 < stamps[0] and stamps[-1] < 7.3

    @pytest.mark.parametrize(("duration", "count"), [(0.0, 5), (-1.0, 5), (10.0, 0)])
    def test_degenerate_inputs_return_nothing(self, duration: float, count: int) -> None:
        assert sample_timestamps(duration, count) == []


class TestClampTimestamps:
    def test_caps_near_the_end(self) -> None:
        assert clamp_timestamps(10.0, [9.99], margin_sec=0.05) == pytest.approx([9.95])

    def test_never_below_zero(self) -> None:
        assert clamp_timestamps(10.0, [-1.0], margin_sec=0.05) == [0.0]

    def test_clamps_into_range_with_margin(self) -> None:
        assert clamp_timestamps(1.0, [-1.0, 0.5, 2.0]) == pytest.approx([0.0, 0.5, 0.95])

    def test_margin_larger_than_duration(self) -> None:
        assert clamp_timestamps(0.02, [0.01]) == [0.0]

    def test_negative_margin_treated_as_zero(self) -> None:
        assert clamp_timestamps(2.0, [3.0], margin_sec=-1.0) == [2.0]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseDuration:
    def test_parses_ffmpeg_banner(self) -> None:
        stderr = "Input #0, mov,mp4, from 'pipe:0':\n  Duration: 00:01:02.50, start: 0.000000, bitrate: N/A\n"
        assert parse_duration(stderr) == pytest.approx(62.5)

    def test_hours_are_included(self) -> None:
        assert parse_duration("Duration: 01:00:00.00") == pytest.approx(3600.0)

    def test_missing_duration(self) -> None:
        assert parse_duration("pipe:0: Invalid data found when processing input") is None

    def test_na_duration(self) -> None:
        assert parse_duration("Duration: N/A, bitrate: N/A") is None


class TestSplitPngStream:
    def test_splits_concatenated_images(self) -> None:
        first, second = make_png((255, 0, 0)), make_png((0, 0, 255), size=(4, 4))
        assert split_png_stream(first + second) == [first, second]

    def test_empty_stream(self) -> None:
        assert split_png_stream(b"") == []

    def test_leading_garbage_is_ignored(self) -> None:
        png = make_png()
        assert split_png_stream(b"junk" + png) == [png]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class TestResolveFfmpeg:
    def test_missing_executable_raises(self) -> None:
        with pytest.raises(FfmpegUnavailableError, match="FFmpeg is required"):
            resolve_ffmpeg("definitely-not-an-ffmpeg-binary")


class TestFfmpegFrameExtractor:
    async def test_missing_frames_are_retried_then_dropped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        seeks: list[float] = []

        async def fake_seek(self: FfmpegFrameExtractor, source: bytes | Path, seek: float) -> bytes:
            seeks.append(round(seek, 3))
            if seek == pytest.approx(2.0):
                return b""  # past the last frame, retry lands at 1.9
            if seek == pytest.approx(3.0) or seek == pytest.approx(2.9):
                return b""
            return f"frame@{seek:.1f}".encode()

        monkeypatch.setattr(FfmpegFrameExtractor, "_seek_frame", fake_seek)
        extractor = FfmpegFrameExtractor("ffmpeg")

        frames = await extractor.extract(Path("video.mp4"), [1.0, 2.0, 3.0], concurrency=2)

        assert [f.data for f in frames] == [b"frame@1.0", b"frame@1.9"]
        assert [f.timestamp_sec for f in frames] == [1.0, 2.0]
        assert [f.index for f in frames] == [0, 1]
        assert sorted(seeks) == [1.0, 1.9, 2.0, 2.9, 3.0]

    async def test_failing_timestamp_does_not_abort_the_rest(self, monkeypatch: pytest.MonkeyPatch) -> None:
        async def fake_seek(self: FfmpegFrameExtractor, source: bytes | Path, seek: float) -> bytes:
            if seek < 0.5:
                raise OSError("ffmpeg crashed")
            return b"ok"

        monkeypatch.setattr(FfmpegFrameExtractor, "_seek_frame", fake_seek)

        frames = await FfmpegFrameExtractor().extract(Path("video.mp4"), [0.1, 1.0])

        assert [(f.index, f.timestamp_sec, f.data) for f in frames] == [(1, 1.0, b"ok")]


class TestPairFrames:
    def test_empty_slots_keep_later_timestamps(self) -> None:
        frames = pair_frames([0.5, 1.5, 2.5], [None, b"b", b"c"])
        assert [(f.index, f.timestamp_sec) for f in frames] == [(1, 1.5), (2, 2.5)]

    def test_short_single_pass_output(self) -> None:
        frames = pair_frames([0.5, 1.5, 2.5], [b"a", b"b"])
        assert [f.timestamp_sec for f in frames] == [0.5, 1.5]
