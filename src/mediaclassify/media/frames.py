"""Frame sampling and ffmpeg-backed frame extraction.

Extraction is best effort: a timestamp that yields no frame is dropped, and
an empty result means "no frames obtained", not an error.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from mediaclassify.errors import FfmpegUnavailableError
from mediaclassify.pipeline.pool import run_bounded

logger = logging.getLogger(__name__)

DEFAULT_MARGIN_SEC: float = 0.05
RETRY_SEEK_BACKOFF_SEC: float = 0.1
MIN_SAMPLING_FPS: float = 0.1
MAX_SAMPLING_FPS: float = 60.0

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def sample_timestamps(duration_sec: float, count: int) -> list[float]:
    """Return ``count`` timestamps at the midpoints of equal sub-intervals."""
    if duration_sec <= 0 or count <= 0:
        return []
    return [(k + 0.5) / count * duration_sec for k in range(count)]


def clamp_timestamps(
    duration_sec: float,
    timestamps: list[float],
    margin_sec: float = DEFAULT_MARGIN_SEC,
) -> list[float]:
    """Clamp timestamps into ``[0, duration - margin]`` to avoid seeking past the end."""
    upper = max(0.0, duration_sec - max(0.0, margin_sec))
    return [min(max(0.0, t), upper) for t in timestamps]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_duration(stderr: str) -> float | None:
    """Parse ``Duration: HH:MM:SS.xx`` from ffmpeg's stderr."""
    match = _DURATION_RE.search(stderr)
    if match is None:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def split_png_stream(data: bytes) -> list[bytes]:
    """Split concatenated PNG images on the PNG signature."""
    starts: list[int] = []
    pos = data.find(PNG_SIGNATURE)
    while pos != -1:
        starts.append(pos)
        pos = data.find(PNG_SIGNATURE, pos + len(PNG_SIGNATURE))
    ends = [*starts[1:], len(data)]
    return [data[start:end] for start, end in zip(starts, ends, strict=True)]


# ---------------------------------------------------------------------------
# Extraction collaborator
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExtractedFrame:
    """An encoded still paired with the sampling slot that produced it."""

    index: int
    timestamp_sec: float
    data: bytes


def pair_frames(timestamps: Sequence[float], buffers: Sequence[bytes | None]) -> list[ExtractedFrame]:
    """Pair buffers with timestamps by position, skipping empty slots."""
    return [
        ExtractedFrame(index=i, timestamp_sec=t, data=buf)
        for i, (t, buf) in enumerate(zip(timestamps, buffers, strict=False))
        if buf
    ]


class FrameExtractor(Protocol):
    """Protocol for duration probing and still-frame extraction."""

    async def probe_duration(self, source: bytes | Path) -> float | None:
        """Return the media duration in seconds, or None if unknown."""
        ...

    async def extract(
        self, source: bytes | Path, timestamps: list[float], *, concurrency: int = 1
    ) -> list[ExtractedFrame]:
        """Return one frame per timestamp that produced one, tagged with that timestamp."""
        ...

    async def extract_uniform(self, source: bytes, timestamps: list[float], duration_sec: float) -> list[ExtractedFrame]:
        """Return up to ``len(timestamps)`` evenly spaced frames in a single pass."""
        ...


def resolve_ffmpeg(ffmpeg_path: str) -> str:
    """Return the ffmpeg executable path.

    Raises:
        FfmpegUnavailableError: If the executable cannot be found.
    """
    resolved = shutil.which(ffmpeg_path)
    if resolved is None:
        raise FfmpegUnavailableError(
            f"FFmpeg is required but not available at '{ffmpeg_path}'. Install ffmpeg or set MEDIACLASSIFY_FFMPEG_PATH."
        )
    return resolved


class FfmpegFrameExtractor:
    """Frame extraction and duration probing through ffmpeg subprocesses."""

    def __init__(self, ffmpeg_path: str = "ffmpeg") -> None:
        self._configured_path = ffmpeg_path
        self._executable: str | None = None

    @property
    def executable(self) -> str:
        if self._executable is None:
            self._executable = resolve_ffmpeg(self._configured_path)
        return self._executable

    async def probe_duration(self, source: bytes | Path) -> float | None:
        _, stderr = await self._run(["-hide_banner", "-i", _input_arg(source)], source)
        return parse_duration(stderr.decode(errors="replace"))

    async def extract(
        self, source: bytes | Path, timestamps: list[float], *, concurrency: int = 1
    ) -> list[ExtractedFrame]:
        jobs = [lambda t=t: self._extract_one(source, t) for t in timestamps]
        outcomes = await run_bounded(jobs, concurrency)
        buffers: list[bytes | None] = []
        for t, outcome in zip(timestamps, outcomes, strict=True):
            if not outcome.ok:
                logger.warning("Frame extraction at %.3fs failed: %s", t, outcome.error)
            buffers.append(outcome.value if outcome.ok else None)
        return pair_frames(timestamps, buffers)

    async def extract_uniform(self, source: bytes, timestamps: list[float], duration_sec: float) -> list[ExtractedFrame]:
        # The fps filter emits frames in order, so output k belongs to slot k.
        count = len(timestamps)
        if count == 0:
            return []
        fps = max(MIN_SAMPLING_FPS, min(MAX_SAMPLING_FPS, count / max(MIN_SAMPLING_FPS, duration_sec)))
        args = [
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-i",
            "pipe:0",
            "-vf",
            f"fps={fps}",
            "-vsync",
            "vfr",
            "-frames:v",
            str(count),
            "-f",
            "image2pipe",
            "-vcodec",
            "png",
            "-",
        ]
        stdout, _ = await self._run(args, source)
        return pair_frames(timestamps, split_png_stream(stdout)[:count])

    async def _extract_one(self, source: bytes | Path, timestamp: float) -> bytes | None:
        seek = max(0.0, timestamp)
        frame = await self._seek_frame(source, seek)
        if not frame:
            frame = await self._seek_frame(source, max(0.0, seek - RETRY_SEEK_BACKOFF_SEC))
        if not frame:
            logger.debug("No frame at %.3fs", seek)
        return frame or None

    async def _seek_frame(self, source: bytes | Path, seek: float) -> bytes:
        args = [
            "-hide_banner",
            "-loglevel",
            "error",
            "-y",
            "-ss",
            f"{seek:.3f}",
            "-i",
            _input_arg(source),
            "-frames:v",
            "1",
            "-f",
            "image2pipe",
            "-vcodec",
            "png",
            "-",
        ]
        stdout, _ = await self._run(args, source)
        return stdout

    async def _run(self, args: list[str], source: bytes | Path) -> tuple[bytes, bytes]:
        feed = source if isinstance(source, bytes) else None
        process = await asyncio.create_subprocess_exec(
            self.executable,
            *args,
            stdin=asyncio.subprocess.PIPE if feed is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        # ffmpeg may stop reading stdin early; communicate() tolerates the broken pipe.
        stdout, stderr = await process.communicate(input=feed)
        return stdout, stderr


def _input_arg(source: bytes | Path) -> str:
    return "pipe:0" if isinstance(source, bytes) else str(source)
