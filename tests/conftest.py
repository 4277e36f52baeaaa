"""Shared fakes and fixtures: a scripted engine, a scripted frame extractor, PNG payloads."""

from __future__ import annotations

import io
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import numpy as np
import pytest
from PIL import Image

from mediaclassify.media.acquisition import MediaResolver
from mediaclassify.media.frames import pair_frames
from mediaclassify.pipeline.classifier import MediaClassifier
from mediaclassify.pipeline.requests import ClassifyOptions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from numpy.typing import NDArray

    from mediaclassify.media.frames import ExtractedFrame

LABELS = ("cat", "dog", "bird")
INPUT_SIZE = 8


def make_png(color: tuple[int, int, int] = (200, 30, 30), size: tuple[int, int] = (16, 12)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeEngine:
    """Engine returning a fixed score row per input, optionally per batch position."""

    def __init__(
        self,
        row: list[float] | None = None,
        *,
        num_classes: int = len(LABELS),
        output_width: int | None = None,
        input_shape: tuple[object, ...] = (None, INPUT_SIZE, INPUT_SIZE, 3),
    ) -> None:
        self.row = np.asarray(row if row is not None else [0.7, 0.2, 0.1][:num_classes], dtype=np.float32)
        self.num_classes = num_classes
        self._output_width = output_width
        self._input_shape = input_shape
        self.batch_sizes: list[int] = []

    @property
    def backend(self) -> str:
        return "FakeExecutionProvider"

    @property
    def input_shape(self) -> tuple[object, ...]:
        return self._input_shape

    @property
    def output_width(self) -> int | None:
        return self._output_width

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        assert batch.dtype == np.float32
        assert batch.min() >= -1.0 and batch.max() <= 1.0
        self.batch_sizes.append(batch.shape[0])
        return np.tile(self.row, (batch.shape[0], 1))


class FakeExtractor:
    """Frame extractor that returns canned PNG frames and records its calls.

    ``uniform_frames`` and ``seek_frames`` hold one entry per sampled slot; a
    ``None`` entry is a timestamp that yielded no frame.
    """

    def __init__(
        self,
        *,
        duration: float | None = 2.0,
        frame: bytes | None = None,
        uniform_frames: list[bytes | None] | None = None,
        seek_frames: list[bytes | None] | None = None,
    ) -> None:
        self.duration = duration
        self.frame = frame if frame is not None else make_png((10, 200, 10))
        self.uniform_frames = uniform_frames
        self.seek_frames = seek_frames
        self.probed: list[bytes | Path] = []
        self.seek_calls: list[tuple[bytes | Path, list[float], int]] = []
        self.uniform_calls: list[tuple[int, float]] = []
        self.seen_paths: list[Path] = []

    async def probe_duration(self, source: bytes | Path) -> float | None:
        self.probed.append(source)
        return self.duration

    async def extract(
        self, source: bytes | Path, timestamps: list[float], *, concurrency: int = 1
    ) -> list[ExtractedFrame]:
        self.seek_calls.append((source, list(timestamps), concurrency))
        if isinstance(source, Path):
            assert source.is_file()
            self.seen_paths.append(source)
        if self.seek_frames is not None:
            return pair_frames(timestamps, self.seek_frames)
        return pair_frames(timestamps, [self.frame] * len(timestamps))

    async def extract_uniform(self, source: bytes, timestamps: list[float], duration_sec: float) -> list[ExtractedFrame]:
        assert isinstance(source, bytes)
        self.uniform_calls.append((len(timestamps), duration_sec))
        if self.uniform_frames is not None:
            return pair_frames(timestamps, self.uniform_frames)
        return pair_frames(timestamps, [self.frame] * len(timestamps))


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture()
def http_routes() -> dict[str, tuple[int, bytes]]:
    """URL -> (status, body) table served by the mock transport."""
    return {}


@pytest.fixture()
async def http_client(http_routes: dict[str, tuple[int, bytes]]) -> AsyncIterator[httpx.AsyncClient]:
    def handler(request: httpx.Request) -> httpx.Response:
        status_code, body = http_routes.get(str(request.url), (404, b"not found"))
        return httpx.Response(status_code, content=body)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        yield client


@pytest.fixture()
def make_classifier(http_client: httpx.AsyncClient) -> Callable[..., MediaClassifier]:
    """Factory building a classifier around fakes; no pool so work runs in-process."""

    def factory(
        *,
        engine: FakeEngine | None = None,
        extractor: FakeExtractor | None = None,
        labels: tuple[str, ...] = LABELS,
        defaults: ClassifyOptions | None = None,
    ) -> MediaClassifier:
        return MediaClassifier(
            engine=engine or FakeEngine(num_classes=len(labels)),
            labels=labels,
            resolver=MediaResolver(http_client, retries=0),
            extractor=extractor or FakeExtractor(),
            defaults=defaults or ClassifyOptions(preprocess_concurrency=2),
            source="memory://test",
        )

    return factory
