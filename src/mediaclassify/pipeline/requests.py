"""Classification request variants and per-call options.

The shape of a request (single image, image batch, single video, video
batch, mixed) is decided once by ``build_request``; handlers never re-sniff.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import TYPE_CHECKING

from mediaclassify.errors import InvalidInputError
from mediaclassify.media.acquisition import IoMode, MediaReference, ReferenceKind

if TYPE_CHECKING:
    from collections.abc import Sequence

    from mediaclassify.config import Settings

VIDEO_EXTENSIONS: frozenset[str] = frozenset(
    {".mp4", ".mov", ".m4v", ".webm", ".mkv", ".avi", ".gif", ".mpeg", ".mpg", ".3gp", ".ogv"}
)
VIDEO_DATA_URI_PREFIXES: tuple[str, ...] = ("data:video/", "data:image/gif")

MAX_EXTRACTION_CONCURRENCY = 16
MAX_PREPROCESS_CONCURRENCY = 32
DEFAULT_CPU_CONCURRENCY = 8


class MediaType(StrEnum):
    AUTO = "auto"
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class ImageRequest:
    reference: MediaReference


@dataclass(frozen=True)
class ImageBatchRequest:
    references: tuple[MediaReference, ...]


@dataclass(frozen=True)
class VideoRequest:
    reference: MediaReference


@dataclass(frozen=True)
class VideoBatchRequest:
    references: tuple[MediaReference, ...]


@dataclass(frozen=True)
class MixedRequest:
    images: tuple[MediaReference, ...]
    videos: tuple[MediaReference, ...]


ClassifyRequest = ImageRequest | ImageBatchRequest | VideoRequest | VideoBatchRequest | MixedRequest


@dataclass(frozen=True)
class ClassifyOptions:
    """Per-call knobs; ``None`` concurrency values fall back to CPU-based defaults."""

    top_k: int | None = None
    center_crop: bool = True
    frames: int = 10
    turbo: bool = False
    batch_size: int | None = None
    max_bytes: int | None = 10 * 1024 * 1024
    io_mode: IoMode | None = None
    max_concurrent: int = 2
    download_concurrency: int = 8
    extraction_concurrency: int | None = None
    preprocess_concurrency: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: object) -> ClassifyOptions:
        """Build options from settings, then apply non-None overrides."""
        base = cls(
            frames=settings.frames,
            max_bytes=settings.max_bytes,
            io_mode=IoMode(settings.io_mode),
            max_concurrent=settings.max_concurrent,
            download_concurrency=settings.download_concurrency,
            extraction_concurrency=settings.extraction_concurrency,
            preprocess_concurrency=settings.preprocess_concurrency,
        )
        return base.override(**overrides)

    def override(self, **overrides: object) -> ClassifyOptions:
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def validate(self) -> None:
        """Raises InvalidInputError for options that can never succeed."""
        if self.frames <= 0:
            raise InvalidInputError(f"frames must be a positive number, got {self.frames}")
        if self.top_k is not None and self.top_k < 1:
            raise InvalidInputError(f"top_k must be a positive integer, got {self.top_k}")
        if self.batch_size is not None and self.batch_size < 0:
            raise InvalidInputError(f"batch_size must not be negative, got {self.batch_size}")

    def extraction_workers(self) -> int:
        default = min(DEFAULT_CPU_CONCURRENCY, os.cpu_count() or 4) if self.turbo else 1
        return max(1, min(MAX_EXTRACTION_CONCURRENCY, self.extraction_concurrency or default))

    def preprocess_workers(self) -> int:
        default = min(DEFAULT_CPU_CONCURRENCY, os.cpu_count() or 4)
        return max(1, min(MAX_PREPROCESS_CONCURRENCY, self.preprocess_concurrency or default))


def looks_like_video(ref: MediaReference) -> bool:
    """Guess the media kind of a reference for ``MediaType.AUTO``."""
    if ref.kind is ReferenceKind.DATA_URI:
        return str(ref.value).startswith(VIDEO_DATA_URI_PREFIXES)
    if ref.kind in (ReferenceKind.URL, ReferenceKind.LOCAL_PATH):
        path = str(ref.value).split("?", 1)[0].split("#", 1)[0]
        return os.path.splitext(path)[1].lower() in VIDEO_EXTENSIONS
    return False


def build_request(inputs: Sequence[object], media_type: MediaType = MediaType.AUTO) -> ClassifyRequest:
    """Decide the request variant for a list of raw inputs.

    Raises:
        InvalidInputError: If ``inputs`` is empty or contains an invalid reference.
    """
    if not inputs:
        raise InvalidInputError("At least one media input is required")
    refs = tuple(MediaReference.parse(raw) for raw in inputs)

    if media_type is MediaType.IMAGE:
        images, videos = refs, ()
    elif media_type is MediaType.VIDEO:
        images, videos = (), refs
    else:
        images = tuple(r for r in refs if not looks_like_video(r))
        videos = tuple(r for r in refs if looks_like_video(r))

    if images and videos:
        return MixedRequest(images=images, videos=videos)
    if videos:
        return VideoRequest(videos[0]) if len(videos) == 1 else VideoBatchRequest(videos)
    return ImageRequest(images[0]) if len(images) == 1 else ImageBatchRequest(images)
