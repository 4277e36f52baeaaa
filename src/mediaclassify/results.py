"""Pydantic result envelopes, serialized with camelCase keys."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        """Return the JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class ClassScore(Envelope):
    """One ranked class prediction; rank is 1-based."""

    class_label: str
    score: float
    rank: int = Field(ge=1)


class FramePrediction(Envelope):
    frame_index: int
    timestamp_sec: float | None = None
    predictions: list[ClassScore]


class ModelInfo(Envelope):
    classes_count: int


class TargetSize(Envelope):
    width: int
    height: int


class PreprocessInfo(Envelope):
    target: TargetSize
    center_crop: bool
    use_workers: bool = False


class ImageInput(Envelope):
    image_url: str


class ImageTimings(Envelope):
    download_ms: float = 0.0
    decode_resize_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0
    total_ms: float = 0.0
    end_to_end_ms: float = 0.0


class ImageResult(Envelope):
    """Prediction envelope for one image, or an error-tagged entry."""

    input: ImageInput
    backend: str
    model_info: ModelInfo
    preprocess: PreprocessInfo | None = None
    timings: ImageTimings = Field(default_factory=ImageTimings)
    predictions: list[ClassScore] = Field(default_factory=list)
    error: str | None = None


class BatchTimings(Envelope):
    end_to_end_ms: float = 0.0


class ImageBatchResult(Envelope):
    backend: str
    count: int
    model_info: ModelInfo
    timings: BatchTimings
    results: list[ImageResult]


class VideoInput(Envelope):
    video_url: str
    frames: int
    turbo_mode: bool


class VideoTimings(Envelope):
    download_prepare_ms: float = 0.0
    extract_ms: float = 0.0
    decode_resize_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0
    total_ms: float = 0.0


class IoDiagnostics(Envelope):
    """Snapshot of how a video request was acquired and released."""

    mode: str
    fallback_to_disk: bool = False
    temp_cleaned: bool = False
    size_bytes: int = 0
    max_bytes: int | None = None


class AggregatePrediction(Envelope):
    predictions: list[ClassScore]
    frame_count: int


class VideoResult(Envelope):
    """Per-frame and aggregate predictions for one video, or an error-tagged entry."""

    input: VideoInput
    backend: str
    model_info: ModelInfo
    timings: VideoTimings = Field(default_factory=VideoTimings)
    io: IoDiagnostics | None = None
    results: list[FramePrediction] = Field(default_factory=list)
    aggregate: AggregatePrediction | None = None
    error: str | None = None


class VideoBatchResult(Envelope):
    backend: str
    count: int
    model_info: ModelInfo
    timings: BatchTimings
    results: list[VideoResult]


class MixedResult(Envelope):
    images: ImageBatchResult | None = None
    videos: VideoBatchResult | None = None


ClassifyResult = ImageResult | ImageBatchResult | VideoResult | VideoBatchResult | MixedResult
