"""Media classification orchestrator.

Per request: resolve -> (video: probe, sample, extract) -> prepare -> infer
-> (video: aggregate) -> finalize. Acquired media is always released once,
on success and failure alike. Batch entry points never raise for a failing
item; the item's slot carries the error instead.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from functools import partial
from time import perf_counter
from typing import TYPE_CHECKING

import numpy as np

from mediaclassify.config import Settings, get_settings
from mediaclassify.errors import (
    DecodeFailedError,
    ExtractionEmptyError,
    InvalidInputError,
    ModelLoadError,
    ModelMismatchError,
    ProbeFailedError,
    SizeExceededError,
    describe,
)
from mediaclassify.media.acquisition import (
    IoMode,
    MediaReference,
    MediaResolver,
    ReferenceKind,
    ResolvedMedia,
    describe_input,
)
from mediaclassify.media.frames import (
    ExtractedFrame,
    FfmpegFrameExtractor,
    FrameExtractor,
    clamp_timestamps,
    sample_timestamps,
)
from mediaclassify.media.net import create_http_client
from mediaclassify.ml.batch import BatchInferenceStage
from mediaclassify.ml.engine import OnnxInferenceEngine
from mediaclassify.ml.inference import InferencePool
from mediaclassify.ml.model_store import ModelStore
from mediaclassify.ml.postprocessing import ScoreAccumulator, rank_rows, rank_scores
from mediaclassify.ml.preprocessing import Preprocessor, PreparedTensor, TargetShape
from mediaclassify.pipeline.pool import JobOutcome, run_bounded
from mediaclassify.pipeline.requests import (
    ClassifyOptions,
    ClassifyRequest,
    ImageBatchRequest,
    ImageRequest,
    MixedRequest,
    VideoBatchRequest,
    VideoRequest,
)
from mediaclassify.results import (
    AggregatePrediction,
    BatchTimings,
    ClassifyResult,
    FramePrediction,
    ImageBatchResult,
    ImageInput,
    ImageResult,
    ImageTimings,
    IoDiagnostics,
    MixedResult,
    ModelInfo,
    PreprocessInfo,
    TargetSize,
    VideoBatchResult,
    VideoInput,
    VideoResult,
    VideoTimings,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path
    from types import TracebackType

    import httpx

    from mediaclassify.ml.engine import InferenceEngine

logger = logging.getLogger(__name__)


def _elapsed_ms(start: float, end: float | None = None) -> float:
    return round(((end if end is not None else perf_counter()) - start) * 1000.0, 3)


@dataclass
class _VideoState:
    """Mutable bookkeeping for one video request."""

    mode: IoMode
    fallback_to_disk: bool = False
    size_bytes: int = 0
    cleanups_ok: bool = True


@dataclass
class _StageClock:
    decode_resize_ms: float = 0.0
    inference_ms: float = 0.0
    postprocess_ms: float = 0.0


class MediaClassifier:
    """Classifies images and videos against one loaded model.

    The model, labels and target shape are read-only after construction and
    shared safely by concurrent requests.
    """

    def __init__(
        self,
        *,
        engine: InferenceEngine,
        labels: Sequence[str],
        resolver: MediaResolver,
        extractor: FrameExtractor,
        pool: InferencePool | None = None,
        use_workers: bool = False,
        defaults: ClassifyOptions | None = None,
        source: str | None = None,
        owned_http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not labels:
            raise ModelLoadError("Label list must not be empty")
        self._engine = engine
        self._labels = tuple(labels)
        self._resolver = resolver
        self._extractor = extractor
        self._pool = pool
        self._use_workers = use_workers
        self._defaults = defaults or ClassifyOptions()
        self._source = source
        self._owned_http = owned_http_client
        self._stage = BatchInferenceStage(engine, self._labels, pool=pool)
        self._preprocessor: Preprocessor | None = None

        width = engine.output_width
        if width is not None and width != len(self._labels):
            raise ModelMismatchError(f"Model outputs {width} classes but {len(self._labels)} labels are loaded")

    @classmethod
    async def create(
        cls,
        settings: Settings | None = None,
        *,
        source: str | None = None,
        save_to: str | Path | None = None,
        http_client: httpx.AsyncClient | None = None,
        extractor: FrameExtractor | None = None,
    ) -> MediaClassifier:
        """Load a model and build a ready-to-use classifier.

        Raises:
            InvalidInputError: If no model source is given.
            ModelLoadError: If artifacts or labels cannot be loaded.
            ModelMismatchError: If the model disagrees with its labels.
        """
        settings = settings or get_settings()
        source = source or settings.model_source
        if not source:
            raise InvalidInputError("A model source is required (directory, URL or hf://repo)")

        http = http_client or create_http_client(settings)
        pool: InferencePool | None = None
        try:
            store = ModelStore(settings, http)
            artifacts = await store.load(source, save_to=save_to or settings.save_to_dir)
            engine = await asyncio.to_thread(OnnxInferenceEngine.from_bytes, artifacts.model_bytes, settings)
            pool = InferencePool(settings.preprocess_threads)
            classifier = cls(
                engine=engine,
                labels=artifacts.labels,
                resolver=MediaResolver(http, retries=settings.http_retries),
                extractor=extractor or FfmpegFrameExtractor(settings.ffmpeg_path),
                pool=pool,
                use_workers=settings.preprocess_use_workers,
                defaults=ClassifyOptions.from_settings(settings),
                source=source,
                owned_http_client=http if http_client is None else None,
            )
        except BaseException:
            if pool is not None:
                pool.shutdown()
            if http_client is None:
                await http.aclose()
            raise

        if settings.warmup:
            await classifier.warmup()
        logger.info(
            "Classifier ready (source=%s, backend=%s, classes=%s)",
            source,
            classifier.backend,
            len(artifacts.labels),
        )
        return classifier

    # -- Properties -----------------------------------------------------------

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    @property
    def backend(self) -> str:
        return self._engine.backend

    @property
    def source(self) -> str | None:
        return self._source

    @property
    def defaults(self) -> ClassifyOptions:
        return self._defaults

    @property
    def pool(self) -> InferencePool | None:
        return self._pool

    @property
    def target_shape(self) -> TargetShape:
        """Model input size; raises ModelMismatchError if undefined."""
        return TargetShape.from_input_shape(self._engine.input_shape)

    @property
    def model_info(self) -> ModelInfo:
        return ModelInfo(classes_count=len(self._labels))

    # -- Lifecycle ------------------------------------------------------------

    async def warmup(self) -> None:
        """Run one zero batch through the engine if the input shape is known."""
        try:
            target = self.target_shape
        except ModelMismatchError:
            logger.debug("Skipping warmup, input shape is not fully defined")
            return
        dummy = PreparedTensor(index=0, pixels=np.zeros((target.height, target.width, 3), dtype=np.uint8))
        await self._stage.score([dummy])
        logger.debug("Warmup complete (%sx%s)", target.width, target.height)

    async def aclose(self) -> None:
        if self._pool is not None:
            self._pool.shutdown()
        if self._owned_http is not None:
            await self._owned_http.aclose()

    async def __aenter__(self) -> MediaClassifier:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    # -- Entry points ---------------------------------------------------------

    async def classify(self, request: ClassifyRequest, options: ClassifyOptions | None = None) -> ClassifyResult:
        """Route a request variant to its handler."""
        if isinstance(request, ImageRequest):
            return await self.classify_image(request.reference, options)
        if isinstance(request, ImageBatchRequest):
            return await self.classify_images(request.references, options)
        if isinstance(request, VideoRequest):
            return await self.classify_video(request.reference, options)
        if isinstance(request, VideoBatchRequest):
            return await self.classify_videos(request.references, options)
        if isinstance(request, MixedRequest):
            return await self.classify_mixed(request.images, request.videos, options)
        raise InvalidInputError(f"Unsupported request type: {type(request).__name__}")

    async def classify_image(self, reference: object, options: ClassifyOptions | None = None) -> ImageResult:
        """Classify one image; errors propagate to the caller."""
        options = self._options(options)
        preprocessor = self._get_preprocessor()
        ref = MediaReference.parse(reference)

        t0 = perf_counter()
        data = await self._acquire_image(ref, options)
        t1 = perf_counter()
        tensor = await preprocessor.prepare(data, center_crop=options.center_crop)
        t2 = perf_counter()
        scores = await self._stage.score([tensor])
        del tensor
        t3 = perf_counter()
        predictions = rank_scores(scores[0], self._labels, options.top_k)
        t4 = perf_counter()

        return ImageResult(
            input=ImageInput(image_url=ref.describe()),
            backend=self.backend,
            model_info=self.model_info,
            preprocess=self._preprocess_info(options),
            timings=ImageTimings(
                download_ms=_elapsed_ms(t0, t1),
                decode_resize_ms=_elapsed_ms(t1, t2),
                inference_ms=_elapsed_ms(t2, t3),
                postprocess_ms=_elapsed_ms(t3, t4),
                total_ms=_elapsed_ms(t1, t4),
                end_to_end_ms=_elapsed_ms(t0, t4),
            ),
            predictions=predictions,
        )

    async def classify_images(
        self, references: Sequence[object], options: ClassifyOptions | None = None
    ) -> ImageBatchResult:
        """Classify a batch of images; one result per input, in input order."""
        if not references:
            raise InvalidInputError("images must be a non-empty list")
        options = self._options(options)
        preprocessor = self._get_preprocessor()

        t_start = perf_counter()
        count = len(references)
        results: list[ImageResult | None] = [None] * count
        chunk_size = options.batch_size if options.batch_size and options.batch_size < count else count
        for offset in range(0, count, chunk_size):
            chunk = references[offset : offset + chunk_size]
            await self._classify_image_chunk(chunk, offset, results, options, preprocessor)

        return ImageBatchResult(
            backend=self.backend,
            count=count,
            model_info=self.model_info,
            timings=BatchTimings(end_to_end_ms=_elapsed_ms(t_start)),
            results=results,  # type: ignore[arg-type]
        )

    async def classify_video(self, reference: object, options: ClassifyOptions | None = None) -> VideoResult:
        """Classify one video by sampling frames; errors propagate to the caller."""
        options = self._options(options)
        preprocessor = self._get_preprocessor()
        ref = MediaReference.parse(reference)
        state = _VideoState(mode=options.io_mode or IoMode.MEMORY)

        t_start = perf_counter()
        media = await self._resolver.resolve(ref, state.mode)
        try:
            result = await self._score_video(ref, media, state, options, preprocessor, t_start)
        finally:
            released = await media.cleanup()
            state.cleanups_ok = state.cleanups_ok and released

        result.io = IoDiagnostics(
            mode=state.mode.value,
            fallback_to_disk=state.fallback_to_disk,
            temp_cleaned=state.cleanups_ok,
            size_bytes=state.size_bytes,
            max_bytes=options.max_bytes,
        )
        return result

    async def classify_videos(
        self, references: Sequence[object], options: ClassifyOptions | None = None
    ) -> VideoBatchResult:
        """Classify several videos, at most ``max_concurrent`` at a time."""
        if not references:
            raise InvalidInputError("videos must be a non-empty list")
        options = self._options(options)
        self._get_preprocessor()

        t_start = perf_counter()
        jobs = [partial(self.classify_video, raw, options) for raw in references]
        outcomes = await run_bounded(jobs, options.max_concurrent)
        _raise_fatal(outcomes)

        results = [
            outcome.value if outcome.ok else self._video_error(raw, options, outcome.error)
            for raw, outcome in zip(references, outcomes, strict=True)
        ]
        return VideoBatchResult(
            backend=self.backend,
            count=len(references),
            model_info=self.model_info,
            timings=BatchTimings(end_to_end_ms=_elapsed_ms(t_start)),
            results=results,  # type: ignore[arg-type]
        )

    async def classify_mixed(
        self,
        images: Sequence[object],
        videos: Sequence[object],
        options: ClassifyOptions | None = None,
    ) -> MixedResult:
        """Run an image batch and a video batch concurrently."""
        if not images and not videos:
            raise InvalidInputError("At least one image or video is required")

        # A fatal error in one half cancels the other before the call returns.
        try:
            async with asyncio.TaskGroup() as group:
                images_task = group.create_task(self.classify_images(images, options)) if images else None
                videos_task = group.create_task(self.classify_videos(videos, options)) if videos else None
        except ExceptionGroup as eg:
            raise eg.exceptions[0] from None
        return MixedResult(
            images=images_task.result() if images_task is not None else None,
            videos=videos_task.result() if videos_task is not None else None,
        )

    # -- Image internals ------------------------------------------------------

    async def _acquire_image(self, ref: MediaReference, options: ClassifyOptions) -> bytes:
        async with await self._resolver.resolve(ref, IoMode.MEMORY) as media:
            data = media.require_bytes()
        _check_size(len(data), options.max_bytes, ref)
        return data

    async def _classify_image_chunk(
        self,
        chunk: Sequence[object],
        offset: int,
        results: list[ImageResult | None],
        options: ClassifyOptions,
        preprocessor: Preprocessor,
    ) -> None:
        t0 = perf_counter()

        async def acquire(raw: object) -> bytes:
            return await self._acquire_image(MediaReference.parse(raw), options)

        downloads = await run_bounded([partial(acquire, raw) for raw in chunk], options.download_concurrency)
        t1 = perf_counter()

        ready: list[tuple[int, bytes]] = []
        for i, outcome in enumerate(downloads):
            if outcome.ok:
                ready.append((i, outcome.unwrap()))
            else:
                results[offset + i] = self._image_error(chunk[i], outcome.error)

        prepared = await run_bounded(
            [partial(preprocessor.prepare, data, index=i, center_crop=options.center_crop) for i, data in ready],
            options.preprocess_workers(),
        )
        tensors: list[PreparedTensor] = []
        for (i, _), outcome in zip(ready, prepared, strict=True):
            if outcome.ok:
                tensors.append(outcome.unwrap())
            else:
                results[offset + i] = self._image_error(chunk[i], outcome.error)
        del ready
        t2 = perf_counter()

        if not tensors:
            return
        try:
            scores = await self._stage.score(tensors)
        except ModelMismatchError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("Inference failed for a chunk of %s images: %s", len(tensors), exc)
            for tensor in tensors:
                results[offset + tensor.index] = self._image_error(chunk[tensor.index], exc)
            return
        t3 = perf_counter()
        rows = rank_rows(scores, self._labels, options.top_k)
        t4 = perf_counter()

        timings = ImageTimings(
            download_ms=_elapsed_ms(t0, t1),
            decode_resize_ms=_elapsed_ms(t1, t2),
            inference_ms=_elapsed_ms(t2, t3),
            postprocess_ms=_elapsed_ms(t3, t4),
            total_ms=_elapsed_ms(t0, t4),
            end_to_end_ms=_elapsed_ms(t0, t4),
        )
        for tensor, predictions in zip(tensors, rows, strict=True):
            results[offset + tensor.index] = ImageResult(
                input=ImageInput(image_url=describe_input(chunk[tensor.index])),
                backend=self.backend,
                model_info=self.model_info,
                preprocess=self._preprocess_info(options),
                timings=timings,
                predictions=predictions,
            )

    def _image_error(self, raw: object, error: BaseException | None) -> ImageResult:
        logger.warning("Image %s failed: %s", describe_input(raw), error)
        return ImageResult(
            input=ImageInput(image_url=describe_input(raw)),
            backend=self.backend,
            model_info=self.model_info,
            error=describe(error) if error is not None else "unknown error",
        )

    # -- Video internals ------------------------------------------------------

    async def _score_video(
        self,
        ref: MediaReference,
        media: ResolvedMedia,
        state: _VideoState,
        options: ClassifyOptions,
        preprocessor: Preprocessor,
        t_start: float,
    ) -> VideoResult:
        state.size_bytes = await media.size_bytes()
        _check_size(state.size_bytes, options.max_bytes, ref)

        duration = await self._extractor.probe_duration(media.source)
        if not duration or duration <= 0:
            raise ProbeFailedError("Unable to determine video duration", input_ref=ref.describe())

        timestamps = clamp_timestamps(duration, sample_timestamps(duration, options.frames))
        t_prepared = perf_counter()

        extracted = await self._extract(media, timestamps, duration, options)
        if not extracted and state.mode is IoMode.MEMORY:
            extracted = await self._extract_from_disk(ref, media, timestamps, state, options)
        if not extracted:
            raise ExtractionEmptyError(
                f"No frames could be extracted ({state.mode} mode)",
                input_ref=ref.describe(),
            )
        t_extracted = perf_counter()

        accumulator = ScoreAccumulator(len(self._labels))
        clock = _StageClock()
        if options.turbo:
            frames = await self._score_frames_batched(extracted, accumulator, clock, options, preprocessor)
        else:
            frames = await self._score_frames_sequential(extracted, accumulator, clock, options, preprocessor)
        t_aggregate = perf_counter()
        overall = accumulator.ranked(self._labels, options.top_k)
        clock.postprocess_ms += _elapsed_ms(t_aggregate)

        if accumulator.frame_count == 0:
            logger.warning("No frame of %s could be scored", ref.describe())

        return VideoResult(
            input=VideoInput(video_url=ref.describe(), frames=options.frames, turbo_mode=options.turbo),
            backend=self.backend,
            model_info=self.model_info,
            timings=VideoTimings(
                download_prepare_ms=_elapsed_ms(t_start, t_prepared),
                extract_ms=_elapsed_ms(t_prepared, t_extracted),
                decode_resize_ms=round(clock.decode_resize_ms, 3),
                inference_ms=round(clock.inference_ms, 3),
                postprocess_ms=round(clock.postprocess_ms, 3),
                total_ms=_elapsed_ms(t_start),
            ),
            results=frames,
            aggregate=AggregatePrediction(predictions=overall, frame_count=accumulator.frame_count),
        )

    async def _extract(
        self,
        media: ResolvedMedia,
        timestamps: list[float],
        duration: float,
        options: ClassifyOptions,
    ) -> list[ExtractedFrame]:
        if media.mode is IoMode.MEMORY:
            return await self._extractor.extract_uniform(media.require_bytes(), timestamps, duration)
        return await self._extractor.extract(media.source, timestamps, concurrency=options.extraction_workers())

    async def _extract_from_disk(
        self,
        ref: MediaReference,
        media: ResolvedMedia,
        timestamps: list[float],
        state: _VideoState,
        options: ClassifyOptions,
    ) -> list[ExtractedFrame]:
        """Retry extraction through a file after memory mode produced nothing."""
        logger.warning("No frames extracted in memory for %s, falling back to disk", ref.describe())
        if ref.kind is ReferenceKind.LOCAL_PATH:
            disk_ref = ref
        else:
            disk_ref = MediaReference(ReferenceKind.RAW_BYTES, media.require_bytes())

        disk_media = await self._resolver.resolve(disk_ref, IoMode.DISK)
        state.fallback_to_disk = True
        state.mode = IoMode.DISK
        try:
            extracted = await self._extractor.extract(
                disk_media.source, timestamps, concurrency=options.extraction_workers()
            )
            state.size_bytes = await disk_media.size_bytes()
        finally:
            released = await disk_media.cleanup()
            state.cleanups_ok = state.cleanups_ok and released
        return extracted

    async def _score_frames_sequential(
        self,
        extracted: list[ExtractedFrame],
        accumulator: ScoreAccumulator,
        clock: _StageClock,
        options: ClassifyOptions,
        preprocessor: Preprocessor,
    ) -> list[FramePrediction]:
        frames: list[FramePrediction] = []
        for frame in extracted:
            ta = perf_counter()
            try:
                tensor = await preprocessor.prepare(frame.data, index=frame.index, center_crop=options.center_crop)
            except DecodeFailedError as exc:
                logger.warning("Dropping frame at %.3fs: %s", frame.timestamp_sec, exc)
                continue
            tb = perf_counter()
            scores = await self._stage.score([tensor])
            del tensor
            tc = perf_counter()
            accumulator.add(scores[0])
            frames.append(
                FramePrediction(
                    frame_index=frame.index,
                    timestamp_sec=frame.timestamp_sec,
                    predictions=rank_scores(scores[0], self._labels, options.top_k),
                )
            )
            clock.decode_resize_ms += _elapsed_ms(ta, tb)
            clock.inference_ms += _elapsed_ms(tb, tc)
            clock.postprocess_ms += _elapsed_ms(tc)
        return frames

    async def _score_frames_batched(
        self,
        extracted: list[ExtractedFrame],
        accumulator: ScoreAccumulator,
        clock: _StageClock,
        options: ClassifyOptions,
        preprocessor: Preprocessor,
    ) -> list[FramePrediction]:
        ta = perf_counter()
        outcomes = await run_bounded(
            [partial(preprocessor.prepare, f.data, index=f.index, center_crop=options.center_crop) for f in extracted],
            options.preprocess_workers(),
        )
        tensors: list[PreparedTensor] = []
        for frame, outcome in zip(extracted, outcomes, strict=True):
            if outcome.ok:
                tensors.append(outcome.unwrap())
            elif isinstance(outcome.error, DecodeFailedError):
                logger.warning("Dropping frame at %.3fs: %s", frame.timestamp_sec, outcome.error)
            else:
                outcome.unwrap()
        tb = perf_counter()
        clock.decode_resize_ms += _elapsed_ms(ta, tb)
        if not tensors:
            return []

        scores = await self._stage.score(tensors)
        indices = [t.index for t in tensors]
        del tensors
        tc = perf_counter()
        accumulator.add_rows(scores)
        stamps = {f.index: f.timestamp_sec for f in extracted}
        frames = [
            FramePrediction(frame_index=i, timestamp_sec=stamps[i], predictions=predictions)
            for i, predictions in zip(indices, rank_rows(scores, self._labels, options.top_k), strict=True)
        ]
        clock.inference_ms += _elapsed_ms(tb, tc)
        clock.postprocess_ms += _elapsed_ms(tc)
        return frames

    def _video_error(self, raw: object, options: ClassifyOptions, error: BaseException | None) -> VideoResult:
        logger.warning("Video %s failed: %s", describe_input(raw), error)
        return VideoResult(
            input=VideoInput(video_url=describe_input(raw), frames=options.frames, turbo_mode=options.turbo),
            backend=self.backend,
            model_info=self.model_info,
            error=describe(error) if error is not None else "unknown error",
        )

    # -- Helpers --------------------------------------------------------------

    def _options(self, options: ClassifyOptions | None) -> ClassifyOptions:
        options = options or self._defaults
        options.validate()
        return options

    def _get_preprocessor(self) -> Preprocessor:
        """Return the shared preprocessor; fails fast if the input shape is undefined."""
        if self._preprocessor is None:
            self._preprocessor = Preprocessor(self.target_shape, pool=self._pool, use_workers=self._use_workers)
        return self._preprocessor

    def _preprocess_info(self, options: ClassifyOptions) -> PreprocessInfo:
        target = self.target_shape
        return PreprocessInfo(
            target=TargetSize(width=target.width, height=target.height),
            center_crop=options.center_crop,
            use_workers=self._use_workers,
        )


def _check_size(size: int, max_bytes: int | None, ref: MediaReference) -> None:
    if max_bytes and size > max_bytes:
        raise SizeExceededError(f"Media exceeds max_bytes ({size} > {max_bytes})", input_ref=ref.describe())


def _raise_fatal(outcomes: Sequence[JobOutcome[object]]) -> None:
    """Misconfiguration aborts the whole batch instead of tagging every item."""
    for outcome in outcomes:
        if isinstance(outcome.error, ModelMismatchError):
            raise outcome.error
