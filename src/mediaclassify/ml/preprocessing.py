"""Image preprocessing: decode, orient, resize and drop alpha.

``decode_resize`` is the decode/resize collaborator; ``Preprocessor`` wraps
it with optional delegation to worker threads and an in-process fallback.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from mediaclassify.errors import DecodeFailedError, ModelMismatchError, WorkerFailureError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from mediaclassify.ml.inference import InferencePool

logger = logging.getLogger(__name__)

CHANNELS = 3


class FitPolicy(StrEnum):
    COVER = "cover"
    FILL = "fill"


@dataclass(frozen=True)
class TargetShape:
    """Model input size, fixed for the lifetime of a classifier."""

    width: int
    height: int

    @classmethod
    def from_input_shape(cls, shape: Sequence[object] | None) -> TargetShape:
        """Derive the target from an NHWC input shape.

        Raises:
            ModelMismatchError: If height or width is not a positive integer,
                or the channel axis is not last.
        """
        if shape is None or len(shape) != 4:
            raise ModelMismatchError(f"Model input shape is not fully defined: {shape}")
        channels = shape[3]
        if isinstance(channels, int) and channels != CHANNELS:
            raise ModelMismatchError(f"Model input must be NHWC with {CHANNELS} channels, got {list(shape)}")
        height, width = shape[1], shape[2]
        if not isinstance(height, int) or not isinstance(width, int) or height <= 0 or width <= 0:
            raise ModelMismatchError(f"Model input shape is not fully defined: {list(shape)}")
        return cls(width=width, height=height)


@dataclass(frozen=True)
class PreparedTensor:
    """One resized RGB image, tagged with its originating request index."""

    index: int
    pixels: NDArray[np.uint8]


def decode_resize(image_bytes: bytes, width: int, height: int, fit: FitPolicy) -> NDArray[np.uint8]:
    """Decode image bytes into an exactly ``height x width x 3`` uint8 array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        width: Target width in pixels.
        height: Target height in pixels.
        fit: ``COVER`` crops overflow to keep aspect ratio; ``FILL`` stretches.

    Raises:
        DecodeFailedError: If the bytes are not a decodable image.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = ImageOps.exif_transpose(img)
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeFailedError(f"Unable to decode image: {exc}") from exc

    if fit is FitPolicy.COVER:
        sized = ImageOps.fit(rgb, (width, height), method=Image.Resampling.BILINEAR)
    else:
        sized = rgb.resize((width, height), Image.Resampling.BILINEAR)
    return np.asarray(sized, dtype=np.uint8)


class Preprocessor:
    """Turns decoded media buffers into fixed-size tensors for one model."""

    def __init__(self, target: TargetShape, *, pool: InferencePool | None = None, use_workers: bool = False) -> None:
        self._target = target
        self._pool = pool
        self._use_workers = use_workers and pool is not None

    @property
    def target(self) -> TargetShape:
        return self._target

    @property
    def use_workers(self) -> bool:
        return self._use_workers

    async def prepare(self, image_bytes: bytes, *, index: int = 0, center_crop: bool = True) -> PreparedTensor:
        """Decode and resize one image.

        Raises:
            DecodeFailedError: Undecodable input or a wrong output shape.
            WorkerFailureError: Both the worker and the in-process attempt failed
                for a reason other than decoding.
        """
        fit = FitPolicy.COVER if center_crop else FitPolicy.FILL
        width, height = self._target.width, self._target.height

        pixels: NDArray[np.uint8] | None = None
        if self._use_workers and self._pool is not None:
            try:
                pixels = await self._pool.run(decode_resize, image_bytes, width, height, fit)
            except DecodeFailedError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.warning("Worker preprocessing failed (%s), falling back to in-process", exc)

        if pixels is None:
            try:
                pixels = decode_resize(image_bytes, width, height, fit)
            except DecodeFailedError:
                raise
            except Exception as exc:
                raise WorkerFailureError(f"Preprocessing failed: {exc}") from exc

        expected = (height, width, CHANNELS)
        if pixels.shape != expected:
            raise DecodeFailedError(f"Decoder returned shape {pixels.shape}, expected {expected}")
        return PreparedTensor(index=index, pixels=pixels)
