"""Batched inference: normalize, stack, one engine call, top-K per row."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import numpy as np

from mediaclassify.errors import InvalidInputError, ModelMismatchError
from mediaclassify.ml.postprocessing import rank_rows

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

    from mediaclassify.ml.engine import InferenceEngine
    from mediaclassify.ml.inference import InferencePool
    from mediaclassify.ml.preprocessing import PreparedTensor
    from mediaclassify.results import ClassScore

logger = logging.getLogger(__name__)

# Pixels map to [-1, 1]; this is what the models were trained on.
PIXEL_OFFSET: float = 127.5


def normalize(pixels: NDArray[np.uint8]) -> NDArray[np.float32]:
    return (pixels.astype(np.float32) - PIXEL_OFFSET) / PIXEL_OFFSET


def stack_batch(tensors: Sequence[PreparedTensor]) -> NDArray[np.float32]:
    """Stack prepared tensors into an (N, H, W, 3) float32 batch."""
    if not tensors:
        raise InvalidInputError("Cannot run inference on an empty batch")
    return np.stack([normalize(t.pixels) for t in tensors])


class BatchInferenceStage:
    """Runs one engine call per batch and validates its output."""

    def __init__(self, engine: InferenceEngine, labels: Sequence[str], *, pool: InferencePool | None = None) -> None:
        self._engine = engine
        self._labels = list(labels)
        self._pool = pool

    @property
    def labels(self) -> list[str]:
        return self._labels

    async def score(self, tensors: Sequence[PreparedTensor]) -> NDArray[np.float32]:
        """Return the raw (N, num_classes) score matrix, rows in input order.

        Raises:
            ModelMismatchError: If the engine's output disagrees with the
                batch size or the label count.
        """
        batch = stack_batch(tensors)
        if self._pool is not None:
            scores = await self._pool.run(self._engine.predict, batch)
        else:
            scores = self._engine.predict(batch)
        del batch

        scores = np.asarray(scores, dtype=np.float32)
        if scores.ndim != 2 or scores.shape[0] != len(tensors):
            raise ModelMismatchError(f"Engine returned scores of shape {scores.shape} for a batch of {len(tensors)}")
        if scores.shape[1] != len(self._labels):
            raise ModelMismatchError(
                f"Engine reports {scores.shape[1]} classes but {len(self._labels)} labels are loaded"
            )
        return scores

    async def infer(self, tensors: Sequence[PreparedTensor], top_k: int | None = None) -> list[list[ClassScore]]:
        """Score a batch and return the top-K predictions per row."""
        scores = await self.score(tensors)
        return rank_rows(scores, self._labels, top_k)
