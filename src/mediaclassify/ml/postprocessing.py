"""Top-K ranking and per-video score aggregation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from mediaclassify.errors import InvalidInputError, ModelMismatchError
from mediaclassify.results import ClassScore

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from numpy.typing import NDArray


def resolve_top_k(requested: int | None, total: int) -> int:
    """Return ``min(requested, total)``, defaulting to every class.

    Raises:
        InvalidInputError: If ``requested`` is given and below 1.
    """
    if requested is None:
        return total
    if requested < 1:
        raise InvalidInputError(f"top_k must be a positive integer, got {requested}")
    return min(requested, total)


def rank_scores(scores: NDArray[np.floating], labels: Sequence[str], top_k: int | None = None) -> list[ClassScore]:
    """Rank one score vector, ties broken by ascending class index."""
    k = resolve_top_k(top_k, len(labels))
    order = np.argsort(-np.asarray(scores), kind="stable")[:k]
    return [
        ClassScore(class_label=labels[idx], score=float(scores[idx]), rank=rank)
        for rank, idx in enumerate(order, start=1)
    ]


def rank_rows(matrix: NDArray[np.floating], labels: Sequence[str], top_k: int | None = None) -> list[list[ClassScore]]:
    return [rank_scores(row, labels, top_k) for row in matrix]


class ScoreAccumulator:
    """Running per-class sum over the frames of one video."""

    def __init__(self, num_classes: int) -> None:
        self._sum = np.zeros(num_classes, dtype=np.float64)
        self._frame_count = 0

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def add(self, row: NDArray[np.floating]) -> None:
        row = np.asarray(row, dtype=np.float64)
        if row.shape != self._sum.shape:
            raise ModelMismatchError(f"Score row has {row.shape[-1]} classes, expected {self._sum.shape[0]}")
        self._sum += row
        self._frame_count += 1

    def add_rows(self, matrix: NDArray[np.floating]) -> None:
        for row in matrix:
            self.add(row)

    def mean(self) -> NDArray[np.float64]:
        return self._sum / max(1, self._frame_count)

    def ranked(self, labels: Sequence[str], top_k: int | None = None) -> list[ClassScore]:
        """Mean-score ranking; empty when no frame was scored."""
        if self._frame_count == 0:
            return []
        return rank_scores(self.mean(), labels, top_k)


def aggregate(
    per_frame: Iterable[NDArray[np.floating]],
    labels: Sequence[str],
    top_k: int | None = None,
) -> list[ClassScore]:
    """Element-wise mean of per-frame score vectors, ranked."""
    accumulator = ScoreAccumulator(len(labels))
    for row in per_frame:
        accumulator.add(row)
    return accumulator.ranked(labels, top_k)
