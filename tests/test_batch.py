"""Tests for batched inference and output validation."""

from __future__ import annotations

import numpy as np
import pytest

from conftest import FakeEngine
from mediaclassify.errors import InvalidInputError, ModelMismatchError
from mediaclassify.ml.batch import BatchInferenceStage, normalize, stack_batch
from mediaclassify.ml.inference import InferencePool
from mediaclassify.ml.preprocessing import PreparedTensor

FIVE_LABELS = ["c0", "c1", "c2", "c3", "c4"]


def _tensors(count: int, size: int = 8) -> list[PreparedTensor]:
    return [PreparedTensor(index=i, pixels=np.full((size, size, 3), 255, dtype=np.uint8)) for i in range(count)]


class TestNormalize:
    def test_maps_to_unit_range(self) -> None:
        pixels = np.array([[[0, 127, 255]]], dtype=np.uint8)
        assert normalize(pixels).ravel() == pytest.approx([-1.0, -0.003921, 1.0], abs=1e-5)

    def test_stack_shape(self) -> None:
        assert stack_batch(_tensors(3)).shape == (3, 8, 8, 3)

    def test_empty_batch(self) -> None:
        with pytest.raises(InvalidInputError):
            stack_batch([])


class TestBatchInferenceStage:
    async def test_top_k_per_row_in_one_call(self) -> None:
        engine = FakeEngine([0.05, 0.4, 0.1, 0.3, 0.15], num_classes=5)
        stage = BatchInferenceStage(engine, FIVE_LABELS)

        rows = await stage.infer(_tensors(3), top_k=2)

        assert engine.batch_sizes == [3]
        assert len(rows) == 3
        for row in rows:
            assert [p.class_label for p in row] == ["c1", "c3"]
            assert [p.rank for p in row] == [1, 2]

    async def test_width_mismatch_raises(self) -> None:
        engine = FakeEngine([0.1, 0.2, 0.3, 0.4], num_classes=4)
        stage = BatchInferenceStage(engine, FIVE_LABELS)

        with pytest.raises(ModelMismatchError, match="4 classes"):
            await stage.score(_tensors(2))

    async def test_runs_through_pool(self) -> None:
        engine = FakeEngine([0.2, 0.2, 0.2, 0.2, 0.2], num_classes=5)
        pool = InferencePool(2)
        try:
            scores = await BatchInferenceStage(engine, FIVE_LABELS, pool=pool).score(_tensors(4))
        finally:
            pool.shutdown()
        assert scores.shape == (4, 5)
