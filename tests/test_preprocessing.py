"""Tests for image decode/resize and worker delegation."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from conftest import make_png
from mediaclassify.errors import DecodeFailedError, ModelMismatchError
from mediaclassify.ml import preprocessing
from mediaclassify.ml.inference import InferencePool
from mediaclassify.ml.preprocessing import FitPolicy, Preprocessor, TargetShape, decode_resize


class TestTargetShape:
    def test_from_nhwc_shape(self) -> None:
        assert TargetShape.from_input_shape((None, 224, 160, 3)) == TargetShape(width=160, height=224)

    @pytest.mark.parametrize("shape", [None, (1, 224, 224), ("N", "H", 224, 3), (1, 0, 224, 3)])
    def test_undefined_shape_raises(self, shape: tuple[object, ...] | None) -> None:
        with pytest.raises(ModelMismatchError):
            TargetShape.from_input_shape(shape)

    def test_channels_first_shape_raises(self) -> None:
        with pytest.raises(ModelMismatchError, match="NHWC"):
            TargetShape.from_input_shape((1, 3, 224, 224))

    def test_symbolic_channel_axis_is_accepted(self) -> None:
        assert TargetShape.from_input_shape((None, 32, 32, "C")) == TargetShape(width=32, height=32)


class TestDecodeResize:
    @pytest.mark.parametrize("fit", [FitPolicy.COVER, FitPolicy.FILL])
    def test_exact_output_shape(self, fit: FitPolicy) -> None:
        pixels = decode_resize(make_png(size=(40, 10)), 12, 6, fit)
        assert pixels.shape == (6, 12, 3)
        assert pixels.dtype == np.uint8

    def test_alpha_is_dropped(self) -> None:
        buffer = io.BytesIO()
        Image.new("RGBA", (5, 5), (10, 20, 30, 0)).save(buffer, format="PNG")
        pixels = decode_resize(buffer.getvalue(), 4, 4, FitPolicy.FILL)
        assert pixels.shape == (4, 4, 3)

    def test_cover_crops_the_center(self) -> None:
        img = Image.new("RGB", (30, 10), (255, 0, 0))
        img.paste((0, 0, 255), (10, 0, 20, 10))
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")

        pixels = decode_resize(buffer.getvalue(), 4, 4, FitPolicy.COVER)

        assert tuple(pixels[2, 2]) == (0, 0, 255)

    def test_undecodable_bytes(self) -> None:
        with pytest.raises(DecodeFailedError):
            decode_resize(b"not an image", 4, 4, FitPolicy.COVER)


class TestPreprocessor:
    async def test_in_process(self) -> None:
        prep = Preprocessor(TargetShape(8, 6))
        tensor = await prep.prepare(make_png(), index=3)
        assert tensor.index == 3
        assert tensor.pixels.shape == (6, 8, 3)

    async def test_workers_produce_same_pixels(self) -> None:
        pool = InferencePool(2)
        try:
            delegated = await Preprocessor(TargetShape(8, 8), pool=pool, use_workers=True).prepare(make_png())
        finally:
            pool.shutdown()
        local = await Preprocessor(TargetShape(8, 8)).prepare(make_png())
        assert np.array_equal(delegated.pixels, local.pixels)

    async def test_worker_failure_falls_back_in_process(self, monkeypatch: pytest.MonkeyPatch) -> None:
        class BrokenPool:
            async def run(self, func: object, *args: object) -> object:
                raise RuntimeError("worker died")

        prep = Preprocessor(TargetShape(8, 8), pool=BrokenPool(), use_workers=True)  # type: ignore[arg-type]

        tensor = await prep.prepare(make_png())

        assert tensor.pixels.shape == (8, 8, 3)

    async def test_decode_failure_is_not_retried(self) -> None:
        pool = InferencePool(1)
        try:
            prep = Preprocessor(TargetShape(8, 8), pool=pool, use_workers=True)
            with pytest.raises(DecodeFailedError):
                await prep.prepare(b"garbage")
        finally:
            pool.shutdown()

    async def test_wrong_decoder_shape_is_rejected(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(preprocessing, "decode_resize", lambda *args: np.zeros((2, 2, 3), dtype=np.uint8))
        with pytest.raises(DecodeFailedError, match="expected"):
            await Preprocessor(TargetShape(8, 8)).prepare(make_png())
