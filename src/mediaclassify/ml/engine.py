"""Inference engine: a fixed-size NHWC float batch in, per-class scores out.

The orchestrator depends only on the ``InferenceEngine`` protocol; the ONNX
Runtime implementation is the default engine.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Literal, Protocol

import numpy as np
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from mediaclassify.config import Settings

logger = logging.getLogger(__name__)

Device = Literal["cpu", "cuda", "openvino"]


class InferenceEngine(Protocol):
    """Protocol for batch classification engines."""

    @property
    def backend(self) -> str:
        """Return the name of the active execution backend."""
        ...

    @property
    def input_shape(self) -> tuple[int | str | None, ...]:
        """Return the model input shape (N, H, W, C); unknown dims are not ints."""
        ...

    @property
    def output_width(self) -> int | None:
        """Return the number of score columns if the model declares it."""
        ...

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        """Score a batch.

        Args:
            batch: Float32 array of shape (N, H, W, 3), values in [-1, 1].

        Returns:
            Array of shape (N, num_classes), rows in input order.
        """
        ...


def build_providers(device: Device, gpu_mem_limit: int) -> list[str | tuple[str, dict[str, object]]]:
    """Map a device name to ONNX Runtime execution providers."""
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        from onnxruntime import GraphOptimizationLevel

        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts


class OnnxInferenceEngine:
    """ONNX Runtime session wrapped as an ``InferenceEngine``."""

    def __init__(self, session: InferenceSession) -> None:
        self._session = session
        self._input = session.get_inputs()[0]
        self._output = session.get_outputs()[0]

    @classmethod
    def from_bytes(cls, model_bytes: bytes, settings: Settings) -> OnnxInferenceEngine:
        session = InferenceSession(
            model_bytes,
            sess_options=build_session_options(settings),
            providers=build_providers(settings.device, settings.gpu_mem_limit),
        )
        logger.info("Loaded ONNX session (providers=%s)", session.get_providers())
        return cls(session)

    @property
    def backend(self) -> str:
        return self._session.get_providers()[0]

    @property
    def input_shape(self) -> tuple[int | str | None, ...]:
        return tuple(self._input.shape)

    @property
    def output_width(self) -> int | None:
        shape = self._output.shape
        if shape and isinstance(shape[-1], int):
            return shape[-1]
        return None

    def predict(self, batch: NDArray[np.float32]) -> NDArray[np.float32]:
        (scores, *_) = self._session.run([self._output.name], {self._input.name: batch})
        return np.asarray(scores, dtype=np.float32)
