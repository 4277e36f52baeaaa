"""Pydantic request/response schemas for the mediaclassify API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ClassifyRequestBody(BaseModel):
    """JSON body for the classify endpoint.

    ``inputs`` holds URLs, local paths, data URIs or base64 payloads. Options
    left unset fall back to the server configuration.
    """

    inputs: list[str] = Field(min_length=1)
    media: Literal["auto", "image", "video"] = "auto"
    top_k: int | None = Field(default=None, ge=1)
    center_crop: bool = True
    frames: int | None = Field(default=None, ge=1)
    turbo: bool = False
    batch_size: int | None = Field(default=None, ge=0)
    io: Literal["memory", "disk"] | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    backend: str
    classes_count: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """The model currently served."""

    source: str | None
    backend: str
    classes_count: int
    input_width: int | None = None
    input_height: int | None = None
    labels: list[str]


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    error: str | None = Field(default=None, description="Error class name, e.g. 'NotFoundError'")
    input: str | None = None
