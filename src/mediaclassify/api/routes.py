"""API route definitions.

Classification and model endpoints require the configured API key when one
is set; the health endpoint is always open.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Request, UploadFile
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from mediaclassify.api.schemas import (
    ClassifyRequestBody,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from mediaclassify.errors import InvalidInputError, ModelMismatchError, SizeExceededError, UnauthorizedError
from mediaclassify.media.acquisition import IoMode
from mediaclassify.pipeline.requests import MediaType, build_request

if TYPE_CHECKING:
    from mediaclassify.config import Settings
    from mediaclassify.pipeline.classifier import MediaClassifier

router = APIRouter(prefix="/api/v1")

_bearer_scheme = HTTPBearer(auto_error=False)
_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_classifier(request: Request) -> MediaClassifier:
    classifier: MediaClassifier = request.app.state.classifier
    return classifier


async def require_api_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_key_header)],
) -> None:
    """Accept the key as ``Authorization: Bearer <key>`` or ``X-API-Key: <key>``."""
    expected = _get_settings(request).api_key
    if expected is None:
        return
    supplied = bearer.credentials if bearer is not None else header_key
    if supplied is None or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise UnauthorizedError("Invalid or missing API key")


_protected = [Depends(require_api_key)]


@router.post(
    "/classify",
    response_model=None,
    responses=_ERROR_RESPONSES,
    dependencies=_protected,
    summary="Classify images and videos by reference",
)
async def classify(body: ClassifyRequestBody, request: Request) -> JSONResponse:
    """Classify URLs, paths, data URIs or base64 payloads.

    The response shape follows the request: a single envelope for one input,
    a batch envelope for several, and a mixed envelope when images and videos
    are combined.
    """
    classifier = _get_classifier(request)
    classify_request = build_request(body.inputs, MediaType(body.media))
    options = classifier.defaults.override(
        top_k=body.top_k,
        center_crop=body.center_crop,
        frames=body.frames,
        turbo=body.turbo,
        batch_size=body.batch_size,
        io_mode=IoMode(body.io) if body.io else None,
    )
    result = await classifier.classify(classify_request, options)
    return JSONResponse(content=result.to_json_dict())


@router.post(
    "/classify-image",
    response_model=None,
    responses=_ERROR_RESPONSES,
    dependencies=_protected,
    summary="Classify an uploaded image",
)
async def classify_image(file: UploadFile, request: Request, top_k: int | None = None) -> JSONResponse:
    """Classify an uploaded image and return ranked predictions."""
    settings = _get_settings(request)
    classifier = _get_classifier(request)

    data = await file.read()
    if not data:
        raise InvalidInputError("Uploaded file is empty", input_ref=file.filename)
    if len(data) > settings.max_file_size:
        raise SizeExceededError(
            f"Uploaded file exceeds max_file_size ({len(data)} > {settings.max_file_size})",
            input_ref=file.filename,
        )

    result = await classifier.classify_image(data, classifier.defaults.override(top_k=top_k))
    if file.filename:
        result.input.image_url = file.filename
    return JSONResponse(content=result.to_json_dict())


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    classifier = _get_classifier(request)
    pool = classifier.pool
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        backend=classifier.backend,
        classes_count=len(classifier.labels),
        concurrent_requests=pool.active_count if pool is not None else 0,
        queue_depth=pool.queue_depth if pool is not None else 0,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    responses={401: {"model": ErrorResponse}},
    dependencies=_protected,
    summary="Describe the served model",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the loaded model, its backend and its labels."""
    classifier = _get_classifier(request)
    try:
        target = classifier.target_shape
        width, height = target.width, target.height
    except ModelMismatchError:
        width = height = None

    return ModelsResponse(
        models=[
            ModelInfo(
                source=classifier.source,
                backend=classifier.backend,
                classes_count=len(classifier.labels),
                input_width=width,
                input_height=height,
                labels=list(classifier.labels),
            )
        ]
    )
