"""Translation of pipeline errors into HTTP responses."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse

from mediaclassify.api.schemas import ErrorResponse
from mediaclassify.errors import (
    DecodeFailedError,
    ExtractionEmptyError,
    FetchFailedError,
    FfmpegUnavailableError,
    InvalidInputError,
    MediaClassifyError,
    ModelLoadError,
    ModelMismatchError,
    NotFoundError,
    ProbeFailedError,
    SizeExceededError,
    UnauthorizedError,
    WorkerFailureError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[MediaClassifyError], int] = {
    InvalidInputError: 400,
    UnauthorizedError: 401,
    NotFoundError: 404,
    SizeExceededError: 413,
    DecodeFailedError: 422,
    ProbeFailedError: 422,
    ExtractionEmptyError: 422,
    FetchFailedError: 502,
    FfmpegUnavailableError: 503,
    ModelMismatchError: 500,
    ModelLoadError: 500,
    WorkerFailureError: 500,
}


def status_for(exc: MediaClassifyError) -> int:
    for error_type in type(exc).__mro__:
        code = ERROR_STATUS.get(error_type)  # type: ignore[arg-type]
        if code is not None:
            return code
    return 500


async def media_classify_error_handler(request: Request, exc: MediaClassifyError) -> JSONResponse:
    """Render a pipeline error as an ``ErrorResponse``."""
    code = status_for(exc)
    if code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    body = ErrorResponse(detail=exc.message, error=type(exc).__name__, input=exc.input_ref)
    headers = {"WWW-Authenticate": "Bearer"} if code == 401 else None
    return JSONResponse(status_code=code, content=body.model_dump(), headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MediaClassifyError, media_classify_error_handler)  # type: ignore[arg-type]
