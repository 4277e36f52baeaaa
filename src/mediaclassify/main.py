"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mediaclassify.api.errors import register_exception_handlers
from mediaclassify.api.routes import router
from mediaclassify.config import LOG_FORMAT, get_settings
from mediaclassify.pipeline.classifier import MediaClassifier

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, release it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    logger.info(
        "Starting mediaclassify (device=%s, io_mode=%s, max_concurrent=%s, model=%s)",
        settings.device,
        settings.io_mode,
        settings.max_concurrent,
        settings.model_source,
    )

    classifier = await MediaClassifier.create(settings)
    app.state.classifier = classifier

    logger.info("mediaclassify ready")
    yield

    logger.info("Shutting down mediaclassify")
    await classifier.aclose()
    logger.info("mediaclassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="mediaclassify",
        description="Image and video classification API backed by ONNX Runtime",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)
    application.include_router(router)
    return application


app = create_app()
