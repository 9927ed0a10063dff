"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from snaplabel.api.routes import router
from snaplabel.config import get_settings
from snaplabel.errors import ClassificationError, DecodeError, InvariantViolation, ModelNotReady, SourceUnavailable
from snaplabel.ml.decoder import JpegDecoder
from snaplabel.ml.inference import InferencePool
from snaplabel.ml.model_registry import ModelRegistry, OnnxModelLoader
from snaplabel.ml.orchestrator import ClassificationOrchestrator
from snaplabel.ml.source import ImageSourceResolver
from snaplabel.ml.tensor import TensorPacker

logger = logging.getLogger(__name__)

_ERROR_STATUS: dict[type[ClassificationError], int] = {
    SourceUnavailable: status.HTTP_422_UNPROCESSABLE_ENTITY,
    DecodeError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvariantViolation: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ModelNotReady: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapLabel (device=%s, max_concurrent=%s, models=%s, active=%s)",
        settings.device,
        settings.max_concurrent,
        ",".join(settings.models),
        settings.active_model,
    )

    inference_pool = InferencePool(settings)
    registry = ModelRegistry.from_settings(settings, OnnxModelLoader(settings), inference_pool)
    http_client = httpx.AsyncClient(timeout=settings.fetch_timeout)

    app.state.inference_pool = inference_pool
    app.state.model_registry = registry
    app.state.orchestrator = ClassificationOrchestrator(
        ImageSourceResolver.from_settings(settings, http_client),
        JpegDecoder(settings.max_image_pixels),
        TensorPacker(),
        registry,
    )

    registry.start()
    logger.info("SnapLabel accepting requests while models load")
    yield

    logger.info("Shutting down SnapLabel")
    await registry.shutdown()
    await http_client.aclose()
    inference_pool.shutdown()
    logger.info("SnapLabel shutdown complete")


async def classification_error_handler(request: Request, exc: ClassificationError) -> JSONResponse:
    """Render a stage-tagged pipeline failure as a JSON error body."""
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "stage": exc.stage.value},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapLabel",
        description="Image classification API: JPEG in, ranked labels out",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.add_exception_handler(ClassificationError, classification_error_handler)
    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
