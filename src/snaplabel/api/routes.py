"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

import onnxruntime
from fastapi import APIRouter, HTTPException, Request, UploadFile, status

from snaplabel.api.schemas import (
    ClassifyRequest,
    ClassifyResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionOut,
    SetActiveModelRequest,
)
from snaplabel.ml.model_registry import MODEL_CATALOG
from snaplabel.ml.source import ImageReference

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import Prediction
    from snaplabel.ml.inference import InferencePool
    from snaplabel.ml.model_registry import ModelHandle, ModelRegistry
    from snaplabel.ml.orchestrator import ClassificationOrchestrator

router = APIRouter(prefix="/api/v1")

_PIPELINE_ERRORS: dict[int | str, dict[str, object]] = {
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_registry(request: Request) -> ModelRegistry:
    registry: ModelRegistry = request.app.state.model_registry
    return registry


def _get_orchestrator(request: Request) -> ClassificationOrchestrator:
    orchestrator: ClassificationOrchestrator = request.app.state.orchestrator
    return orchestrator


def _to_response(model: str, predictions: list[Prediction]) -> ClassifyResponse:
    return ClassifyResponse(
        model=model,
        predictions=[PredictionOut(label=p.label, probability=p.probability) for p in predictions],
    )


def _model_info(handle: ModelHandle, active_model: str) -> ModelInfo:
    spec = MODEL_CATALOG.get(handle.model_id)
    return ModelInfo(
        name=handle.model_id,
        task=spec.task if spec else "unknown",
        source=spec.source if spec else "unknown",
        license=spec.license if spec else "unknown",
        state=handle.state,
        ready=handle.is_ready,
        active=handle.model_id == active_model,
        error=handle.error,
    )


@router.post(
    "/classify",
    response_model=ClassifyResponse,
    responses=_PIPELINE_ERRORS,
    summary="Classify a referenced image",
)
async def classify(body: ClassifyRequest, request: Request) -> ClassifyResponse:
    """Fetch or read an image by reference and return ranked labels."""
    orchestrator = _get_orchestrator(request)
    model = body.model or _get_registry(request).active_model_id
    if body.image.kind is None:
        reference = ImageReference.from_uri(body.image.uri)
    else:
        reference = ImageReference(kind=body.image.kind, uri=body.image.uri)
    predictions = await orchestrator.classify(reference, model)
    return _to_response(model, predictions)


@router.post(
    "/classify-image",
    response_model=ClassifyResponse,
    responses={
        **_PIPELINE_ERRORS,
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Classify an uploaded JPEG",
)
async def classify_image(file: UploadFile, request: Request, model: str | None = None) -> ClassifyResponse:
    """Classify an uploaded JPEG and return ranked labels."""
    settings = _get_settings(request)
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )

    target = model or _get_registry(request).active_model_id
    predictions = await _get_orchestrator(request).classify_bytes(data, target)
    return _to_response(target, predictions)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    registry = _get_registry(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        providers=onnxruntime.get_available_providers(),
        models_loaded=[h.model_id for h in registry.handles() if h.is_ready],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List registered models and their load state",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return every registered model with its readiness."""
    registry = _get_registry(request)
    active = registry.active_model_id
    return ModelsResponse(models=[_model_info(h, active) for h in registry.handles()])


@router.post(
    "/models/{model_id}/load",
    response_model=ModelInfo,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Wait for a model to finish loading",
)
async def load_model(model_id: str, request: Request) -> ModelInfo:
    """Start (or join) the model's load and return its terminal state."""
    registry = _get_registry(request)
    try:
        await registry.load(model_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    handle = next(h for h in registry.handles() if h.model_id == model_id)
    return _model_info(handle, registry.active_model_id)


@router.put(
    "/models/active",
    response_model=ModelsResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Select the model used when a request names none",
)
async def set_active_model(body: SetActiveModelRequest, request: Request) -> ModelsResponse:
    registry = _get_registry(request)
    try:
        registry.set_active(body.model)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    return ModelsResponse(models=[_model_info(h, body.model) for h in registry.handles()])
