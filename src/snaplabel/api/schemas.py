"""Pydantic request/response schemas for the SnapLabel API."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class ImageReferenceIn(BaseModel):
    """Where the image to classify lives."""

    kind: Literal["remote", "local"] | None = Field(default=None, description="Inferred from the URI scheme when omitted")
    uri: str = Field(min_length=1, description="http(s) URL, file path under the local root, or base64 data: URI")


class ClassifyRequest(BaseModel):
    """Request body for classifying a referenced image."""

    image: ImageReferenceIn
    model: str | None = Field(default=None, description="Model id; the active model when omitted")


class PredictionOut(BaseModel):
    """A single ranked label."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)


class ClassifyResponse(BaseModel):
    """Ranked predictions, highest probability first."""

    model: str
    predictions: list[PredictionOut]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    providers: list[str]
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Load status of a registered model."""

    name: str
    task: str = Field(description="'general_classification' or 'specialized_classification'")
    source: str
    license: str
    state: str = Field(description="'unloaded', 'loading', 'ready', or 'failed'")
    ready: bool
    active: bool
    error: str | None = None


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class SetActiveModelRequest(BaseModel):
    model: str


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    stage: str | None = None
