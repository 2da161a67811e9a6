"""Pydantic request/response schemas for the ImagePredictor API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    model: str
    tags: list[ImageTag]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    classifier: str = Field(description="Classifier state: 'unloaded', 'ready', or 'failed'")
    concurrent_requests: int
    queue_depth: int
    pending_predictions: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: list[int]
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
