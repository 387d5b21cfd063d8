"""Pydantic request/response schemas for the PhotoLabel API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorInfo(BaseModel):
    """A typed error published by the orchestrator."""

    kind: str = Field(description="Error kind: 'model_load', 'classification', 'camera' or 'permission'")
    message: str


class ClassificationResponse(BaseModel):
    """Outcome of one classification request."""

    request_id: int
    result: str = Field(description="'<label> (<pct>%)', the no-prediction text, or the error text")
    error: ErrorInfo | None = None


class StateResponse(BaseModel):
    """Observable orchestrator state for capture clients."""

    state: str = Field(description="'not_initialized', 'loading', 'ready', 'classifying' or 'error'")
    is_ready: bool
    is_classifying: bool
    result: str
    status_text: str
    error: ErrorInfo | None = None
    request_id: int


class CaptureConfigResponse(BaseModel):
    """Capture settings for camera clients."""

    quality: float = Field(gt=0.0, le=1.0)
    skip_processing: bool
    supported_extensions: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    version: int
    width_multiplier: float
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
