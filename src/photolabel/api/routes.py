"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, UploadFile, status

from photolabel import messages
from photolabel.api.deps import get_inference_pool, get_orchestrator, get_settings, verify_api_key
from photolabel.api.schemas import (
    CaptureConfigResponse,
    ClassificationResponse,
    ErrorInfo,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    StateResponse,
)
from photolabel.config import Settings
from photolabel.ml.inference import InferencePool
from photolabel.ml.model_manager import MODEL_REGISTRY, ModelConfig
from photolabel.ml.preprocessing import SUPPORTED_EXTENSIONS
from photolabel.orchestrator import ClassificationOrchestrator

if TYPE_CHECKING:
    from photolabel.errors import AppError
    from photolabel.orchestrator import ClassificationState

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

SettingsDep = Annotated[Settings, Depends(get_settings)]
PoolDep = Annotated[InferencePool, Depends(get_inference_pool)]
OrchestratorDep = Annotated[ClassificationOrchestrator, Depends(get_orchestrator)]


def _error_info(error: AppError | None) -> ErrorInfo | None:
    if error is None:
        return None
    return ErrorInfo(kind=error.kind.value, message=error.message)


def _status_text(snapshot: ClassificationState) -> str:
    if not snapshot.is_ready:
        return messages.LOADING_MODEL
    if snapshot.is_classifying:
        return messages.CLASSIFYING
    return snapshot.result


def _state_response(snapshot: ClassificationState) -> StateResponse:
    return StateResponse(
        state=snapshot.state.value,
        is_ready=snapshot.is_ready,
        is_classifying=snapshot.is_classifying,
        result=snapshot.result,
        status_text=_status_text(snapshot),
        error=_error_info(snapshot.error),
        request_id=snapshot.request_id,
    )


@router.post(
    "/classify-image",
    response_model=ClassificationResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a captured image",
)
async def classify_image(
    file: UploadFile,
    settings: SettingsDep,
    orchestrator: OrchestratorDep,
) -> ClassificationResponse:
    """Classify an uploaded photo and return the top label with its confidence."""
    if not orchestrator.is_ready:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=messages.LOADING_MODEL)
    if orchestrator.is_classifying:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A classification is already running")

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Upload exceeds {settings.max_file_size} bytes",
        )

    # Another upload may have started classifying while this body was read.
    request_id = await orchestrator.classify_image(data)
    if request_id is None:
        if not orchestrator.is_ready:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=messages.LOADING_MODEL)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="A classification is already running")

    snapshot = orchestrator.snapshot()
    return ClassificationResponse(
        request_id=request_id,
        result=snapshot.result,
        error=_error_info(snapshot.error),
    )


@router.get(
    "/state",
    response_model=StateResponse,
    summary="Current classification state",
)
async def get_state(orchestrator: OrchestratorDep) -> StateResponse:
    """Return readiness, busy flag, last result and last error."""
    return _state_response(orchestrator.snapshot())


@router.post(
    "/model/reload",
    response_model=StateResponse,
    summary="Retry loading the model",
)
async def reload_model(orchestrator: OrchestratorDep) -> StateResponse:
    """Retry a failed model load. A no-op when the model is already loaded."""
    await orchestrator.initialize()
    return _state_response(orchestrator.snapshot())


@router.get(
    "/capture-config",
    response_model=CaptureConfigResponse,
    summary="Camera capture settings",
)
async def capture_config(settings: SettingsDep) -> CaptureConfigResponse:
    """Return the capture settings camera clients should use."""
    return CaptureConfigResponse(
        quality=settings.capture_quality,
        skip_processing=settings.capture_skip_processing,
        supported_extensions=list(SUPPORTED_EXTENSIONS),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(settings: SettingsDep, pool: PoolDep, orchestrator: OrchestratorDep) -> HealthResponse:
    """Return service health status."""
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=orchestrator.lifecycle.loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(settings: SettingsDep) -> ModelsResponse:
    """Return the MobileNet variants and which one is configured."""
    active = ModelConfig.from_settings(settings).model_name
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                version=spec.version,
                width_multiplier=spec.width_multiplier,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
