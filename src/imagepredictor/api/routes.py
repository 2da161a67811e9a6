"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from imagepredictor.api.dependencies import (
    get_classifier,
    get_engine,
    get_model_manager,
    get_predictor,
    get_settings,
    verify_api_key,
)
from imagepredictor.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from imagepredictor.errors import ClassifierLoadError, DispatchError, ImageDecodeError, PixelBufferError
from imagepredictor.ml.model_manager import MODEL_REGISTRY
from imagepredictor.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from imagepredictor.ml.image_classifier import ClassificationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with tags",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    top_k: Annotated[int | None, Query(ge=1)] = None,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags."""
    settings = get_settings(request)
    predictor = get_predictor(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(413, f"File exceeds {settings.max_file_size} bytes")

    try:
        image = await asyncio.to_thread(decode_image, data, settings.max_image_pixels)
    except ImageDecodeError as exc:
        return _error(422, str(exc))

    predictions: list[ClassificationResult] | None
    try:
        predictions = await predictor.predict_async(image)
    except PixelBufferError as exc:
        return _error(422, str(exc))
    except (ClassifierLoadError, DispatchError) as exc:
        logger.warning("Classification unavailable: %s", exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    if predictions is None:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Image classification produced no result")

    limit = top_k or settings.default_top_k
    return ClassifyImageResponse(
        model=settings.classifier_model,
        tags=[ImageTag(label=p.label, confidence=p.confidence) for p in predictions[:limit]],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_settings(request)
    engine = get_engine(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_manager(request).get_loaded_models(),
        classifier=get_classifier(request).state.value,
        concurrent_requests=engine.active_count,
        queue_depth=engine.queue_depth,
        pending_predictions=get_predictor(request).pending_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the classifier registry, marking the configured model active."""
    active = get_settings(request).classifier_model
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                input_size=list(spec.input_size),
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
