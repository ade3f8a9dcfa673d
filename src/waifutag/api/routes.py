"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, UploadFile, status

from waifutag.api.middleware import verify_api_key
from waifutag.api.schemas import (
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    TagResponse,
)
from waifutag.ml.errors import (
    BackendExecutionError,
    EmptyImageError,
    LengthMismatchError,
    MalformedTableError,
    ModelLoadError,
    PipelineNotReadyError,
    ShapeMismatchError,
    UnsupportedFormatError,
)
from waifutag.ml.labels import TagCategory
from waifutag.ml.pipeline import TagOptions
from waifutag.ml.variants import VARIANT_REGISTRY

if TYPE_CHECKING:
    from waifutag.config import Settings
    from waifutag.ml.inference import InferencePool
    from waifutag.ml.model_manager import HubModelManager
    from waifutag.ml.pipeline import TaggingPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

Threshold = Annotated[float | None, Query(ge=0.0, le=1.0)]


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> HubModelManager:
    manager: HubModelManager = request.app.state.model_manager
    return manager


async def _get_pipeline(request: Request, model: str) -> TaggingPipeline:
    manager = _get_model_manager(request)
    try:
        variant = manager.resolve(model)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown model: {model}") from None

    try:
        return await asyncio.to_thread(manager.get_pipeline, variant)
    except (ModelLoadError, MalformedTableError, LengthMismatchError, PipelineNotReadyError) as exc:
        logger.error("Model %s unavailable: %s", variant, exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


@router.post(
    "/tag",
    response_model=TagResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Tag an image",
)
async def tag_image(
    request: Request,
    file: UploadFile,
    model: str | None = None,
    general_threshold: Threshold = None,
    character_threshold: Threshold = None,
    rating_threshold: Threshold = None,
    sort: bool = False,
    mcut: bool = False,
) -> TagResponse:
    """Run the tagger on an uploaded image and return its tags by category."""
    settings = _get_settings(request)
    model_name = model or settings.model

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    pipeline = await _get_pipeline(request, model_name)

    overrides = {
        category: value
        for category, value in (
            (TagCategory.GENERAL, general_threshold),
            (TagCategory.CHARACTER, character_threshold),
            (TagCategory.RATING, rating_threshold),
        )
        if value is not None
    }
    options = TagOptions(thresholds=overrides or None, sort_by_score=sort, mcut=mcut)

    pool = _get_inference_pool(request)
    try:
        result = await pool.tag(pipeline, data, options)
    except (UnsupportedFormatError, EmptyImageError) as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from exc
    except PipelineNotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except (ShapeMismatchError, BackendExecutionError, LengthMismatchError) as exc:
        logger.exception("Tagging failed for %s", file.filename)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return TagResponse(
        model=model_name,
        caption=result.to_caption(),
        **result.to_dict(),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        device=str(manager.device),
        gpu=settings.device != "cpu",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return every tagger variant and whether it is loaded."""
    settings = _get_settings(request)
    loaded = set(_get_model_manager(request).get_loaded_models())

    models = [
        ModelInfo(
            name=variant.value,
            repo_id=config.repo_id,
            input_size=config.input_size,
            status="loaded" if variant.value in loaded else "available",
            default=variant.value == settings.model,
        )
        for variant, config in VARIANT_REGISTRY.items()
    ]
    return ModelsResponse(models=models)
