"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Form, Header, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse, Response

from catalogsnap.api.middleware import verify_api_key
from catalogsnap.api.schemas import (
    ClassifyProductResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
)
from catalogsnap.errors import FailureKind, ImageLoadError, PipelineError
from catalogsnap.ml.image_classifier import ImageSample, Orientation
from catalogsnap.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from catalogsnap.catalog.images import ProductImageLoader
    from catalogsnap.config import Settings
    from catalogsnap.ml.inference import InferencePool
    from catalogsnap.ml.model_manager import ModelManager
    from catalogsnap.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_FAILURE_STATUS: dict[FailureKind, int] = {
    FailureKind.DECODE: status.HTTP_400_BAD_REQUEST,
    FailureKind.INFERENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    FailureKind.NO_MATCH: 422,
    FailureKind.FETCH: status.HTTP_502_BAD_GATEWAY,
    FailureKind.SUPERSEDED: status.HTTP_409_CONFLICT,
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_pipeline(request: Request) -> ClassificationPipeline:
    pipeline: ClassificationPipeline = request.app.state.pipeline
    return pipeline


def _get_image_loader(request: Request) -> ProductImageLoader:
    loader: ProductImageLoader = request.app.state.image_loader
    return loader


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _pipeline_error_response(exc: PipelineError) -> JSONResponse:
    return JSONResponse(
        status_code=_FAILURE_STATUS[exc.kind],
        content={"detail": exc.user_message, "kind": exc.kind, "stage": exc.stage},
    )


@router.post(
    "/classify-product",
    response_model=ClassifyProductResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Find catalog products matching a photo",
)
async def classify_product(
    request: Request,
    file: UploadFile,
    background_tasks: BackgroundTasks,
    orientation: Annotated[Orientation, Form()] = Orientation.UP,
    x_session_id: Annotated[str | None, Header()] = None,
) -> ClassifyProductResponse | JSONResponse:
    """Classify an uploaded product photo and return the products in its category.

    Requests sharing an ``X-Session-Id`` supersede each other: only the
    newest one receives products, older ones get 409.
    """
    settings = _get_settings(request)
    pipeline = _get_pipeline(request)

    data = await file.read()
    if len(data) > settings.max_file_size:
        return JSONResponse(
            status_code=413,
            content={"detail": f"File exceeds {settings.max_file_size} bytes"},
        )

    try:
        result = await pipeline.run(ImageSample(data=data, orientation=orientation), session=x_session_id)
    except PipelineError as exc:
        return _pipeline_error_response(exc)
    except TimeoutError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Classifier is busy, try again shortly"},
        )

    if settings.prefetch_images and any(result.image_urls):
        background_tasks.add_task(_get_image_loader(request).load_many, list(result.image_urls))

    return ClassifyProductResponse.from_result(result)


@router.get(
    "/product-images",
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    },
    summary="Fetch a product image through the image cache",
)
async def product_image(
    request: Request,
    url: Annotated[str, Query(description="Picture URL as returned in image_urls")],
) -> Response:
    """Return the image bytes for a product picture URL.

    Only relative picture URLs and URLs on the catalog's image hosts are
    served; any other host gets 404.
    """
    loader = _get_image_loader(request)
    if loader.resolve(url) is None:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "No catalog image at this URL"})

    try:
        image = await loader.load(url)
    except ImageLoadError as exc:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content={"detail": str(exc)})

    return Response(content=image.data, media_type=image.content_type or "application/octet-stream")


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        cached_images=len(_get_image_loader(request).cache),
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available classifier models and which one is active."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            status="active" if spec.name == settings.classifier_model else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
