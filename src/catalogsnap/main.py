"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from catalogsnap.config import Settings
    from catalogsnap.ml.model_manager import ModelManager

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from catalogsnap.api.routes import router
from catalogsnap.catalog.client import ODataCatalogClient
from catalogsnap.catalog.images import ImageCache, ProductImageLoader
from catalogsnap.catalog.query import CatalogQueryBuilder
from catalogsnap.config import get_settings
from catalogsnap.ml.image_classifier import OnnxImageClassifier
from catalogsnap.ml.inference import InferencePool
from catalogsnap.ml.model_manager import OnnxModelManager, get_model_spec
from catalogsnap.pipeline import ClassificationPipeline

logger = logging.getLogger(__name__)


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the HTTP client used for catalog queries."""
    headers = {"Accept": "application/json"}
    if settings.catalog_api_key:
        headers["APIKey"] = settings.catalog_api_key
    return httpx.AsyncClient(
        base_url=settings.catalog_base_url.rstrip("/") + "/",
        headers=headers,
        timeout=settings.catalog_timeout,
    )


def build_image_client(settings: Settings) -> httpx.AsyncClient:
    """Create the HTTP client used for product image downloads.

    The catalog ``APIKey`` header is only attached when images are served
    from the catalog's own origin.
    """
    headers: dict[str, str] = {}
    image_origin = httpx.URL(settings.image_base_url or settings.catalog_base_url)
    catalog_origin = httpx.URL(settings.catalog_base_url)
    same_origin = (image_origin.scheme, image_origin.host, image_origin.port) == (
        catalog_origin.scheme,
        catalog_origin.host,
        catalog_origin.port,
    )
    if settings.catalog_api_key and same_origin:
        headers["APIKey"] = settings.catalog_api_key
    return httpx.AsyncClient(headers=headers, timeout=settings.catalog_timeout)


async def evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    """Drop idle ONNX sessions every ``interval`` seconds until cancelled."""
    while True:
        await asyncio.sleep(interval)
        try:
            model_manager.unload_idle_models()
        except Exception:
            logger.exception("Idle model eviction failed")


def init_app_state(
    app: FastAPI,
    settings: Settings,
    http_client: httpx.AsyncClient,
    image_client: httpx.AsyncClient | None = None,
) -> None:
    """Wire the pipeline and its collaborators onto ``app.state``.

    ``image_client`` defaults to ``http_client``.
    """
    app.state.settings = settings

    inference_pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    spec = get_model_spec(settings.classifier_model)
    classifier = OnnxImageClassifier(
        model_manager,
        spec.name,
        input_size=spec.input_size,
        apply_softmax=spec.outputs_logits,
        max_image_pixels=settings.max_image_pixels,
    )
    pipeline = ClassificationPipeline(
        classifier,
        ODataCatalogClient(http_client, entity_set=settings.catalog_entity_set),
        inference_pool,
        query_builder=CatalogQueryBuilder(
            page_size=settings.catalog_page_size,
            field=settings.catalog_category_field,
        ),
        top_k=settings.classification_top_k,
        min_confidence=settings.min_confidence,
    )

    app.state.http_client = http_client
    app.state.image_client = image_client or http_client
    app.state.inference_pool = inference_pool
    app.state.model_manager = model_manager
    app.state.pipeline = pipeline
    app.state.image_loader = ProductImageLoader(
        app.state.image_client,
        ImageCache(capacity=settings.image_cache_size),
        base_url=settings.image_base_url or settings.catalog_base_url,
        allowed_origins=[settings.catalog_base_url],
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting CatalogSnap (device=%s, max_concurrent=%s, classifier=%s, catalog=%s)",
        settings.device,
        settings.max_concurrent,
        settings.classifier_model,
        settings.catalog_base_url,
    )

    init_app_state(app, settings, build_http_client(settings), build_image_client(settings))

    eviction_task = None
    if settings.model_ttl:
        eviction_task = asyncio.create_task(evict_idle_models(app.state.model_manager, settings.model_ttl / 2))
        logger.info("Idle model eviction started (ttl=%ss)", settings.model_ttl)

    logger.info("CatalogSnap ready")
    yield

    logger.info("Shutting down CatalogSnap")
    if eviction_task is not None:
        eviction_task.cancel()
        with suppress(asyncio.CancelledError):
            await eviction_task
    await app.state.http_client.aclose()
    await app.state.image_client.aclose()
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("CatalogSnap shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="CatalogSnap",
        description="Photograph a product, get the matching catalog entries",
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

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run("catalogsnap.main:app", host=settings.host, port=settings.port)
