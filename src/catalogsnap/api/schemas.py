"""Pydantic request/response schemas for the CatalogSnap API."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from catalogsnap.catalog.client import CatalogRecord
    from catalogsnap.pipeline import PipelineResult


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class PriceInfo(BaseModel):
    """Currency-tagged product price."""

    amount: Decimal
    currency: str | None = None
    display: str


class ProductRecord(BaseModel):
    """A catalog product matching the classified category."""

    id: str
    name: str
    category: str
    category_name: str | None = None
    price: PriceInfo | None = None
    image_url: str | None = Field(default=None, description="Picture URL as returned by the catalog")

    @classmethod
    def from_record(cls, record: CatalogRecord) -> ProductRecord:
        price = None
        if record.price is not None:
            price = PriceInfo(
                amount=record.price.amount,
                currency=record.price.currency,
                display=record.price.display(),
            )
        return cls(
            id=record.id,
            name=record.name,
            category=record.category,
            category_name=record.category_name,
            price=price,
            image_url=record.image_url,
        )


class ClassifyProductResponse(BaseModel):
    """Response for the product classification endpoint."""

    request_id: int
    category: str = Field(description="Top-ranked category, used as the list title")
    classifications: list[ImageTag]
    products: list[ProductRecord]
    image_urls: list[str] = Field(description="Picture URL per product, empty string when absent")

    @classmethod
    def from_result(cls, result: PipelineResult) -> ClassifyProductResponse:
        return cls(
            request_id=result.request_id,
            category=result.category,
            classifications=[ImageTag(label=c.label, confidence=c.confidence) for c in result.classifications],
            products=[ProductRecord.from_record(r) for r in result.records],
            image_urls=list(result.image_urls),
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int
    cached_images: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
    stage: str | None = None
