"""Environment-based configuration for CatalogSnap."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CATALOGSNAP_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CATALOGSNAP_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    classifier_model: str = "product_classifier_v1"
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Classification
    classification_top_k: int = Field(default=2, ge=1)
    min_confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    # Catalog backend (OData)
    catalog_base_url: str = "http://localhost:8080/odata"
    catalog_entity_set: str = "Products"
    catalog_category_field: str = "Category"
    catalog_page_size: int = Field(default=50, ge=1)
    catalog_timeout: float = Field(default=30.0, gt=0)
    catalog_api_key: str | None = None

    # Product images (None = same host as the catalog)
    image_base_url: str | None = None
    image_cache_size: int = Field(default=64, ge=0)
    prefetch_images: bool = True


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
