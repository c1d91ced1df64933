"""Shared stubs and helpers for the CatalogSnap tests."""

from __future__ import annotations

import io
import time
from decimal import Decimal

import pytest
from PIL import Image

from catalogsnap.catalog.client import CatalogRecord, Price
from catalogsnap.catalog.query import CatalogQuery
from catalogsnap.config import Settings
from catalogsnap.errors import DecodeError
from catalogsnap.ml.image_classifier import Classification, ImageSample


def make_image_bytes(width: int = 64, height: int = 48, color: tuple[int, int, int] = (200, 30, 30), fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/catalogsnap_test_models",
        "model_ttl": 300,
        "max_concurrent": 2,
        "catalog_base_url": "http://catalog.test/odata",
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


PEN_RECORDS = [
    CatalogRecord(
        id="HT-1100",
        name="Ballpoint Pen",
        category="Pens",
        category_name="Pens",
        price=Price(amount=Decimal("1.50"), currency="USD"),
        image_url="/imgs/HT-1100.jpg",
    ),
    CatalogRecord(id="HT-1101", name="Fountain Pen", category="Pens", category_name="Pens"),
]


class StubClassifier:
    """Returns canned classifications keyed by sample bytes.

    ``delays`` holds per-sample sleeps (seconds) to force completion order.
    """

    model_name = "stub"

    def __init__(
        self,
        results: dict[bytes, list[tuple[str, float]]],
        delays: dict[bytes, float] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._results = results
        self._delays = delays or {}
        self._error = error
        self.calls: list[ImageSample] = []

    def classify(self, sample: ImageSample) -> list[Classification]:
        self.calls.append(sample)
        time.sleep(self._delays.get(sample.data, 0.0))
        if self._error is not None:
            raise self._error
        if sample.data not in self._results:
            raise DecodeError("unknown sample", stage="classifying")
        return [Classification(label, conf) for label, conf in self._results[sample.data]]


class StubCatalogClient:
    """Returns canned records per category, or raises ``error``."""

    def __init__(self, records: dict[str, list[CatalogRecord]] | None = None, error: Exception | None = None) -> None:
        self._records = records or {}
        self._error = error
        self.queries: list[CatalogQuery] = []

    async def fetch(self, query: CatalogQuery) -> list[CatalogRecord]:
        self.queries.append(query)
        if self._error is not None:
            raise self._error
        return list(self._records.get(query.category, []))


@pytest.fixture()
def settings() -> Settings:
    return make_settings()
