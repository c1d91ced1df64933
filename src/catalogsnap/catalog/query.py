"""Derive a catalog filter from ranked classifications."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from catalogsnap.errors import NoClassificationError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from catalogsnap.ml.image_classifier import Classification

DEFAULT_PAGE_SIZE = 50
DEFAULT_CATEGORY_FIELD = "Category"


@dataclass(frozen=True)
class CatalogQuery:
    """Filter on a single product category, capped at ``limit`` results."""

    category: str
    limit: int = DEFAULT_PAGE_SIZE
    field: str = DEFAULT_CATEGORY_FIELD

    def to_filter(self) -> str:
        """Render as an OData ``$filter`` expression."""
        escaped = self.category.replace("'", "''")
        return f"{self.field} eq '{escaped}'"

    def __str__(self) -> str:
        return f'{self.field.lower()} == "{self.category}" (limit {self.limit})'


class CatalogQueryBuilder:
    """Builds a CatalogQuery from the top-ranked classification.

    The input is assumed ranked; index 0 is used as-is and its confidence
    plays no part in the query.
    """

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE, field: str = DEFAULT_CATEGORY_FIELD) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._page_size = page_size
        self._field = field

    def build(self, classifications: Sequence[Classification]) -> CatalogQuery:
        if not classifications:
            raise NoClassificationError("No classification to build a query from", stage="query_building")
        return CatalogQuery(category=classifications[0].label, limit=self._page_size, field=self._field)
