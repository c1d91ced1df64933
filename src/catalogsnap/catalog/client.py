"""Catalog backend client.

``ODataCatalogClient`` queries the product entity set of an OData service
(v2 or v4 JSON) and maps entries onto CatalogRecords. Transport and HTTP
errors propagate as ``httpx.HTTPError``; the pipeline reports them as
FetchError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    import httpx

    from catalogsnap.catalog.query import CatalogQuery

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Price:
    """A decimal amount tagged with an ISO currency code."""

    amount: Decimal
    currency: str | None = None

    def display(self) -> str:
        formatted = f"{self.amount:,.2f}"
        if self.currency:
            return f"{self.currency} {formatted}"
        return formatted


@dataclass(frozen=True)
class CatalogRecord:
    """One product returned by a catalog query."""

    id: str
    name: str
    category: str
    category_name: str | None = None
    price: Price | None = None
    image_url: str | None = None


class CatalogClient(Protocol):
    """Protocol for catalog backends."""

    async def fetch(self, query: CatalogQuery) -> list[CatalogRecord]:
        """Return the records matching ``query``, in backend order."""
        ...


class ODataCatalogClient:
    """CatalogClient for an OData product entity set."""

    def __init__(self, client: httpx.AsyncClient, entity_set: str = "Products") -> None:
        self._client = client
        self._entity_set = entity_set

    async def fetch(self, query: CatalogQuery) -> list[CatalogRecord]:
        params = {
            "$filter": query.to_filter(),
            "$top": str(query.limit),
            "$format": "json",
        }
        logger.info("Fetching %s where %s", self._entity_set, params["$filter"])
        response = await self._client.get(self._entity_set, params=params)
        response.raise_for_status()

        entries = _extract_entries(response.json())
        records = [_to_record(entry) for entry in entries]
        logger.info("Fetched %d %s for %s", len(records), self._entity_set, query.category)
        return records


def _extract_entries(payload: Any) -> list[dict[str, Any]]:
    """Pull the entity list out of an OData v4 or v2 JSON body."""
    if isinstance(payload, dict):
        if isinstance(payload.get("value"), list):
            return payload["value"]
        body = payload.get("d")
        if isinstance(body, list):
            return body
        if isinstance(body, dict) and isinstance(body.get("results"), list):
            return body["results"]
    raise ValueError("Unexpected OData response: no entity collection found")


def _to_record(entry: dict[str, Any]) -> CatalogRecord:
    try:
        product_id = entry["ProductId"]
    except KeyError:
        raise ValueError(f"Catalog entry without ProductId: {entry!r}") from None

    return CatalogRecord(
        id=str(product_id),
        name=entry.get("Name") or "",
        category=entry.get("Category") or "",
        category_name=entry.get("CategoryName"),
        price=_to_price(entry.get("Price"), entry.get("CurrencyCode")),
        image_url=entry.get("PictureUrl"),
    )


def _to_price(raw: Any, currency: str | None) -> Price | None:
    if raw is None or raw == "":
        return None
    try:
        # OData v2 serializes Edm.Decimal as a string.
        amount = Decimal(str(raw))
    except InvalidOperation:
        raise ValueError(f"Invalid price: {raw!r}") from None
    return Price(amount=amount, currency=currency)
