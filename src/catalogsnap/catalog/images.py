"""Product image cache and loader.

Product records carry relative picture URLs (``/imgs/HT-2000.jpg``). The
loader resolves them against a base URL, downloads them once and keeps
the bytes in an ImageCache keyed by absolute URL. Absolute URLs are only
followed when they point back at the catalog's own image hosts.
"""

from __future__ import annotations

import asyncio
import io
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
from PIL import Image, UnidentifiedImageError

from catalogsnap.errors import ImageLoadError

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedImage:
    """Downloaded image bytes and their pixel dimensions."""

    data: bytes
    width: int
    height: int
    content_type: str | None = None


class ImageCache:
    """Thread-safe image cache keyed by absolute URL.

    Evicts the least recently used entry once ``capacity`` is reached.
    A capacity of 0 means unbounded: entries live for the whole process.
    Entries are never mutated; a second ``put`` for the same URL replaces
    the first.

    One lock guards the table, held only for the O(1) dict update or
    lookup. Downloads and decoding happen outside it, so callers working
    on distinct keys never wait on each other's I/O.
    """

    def __init__(self, capacity: int = 64) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._entries: OrderedDict[str, CachedImage] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def get(self, url: str) -> CachedImage | None:
        with self._lock:
            image = self._entries.get(url)
            if image is not None:
                self._entries.move_to_end(url)
            return image

    def put(self, url: str, image: CachedImage) -> None:
        with self._lock:
            self._entries[url] = image
            self._entries.move_to_end(url)
            if self._capacity and len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted %s from image cache", evicted)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ProductImageLoader:
    """Resolves, downloads and caches product images.

    Only URLs on the image base origin, or on one of ``allowed_origins``,
    are fetched. Anything else resolves to None. Concurrent loads of the
    same uncached URL share a single download.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: ImageCache,
        base_url: str,
        *,
        allowed_origins: Sequence[str] = (),
    ) -> None:
        self._client = client
        self._cache = cache
        self._base_url = base_url.rstrip("/")
        self._origins = {_origin(base_url), *(_origin(u) for u in allowed_origins)}
        self._inflight: dict[str, asyncio.Task[CachedImage]] = {}

    @property
    def cache(self) -> ImageCache:
        return self._cache

    def resolve(self, image_url: str | None) -> str | None:
        """Return the absolute URL for a record's picture URL.

        Returns None if the record has no picture or the URL points at a
        host the catalog does not serve images from.
        """
        if not image_url:
            return None
        if image_url.startswith(("http://", "https://")):
            url = image_url
        else:
            url = f"{self._base_url}/{image_url.lstrip('/')}"
        try:
            origin = _origin(url)
        except httpx.InvalidURL:
            return None
        if origin not in self._origins:
            logger.warning("Refusing image URL outside the catalog: %s", image_url)
            return None
        return url

    async def load(self, image_url: str) -> CachedImage:
        """Return the image at ``image_url``, downloading it on a cache miss.

        Raises:
            ImageLoadError: If the URL is empty or foreign, the download
                fails, or the bytes are not an image.
        """
        url = self.resolve(image_url)
        if url is None:
            raise ImageLoadError(image_url)

        cached = self._cache.get(url)
        if cached is not None:
            return cached

        task = self._inflight.get(url)
        if task is None:
            task = asyncio.ensure_future(self._download(url))
            self._inflight[url] = task
            task.add_done_callback(lambda _: self._inflight.pop(url, None))
        return await asyncio.shield(task)

    async def _download(self, url: str) -> CachedImage:
        try:
            response = await self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to load image %s: %s", url, exc)
            raise ImageLoadError(url, exc) from exc

        data = response.content
        try:
            with Image.open(io.BytesIO(data)) as image:
                width, height = image.size
        except (UnidentifiedImageError, OSError) as exc:
            logger.error("Failed to decode image %s: %s", url, exc)
            raise ImageLoadError(url, exc) from exc

        image = CachedImage(
            data=data,
            width=width,
            height=height,
            content_type=response.headers.get("content-type"),
        )
        self._cache.put(url, image)
        return image

    async def load_many(self, image_urls: Sequence[str]) -> list[CachedImage | None]:
        """Load several images concurrently and wait for all of them.

        The result is parallel to ``image_urls``; missing URLs and failed
        loads yield None. Repeated URLs are downloaded once.
        """

        async def _load(image_url: str) -> CachedImage | None:
            try:
                return await self.load(image_url)
            except ImageLoadError:
                # Already logged by load(); the row keeps its placeholder.
                return None

        unique = [u for u in dict.fromkeys(image_urls) if u]
        loaded_by_url = dict(zip(unique, await asyncio.gather(*(_load(u) for u in unique))))
        results = [loaded_by_url.get(u) if u else None for u in image_urls]
        loaded = sum(1 for r in results if r is not None)
        logger.info("Preloaded %d/%d product images", loaded, len(image_urls))
        return results


def _origin(url: str) -> tuple[str, str, int | None]:
    parsed = httpx.URL(url)
    return parsed.scheme, parsed.host, parsed.port
