"""Tests for the product image cache and loader."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import httpx
import pytest

from catalogsnap.catalog.images import CachedImage, ImageCache, ProductImageLoader
from catalogsnap.errors import ImageLoadError

from conftest import make_image_bytes

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

BASE_URL = "http://catalog.test/odata"


def _image(tag: bytes = b"x") -> CachedImage:
    return CachedImage(data=tag, width=1, height=1)


# ---------------------------------------------------------------------------
# ImageCache
# ---------------------------------------------------------------------------


class TestImageCache:
    def test_read_your_write(self) -> None:
        cache = ImageCache()
        image = _image()
        cache.put("http://a/1.jpg", image)
        assert cache.get("http://a/1.jpg") is image

    def test_missing_key_returns_none(self) -> None:
        assert ImageCache().get("http://a/never.jpg") is None

    def test_reinsert_replaces(self) -> None:
        cache = ImageCache()
        cache.put("u", _image(b"first"))
        cache.put("u", _image(b"second"))
        assert cache.get("u") == _image(b"second")
        assert len(cache) == 1

    def test_evicts_least_recently_used(self) -> None:
        cache = ImageCache(capacity=2)
        cache.put("a", _image(b"a"))
        cache.put("b", _image(b"b"))
        cache.get("a")
        cache.put("c", _image(b"c"))

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_zero_capacity_is_unbounded(self) -> None:
        cache = ImageCache(capacity=0)
        for i in range(500):
            cache.put(f"u{i}", _image())
        assert len(cache) == 500

    def test_negative_capacity_rejected(self) -> None:
        with pytest.raises(ValueError):
            ImageCache(capacity=-1)

    def test_clear(self) -> None:
        cache = ImageCache()
        cache.put("u", _image())
        cache.clear()
        assert len(cache) == 0

    def test_concurrent_puts_on_distinct_keys(self) -> None:
        cache = ImageCache(capacity=0)

        def writer(prefix: str) -> None:
            for i in range(200):
                cache.put(f"{prefix}-{i}", _image())

        threads = [threading.Thread(target=writer, args=(f"t{n}",)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(cache) == 8 * 200


# ---------------------------------------------------------------------------
# ProductImageLoader
# ---------------------------------------------------------------------------


class _ImageServer:
    """MockTransport handler serving generated images, counting requests."""

    def __init__(self) -> None:
        self.requests: list[str] = []
        self.body = make_image_bytes(32, 16, fmt="JPEG")

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if request.url.path.endswith("missing.jpg"):
            return httpx.Response(404)
        if request.url.path.endswith("garbage.jpg"):
            return httpx.Response(200, content=b"not an image")
        return httpx.Response(200, content=self.body, headers={"content-type": "image/jpeg"})


@pytest.fixture()
def server() -> _ImageServer:
    return _ImageServer()


@pytest.fixture()
async def loader(server: _ImageServer) -> AsyncIterator[ProductImageLoader]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
        yield ProductImageLoader(client, ImageCache(capacity=8), base_url=BASE_URL + "/")


class TestProductImageLoader:
    async def test_resolve_relative(self, loader: ProductImageLoader) -> None:
        assert loader.resolve("/imgs/HT-2000.jpg") == f"{BASE_URL}/imgs/HT-2000.jpg"

    async def test_resolve_absolute_on_catalog_host_kept(self, loader: ProductImageLoader) -> None:
        assert loader.resolve("http://catalog.test/other/a.jpg") == "http://catalog.test/other/a.jpg"

    async def test_resolve_allowed_origin_kept(self, server: _ImageServer) -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as client:
            loader = ProductImageLoader(client, ImageCache(), BASE_URL, allowed_origins=["https://cdn.test"])
            assert loader.resolve("https://cdn.test/a.jpg") == "https://cdn.test/a.jpg"

    @pytest.mark.parametrize(
        "url",
        [
            "https://cdn.test/a.jpg",
            "http://169.254.169.254/latest/meta-data/x.png",
            "https://catalog.test/imgs/a.jpg",
            "http://catalog.test:8080/imgs/a.jpg",
        ],
    )
    async def test_resolve_foreign_origin_rejected(self, loader: ProductImageLoader, url: str) -> None:
        assert loader.resolve(url) is None

    async def test_foreign_host_never_fetched(self, loader: ProductImageLoader, server: _ImageServer) -> None:
        with pytest.raises(ImageLoadError):
            await loader.load("http://169.254.169.254/latest/meta-data/x.png")
        assert server.requests == []

    async def test_resolve_empty(self, loader: ProductImageLoader) -> None:
        assert loader.resolve("") is None
        assert loader.resolve(None) is None

    async def test_load_downloads_once(self, loader: ProductImageLoader, server: _ImageServer) -> None:
        first = await loader.load("/imgs/HT-2000.jpg")
        second = await loader.load("/imgs/HT-2000.jpg")

        assert first is second
        assert (first.width, first.height) == (32, 16)
        assert first.content_type == "image/jpeg"
        assert server.requests == [f"{BASE_URL}/imgs/HT-2000.jpg"]
        assert f"{BASE_URL}/imgs/HT-2000.jpg" in loader.cache

    async def test_http_error_raises(self, loader: ProductImageLoader) -> None:
        with pytest.raises(ImageLoadError) as exc_info:
            await loader.load("/imgs/missing.jpg")
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)
        assert len(loader.cache) == 0

    async def test_undecodable_raises(self, loader: ProductImageLoader) -> None:
        with pytest.raises(ImageLoadError):
            await loader.load("/imgs/garbage.jpg")

    async def test_empty_url_raises(self, loader: ProductImageLoader) -> None:
        with pytest.raises(ImageLoadError):
            await loader.load("")

    async def test_load_many_parallel_results(self, loader: ProductImageLoader, server: _ImageServer) -> None:
        results = await loader.load_many(["/imgs/a.jpg", "", "/imgs/missing.jpg", "/imgs/b.jpg"])

        assert results[0] is not None
        assert results[1] is None
        assert results[2] is None
        assert results[3] is not None
        assert len(server.requests) == 3
        assert len(loader.cache) == 2

    async def test_load_many_downloads_repeated_url_once(
        self, loader: ProductImageLoader, server: _ImageServer
    ) -> None:
        results = await loader.load_many(["/imgs/a.jpg", "/imgs/a.jpg", "", "/imgs/a.jpg"])

        assert results[0] is results[1] is results[3]
        assert results[0] is not None
        assert results[2] is None
        assert server.requests == [f"{BASE_URL}/imgs/a.jpg"]

    async def test_concurrent_loads_share_download(self, loader: ProductImageLoader, server: _ImageServer) -> None:
        first, second = await asyncio.gather(loader.load("/imgs/a.jpg"), loader.load("/imgs/a.jpg"))

        assert first is second
        assert len(server.requests) == 1

    async def test_concurrent_failed_loads_both_raise(self, loader: ProductImageLoader, server: _ImageServer) -> None:
        results = await asyncio.gather(
            loader.load("/imgs/missing.jpg"),
            loader.load("/imgs/missing.jpg"),
            return_exceptions=True,
        )

        assert all(isinstance(r, ImageLoadError) for r in results)
        assert len(server.requests) == 1
        # Nothing in flight, so a retry downloads again.
        with pytest.raises(ImageLoadError):
            await loader.load("/imgs/missing.jpg")
        assert len(server.requests) == 2
