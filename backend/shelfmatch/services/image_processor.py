"""
Image Processor — source photo loading, candidate image fetch and cropping.

Source photos come either as an HTTP URL or inline base64. Both source photos
and candidate images are cached on the loader, so one loader per batch run
fetches each image once and every detection on that photo shares it. Loads
are serialized per key, so concurrent callers wait for the first fetch
instead of issuing their own.
"""
import asyncio
import base64
import binascii
import io
import logging
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError

from shelfmatch.config import IMAGE_FETCH_TIMEOUT_S
from shelfmatch.models.domain import BoundingBox, ShelfImage
from shelfmatch.services.errors import ImageError

logger = logging.getLogger("shelfmatch-images")

JPEG_QUALITY = 90


def _open(image_bytes: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(image_bytes))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ImageError(f"Unreadable image data: {e}") from e
    return img


def crop_to_box(image_bytes: bytes, box: BoundingBox) -> str:
    """
    Crop to a normalized [y0, x0, y1, x1] box and return base64 JPEG.

    Pixel edges are round(v / 1000 × dimension), clamped to the image.
    """
    img = _open(image_bytes)
    width, height = img.size
    left, top, right, bottom = box.to_pixels(width, height)
    left, right = max(0, left), min(width, right)
    top, bottom = max(0, top), min(height, bottom)
    if right <= left or bottom <= top:
        raise ImageError(f"Box {box.as_list()} is empty on a {width}x{height} image")

    cropped = img.crop((left, top, right, bottom))
    if cropped.mode not in ("RGB", "L"):
        cropped = cropped.convert("RGB")
    buffer = io.BytesIO()
    cropped.save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class ImageLoader:
    """Per-run image cache over httpx; owns its client unless one is injected."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 timeout: float = IMAGE_FETCH_TIMEOUT_S):
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout
        self._source_cache: dict[str, bytes] = {}
        self._candidate_cache: dict[str, str] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    async def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def _fetch(self, url: str) -> bytes:
        client = await self._http()
        try:
            response = await client.get(url, timeout=self._timeout)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ImageError(f"Failed to fetch image {url}: {e}") from e
        return response.content

    def _lock(self, kind: str, key: str) -> asyncio.Lock:
        return self._locks.setdefault((kind, key), asyncio.Lock())

    async def source_bytes(self, image: ShelfImage) -> bytes:
        async with self._lock("source", image.id):
            cached = self._source_cache.get(image.id)
            if cached is not None:
                return cached
            if image.image_base64:
                try:
                    data = base64.b64decode(image.image_base64, validate=False)
                except (binascii.Error, ValueError) as e:
                    raise ImageError(f"Image {image.id} has invalid base64 data") from e
            elif image.image_url:
                data = await self._fetch(image.image_url)
            else:
                raise ImageError(f"Image {image.id} has neither a URL nor inline data")
            self._source_cache[image.id] = data
            return data

    async def crop(self, image: ShelfImage, box: BoundingBox) -> str:
        data = await self.source_bytes(image)
        return await asyncio.to_thread(crop_to_box, data, box)

    async def candidate_base64(self, url: str) -> str:
        async with self._lock("candidate", url):
            cached = self._candidate_cache.get(url)
            if cached is not None:
                return cached
            data = await self._fetch(url)
            encoded = base64.b64encode(data).decode("ascii")
            self._candidate_cache[url] = encoded
            return encoded

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
