"""
Download keys - Cache keys for raw bytes and decoded images.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass

import httpx
import structlog
from PIL import Image

from fab_pipeline.asset_cache import AssetCache, AsyncAssetKey
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import AssetError

logger = structlog.get_logger()


@dataclass(frozen=True)
class BytesFromUrl(AsyncAssetKey):
    """Raw bytes at a file:// or http(s) URL."""

    url: AbsAssetUrl

    async def load(self, assets: AssetCache) -> bytes:
        if self.url.is_local:
            path = self.url.to_file_path()
            try:
                return await asyncio.to_thread(path.read_bytes)
            except OSError as e:
                raise AssetError(f"Failed to read {path}: {e}") from e

        if self.url.scheme not in ("http", "https"):
            raise AssetError(f"Unsupported url scheme: {self.url}")

        client = assets.http_client()
        try:
            response = await client.get(self.url.url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise AssetError(
                f"Failed to download {self.url}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise AssetError(f"Failed to download {self.url}: {e}") from e

        logger.debug("Downloaded asset", url=self.url.url, size=len(response.content))
        return response.content


def _decode_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGBA")


@dataclass(frozen=True)
class ImageFromUrl(AsyncAssetKey):
    """
    Decoded RGBA image at a URL.

    The cached image is shared between callers; anyone who mutates it (texture
    capping, channel packing) must work on a copy.
    """

    url: AbsAssetUrl

    async def load(self, assets: AssetCache) -> Image.Image:
        data = await BytesFromUrl(self.url).get(assets)
        try:
            return await asyncio.to_thread(_decode_image, data)
        except (OSError, ValueError) as e:
            raise AssetError(f"Failed to decode image {self.url}: {e}") from e


async def download_image(assets: AssetCache, url: AbsAssetUrl) -> Image.Image:
    """Fetch and decode an image, returning a private copy."""
    img = await ImageFromUrl(url).get(assets)
    return img.copy()
