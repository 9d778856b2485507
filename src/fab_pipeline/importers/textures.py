"""
Texture resolver for importers.

Models reference textures by file name, often with paths from the authoring
machine. The resolver looks the file name up among all files of the package
being built, preferring those below the pipeline file's directory, and fetches
it through the asset cache. A missing or undecodable texture is logged and
leaves the material slot empty; it never aborts the import.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING
from urllib.parse import unquote

import structlog

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.download import BytesFromUrl, ImageFromUrl
from fab_pipeline.errors import AssetError
from fab_pipeline.model.gltf import TextureResolver

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx

logger = structlog.get_logger()


def texture_file_name(reference: str) -> str:
    return PurePosixPath(unquote(reference).replace("\\", "/")).name


def find_texture_file(files: list[AbsAssetUrl], reference: str) -> AbsAssetUrl | None:
    """Exact file name match first, then any file whose path contains the name."""
    name = texture_file_name(reference)
    if not name:
        return None
    for url in files:
        if url.file_name == name:
            return url
    lowered = name.lower()
    for url in files:
        if lowered in unquote(url.path).lower():
            return url
    return None


def texture_search_files(ctx: PipelineCtx) -> list[AbsAssetUrl]:
    """Every package file, those below the pipeline's input root first."""
    root = ctx.in_root()
    return sorted(ctx.process_ctx.files, key=lambda url: url.relative_to(root) is None)


def create_texture_resolver(ctx: PipelineCtx) -> TextureResolver:
    files = texture_search_files(ctx)

    async def resolve_texture(reference: str) -> bytes | None:
        url = find_texture_file(files, reference)
        if url is None:
            logger.error(
                "Texture not found among build job files",
                texture=reference,
                pipeline=ctx.pipeline_file.url,
            )
            return None
        try:
            # Only hand out files that decode as images.
            await ImageFromUrl(url).get(ctx.assets)
            return await BytesFromUrl(url).get(ctx.assets)
        except AssetError as e:
            logger.error("Failed to import image", texture=reference, url=url.url, error=str(e))
            return None

    return resolve_texture
