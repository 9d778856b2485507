"""
Composite object loader.

An object URL names a package directory; its document lives at
`<url>/objects/main.json`. References inside the document are relative to the
package root (the directory above `objects/`), which is also where the build
writes `models/`, `colliders/` and `materials/`:

    https://host/pkg/objects/main.json  +  "mesh.glb"  ->  https://host/pkg/mesh.glb
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from fab_pipeline.asset_cache import AssetCache, AsyncAssetKey
from fab_pipeline.asset_url import AbsAssetUrl, resolve
from fab_pipeline.download import BytesFromUrl
from fab_pipeline.errors import AssetUrlError, StructuralError
from fab_pipeline.model.colliders import resolve_collider_def
from fab_pipeline.model.crate import OBJECT_PATH
from fab_pipeline.world import World

logger = structlog.get_logger()


def object_document_url(url: str | AbsAssetUrl) -> AbsAssetUrl:
    """
    The document URL for an object URL.

    Raises:
        AssetUrlError: If the url is not absolute
    """
    if isinstance(url, str):
        url = AbsAssetUrl.parse(url)
    if url.path.endswith(f"/{OBJECT_PATH}"):
        return url
    return url.push(OBJECT_PATH)


def package_root(document_url: AbsAssetUrl) -> AbsAssetUrl:
    """Directory above `objects/` for a document at `<root>/objects/main.json`."""
    return document_url.parent().parent()


def resolve_references(world: World, base: AbsAssetUrl) -> None:
    """
    Rewrite every relative model, collider and decal reference to an absolute URL.

    Raises:
        AssetUrlError: If a reference cannot be parsed or resolved
    """
    for entity, (model,) in list(world.query("model_from_url")):
        world.add_component(entity, "model_from_url", str(resolve(model, base)))
    for entity, (collider,) in list(world.query("collider")):
        world.add_component(entity, "collider", resolve_collider_def(collider, base))
    for entity, (decal,) in list(world.query("decal")):
        world.add_component(entity, "decal", str(resolve(decal, base)))


@dataclass(frozen=True)
class ObjectFromUrl(AsyncAssetKey):
    """A composite object document, deserialized and reference-resolved."""

    url: AbsAssetUrl

    def cache_key(self) -> tuple[str, str]:
        # A package URL and its document URL name the same object.
        return ("object", object_document_url(self.url).url)

    async def load(self, assets: AssetCache) -> World:
        document_url = object_document_url(self.url)
        data = await BytesFromUrl(document_url).get(assets)

        deserialized = World.from_json(data)
        deserialized.log_warnings(document_url.url)

        world = deserialized.world
        try:
            resolve_references(world, package_root(document_url))
        except AssetUrlError as e:
            raise StructuralError(f"Unresolvable reference in {document_url}: {e}") from e

        logger.debug("Loaded object", url=document_url.url, entities=len(world))
        return world.freeze()


async def load_object(assets: AssetCache, url: str | AbsAssetUrl) -> World:
    """
    Load the object at `url` through the cache.

    Raises:
        AssetUrlError: If the url is not absolute
        AssetError: If the document cannot be fetched, parsed or resolved
    """
    if isinstance(url, str):
        url = AbsAssetUrl.parse(url)
    return await ObjectFromUrl(url).get(assets)
