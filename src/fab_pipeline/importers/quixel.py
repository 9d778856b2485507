"""
Quixel importer - Megascans asset bundles.

A bundle is a directory holding a metadata JSON file, one or more LOD meshes
(`<id>_LOD0.fbx`, `<id>_Var2_LOD1.obj`, ...) and suffix-named textures
(`<id>_4K_Albedo.jpg`, `<id>_4K_Normal.jpg`, `<id>_4K_Roughness.jpg`,
`<id>_4K_Metalness.jpg`).

Output granularity:
- several variants: one asset per variant, at its lowest LOD
- a single variant: one asset per LOD

All materials of the imported meshes are replaced by one material built from
the bundle textures. Roughness and metalness are packed into a glTF
metallic-roughness image (G = roughness, B = metalness).
"""

from __future__ import annotations

import json
import re
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog
from PIL import Image

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.download import BytesFromUrl, download_image
from fab_pipeline.errors import AssetError
from fab_pipeline.importers.base import ImportedModel, ModelImporterBackend
from fab_pipeline.importers.geometry import MODEL_EXTENSIONS, import_model_file
from fab_pipeline.model.filters import MaterialFilter
from fab_pipeline.model.mesh import PbrMaterial

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx
    from fab_pipeline.pipeline.models import ModelsPipeline

logger = structlog.get_logger()

LOD_RE = re.compile(r"_LOD(\d+)", re.I)
VAR_RE = re.compile(r"Var(\d+)", re.I)

IMAGE_EXTENSIONS = ("jpg", "jpeg", "png", "tga", "bmp")
TEXTURE_SUFFIXES = {
    "albedo": "base_color",
    "normal": "normalmap",
    "roughness": "roughness",
    "metalness": "metalness",
}
PIPELINE_FILE_NAMES = ("pipeline.json", "pipeline.yaml", "pipeline.yml")


@dataclass
class LodMesh:
    url: AbsAssetUrl
    variant: int | None
    lod: int


def parse_lod_mesh(url: AbsAssetUrl) -> LodMesh:
    lod = LOD_RE.search(url.stem)
    variant = VAR_RE.search(url.stem)
    return LodMesh(
        url=url,
        variant=int(variant.group(1)) if variant else None,
        lod=int(lod.group(1)) if lod else 0,
    )


def select_meshes(meshes: list[LodMesh]) -> list[tuple[str | None, LodMesh]]:
    """
    Pick the meshes that become assets, each with a name suffix.

    Variants win over LODs: with more than one variant only the lowest LOD of
    each is kept.
    """
    by_variant: dict[int | None, list[LodMesh]] = defaultdict(list)
    for mesh in meshes:
        by_variant[mesh.variant].append(mesh)
    for group in by_variant.values():
        group.sort(key=lambda m: m.lod)

    if len(by_variant) > 1:
        return [
            (f"Var{variant}" if variant is not None else None, group[0])
            for variant, group in sorted(by_variant.items(), key=lambda kv: kv[0] or 0)
        ]

    (group,) = by_variant.values()
    if len(group) == 1:
        return [(None, group[0])]
    return [(f"LOD{mesh.lod}", mesh) for mesh in group]


def texture_kind(url: AbsAssetUrl) -> str | None:
    tokens = [t.lower() for t in re.split(r"[_\-. ]", url.stem)]
    for suffix, kind in TEXTURE_SUFFIXES.items():
        if suffix in tokens:
            return kind
    return None


def metadata_tags(metadata: dict[str, Any]) -> list[str]:
    """Tags from `tags` and the string values of `semanticTags`."""
    tags: list[str] = []

    def add(value: Any) -> None:
        if isinstance(value, str) and value and value not in tags:
            tags.append(value)
        elif isinstance(value, list):
            for item in value:
                add(item)

    add(metadata.get("tags") or [])
    semantic = metadata.get("semanticTags") or {}
    if isinstance(semantic, dict):
        for value in semantic.values():
            add(value)
    return tags


def pack_metallic_roughness(
    roughness: Image.Image | None, metalness: Image.Image | None
) -> Image.Image | None:
    if roughness is None and metalness is None:
        return None
    size = (roughness or metalness).size
    rough = roughness.convert("L") if roughness is not None else Image.new("L", size, 255)
    metal = metalness.convert("L") if metalness is not None else Image.new("L", size, 0)
    if metal.size != size:
        metal = metal.resize(size)
    return Image.merge("RGBA", (Image.new("L", size, 0), rough, metal, Image.new("L", size, 255)))


class QuixelImporter(ModelImporterBackend):
    name = "quixel"

    async def _load_texture(self, ctx: PipelineCtx, url: AbsAssetUrl) -> Image.Image | None:
        try:
            return await download_image(ctx.assets, url)
        except AssetError as e:
            logger.error("Failed to import image", url=url.url, error=str(e))
            return None

    async def build_material(
        self, ctx: PipelineCtx, name: str, source: AbsAssetUrl, files: list[AbsAssetUrl]
    ) -> PbrMaterial:
        images: dict[str, Image.Image | None] = {}
        for url in sorted(files, key=lambda u: u.url):
            if url.extension not in IMAGE_EXTENSIONS:
                continue
            kind = texture_kind(url)
            if kind is None or kind in images:
                continue
            images[kind] = await self._load_texture(ctx, url)

        material = PbrMaterial(name=name, source=source.url, metallic=0.0, roughness=1.0)
        material.base_color = images.get("base_color")
        material.normalmap = images.get("normalmap")
        material.metallic_roughness = pack_metallic_roughness(
            images.get("roughness"), images.get("metalness")
        )
        if material.metallic_roughness is not None:
            material.metallic = 1.0
        return material

    async def import_models(self, ctx: PipelineCtx, config: ModelsPipeline) -> list[ImportedModel]:
        files_by_dir: dict[AbsAssetUrl, list[AbsAssetUrl]] = defaultdict(list)
        for url in ctx.files:
            files_by_dir[url.parent()].append(url)

        models = []
        for directory, files in sorted(files_by_dir.items(), key=lambda kv: kv[0].url):
            metadata_files = [
                u for u in files if u.extension == "json" and u.file_name not in PIPELINE_FILE_NAMES
            ]
            meshes = [parse_lod_mesh(u) for u in files if u.extension in MODEL_EXTENSIONS]
            if not metadata_files or not meshes:
                continue

            metadata_url = metadata_files[0]
            try:
                metadata = json.loads(await BytesFromUrl(metadata_url).get(ctx.assets))
            except json.JSONDecodeError as e:
                raise AssetError(f"Invalid Quixel metadata {metadata_url}: {e}") from e
            if not isinstance(metadata, dict):
                raise AssetError(f"Quixel metadata {metadata_url} is not an object")

            bundle_name = str(metadata.get("name") or directory.file_name or metadata_url.stem)
            tags = metadata_tags(metadata)
            material = await self.build_material(ctx, bundle_name, metadata_url, files)

            for suffix, mesh in select_meshes(meshes):
                name = f"{bundle_name} {suffix}" if suffix else bundle_name
                crate = await import_model_file(ctx, config, mesh.url)
                crate.name = name
                crate.override_material(MaterialFilter(), material)
                crate.object_world.add_component(crate.object_world.root_child(), "name", name)
                models.append(
                    ImportedModel(
                        crate=crate,
                        model_path=ctx.relative_path(mesh.url),
                        name=name,
                        source=mesh.url,
                        tags=list(tags),
                    )
                )

            logger.info(
                "Imported Quixel bundle",
                bundle=bundle_name,
                meshes=len(meshes),
                tags=len(tags),
            )
        return models
