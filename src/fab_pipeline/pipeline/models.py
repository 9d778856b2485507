"""
Models pipeline - Import, post-process and export 3D models.

A `ModelsPipeline` is one `type: models` entry of a pipeline file:

    pipelines:
      - type: models
        sources: ["chairs/*.glb"]
        importer: {type: regular}
        transforms:
          - {type: rotate_y_up_to_z_up}
          - {type: scale, scale: 0.01}
        material_overrides:
          - filter: {type: by_name, name: Fabric}
            material: {base_color: textures/fabric.png}
        cap_texture_sizes: x1024
        collider: {type: from_model}
        collider_type: static
        object_components:
          name: Chair

Whatever order the fields are written in, the stages run in a fixed order:
transforms, material overrides, texture capping, finalize, collider synthesis,
component injection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import ConfigError
from fab_pipeline.importers import ImportedModel, get_importer
from fab_pipeline.model.colliders import ColliderType
from fab_pipeline.model.crate import (
    ANIMATIONS_DIR,
    COLLIDER_PATH,
    MATERIALS_DIR,
    MODEL_PATH,
    OBJECT_PATH,
    ModelCrate,
)
from fab_pipeline.model.export import (
    animation_file_name,
    crate_to_glb,
    encode_png,
    object_document,
    to_json_bytes,
)
from fab_pipeline.model.filters import MaterialFilter, parse_texture_size
from fab_pipeline.model.transforms import ModelTransform, parse_transform
from fab_pipeline.pipeline.materials import PipelinePbrMaterial
from fab_pipeline.pipeline.out_asset import (
    AssetType,
    OutAsset,
    OutAssetContent,
    OutAssetPreview,
    asset_id_from_url,
)

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx

logger = structlog.get_logger()

COMPONENT_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(::[A-Za-z_][A-Za-z0-9_]*)*$")


@dataclass(frozen=True)
class ModelImporter:
    """Importer selection: `regular`, `unity_models` or `quixel`."""

    type: str = "regular"
    use_prefabs: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> ModelImporter:
        if data is None:
            return cls()
        if isinstance(data, str):
            data = {"type": data}
        if not isinstance(data, dict):
            raise ConfigError(f"Importer must be a mapping, got {data!r}")
        kind = str(data.get("type", "regular"))
        if kind not in ("regular", "unity_models", "quixel"):
            raise ConfigError(f"Unknown importer type: {kind!r}")
        return cls(type=kind, use_prefabs=bool(data.get("use_prefabs", False)))


@dataclass(frozen=True)
class Collider:
    """Collider synthesis mode: `none`, `from_model` or `character`."""

    type: str = "none"
    radius: float | None = None
    height: float | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Collider:
        if data is None:
            return cls()
        if isinstance(data, str):
            data = {"type": data}
        if not isinstance(data, dict):
            raise ConfigError(f"Collider must be a mapping, got {data!r}")
        kind = str(data.get("type", "none"))
        if kind not in ("none", "from_model", "character"):
            raise ConfigError(f"Unknown collider type: {kind!r}")
        try:
            radius = float(data["radius"]) if data.get("radius") is not None else None
            height = float(data["height"]) if data.get("height") is not None else None
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid character collider dimensions: {e}") from e
        return cls(type=kind, radius=radius, height=height)


@dataclass(frozen=True)
class MaterialOverride:
    filter: MaterialFilter
    material: PipelinePbrMaterial

    @classmethod
    def from_dict(cls, data: Any) -> MaterialOverride:
        if not isinstance(data, dict) or "material" not in data:
            raise ConfigError(f"Material override needs a 'filter' and a 'material': {data!r}")
        return cls(
            filter=MaterialFilter.from_dict(data.get("filter")),
            material=PipelinePbrMaterial.from_dict(data["material"]),
        )


def _check_components(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"object_components must be a mapping, got {data!r}")
    for name in data:
        if not isinstance(name, str) or not COMPONENT_NAME_RE.match(name):
            raise ConfigError(f"Invalid component identifier: {name!r}")
    return dict(data)


def _list(data: dict[str, Any], key: str) -> list[Any]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' must be a list, got {value!r}")
    return value


@dataclass
class ModelsPipeline:
    importer: ModelImporter = field(default_factory=ModelImporter)
    force_generic: bool = False
    collider: Collider = field(default_factory=Collider)
    collider_type: ColliderType = ColliderType.STATIC
    cap_texture_sizes: int | None = None
    collection_of_variants: bool = False
    output_objects: bool = True
    output_animations: bool = True
    object_components: dict[str, Any] = field(default_factory=dict)
    material_overrides: list[MaterialOverride] = field(default_factory=list)
    transforms: list[ModelTransform] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ModelsPipeline:
        """
        Parse a pipeline entry. Unknown keys are ignored.

        Raises:
            ConfigError: If any field is malformed
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError(f"Models pipeline must be a mapping, got {data!r}")

        return cls(
            importer=ModelImporter.from_dict(data.get("importer")),
            force_generic=bool(data.get("force_generic", data.get("force_assimp", False))),
            collider=Collider.from_dict(data.get("collider")),
            collider_type=ColliderType.parse(data.get("collider_type", "static")),
            cap_texture_sizes=parse_texture_size(data.get("cap_texture_sizes")),
            collection_of_variants=bool(data.get("collection_of_variants", False)),
            output_objects=bool(data.get("output_objects", True)),
            output_animations=bool(data.get("output_animations", True)),
            object_components=_check_components(data.get("object_components")),
            material_overrides=[
                MaterialOverride.from_dict(o) for o in _list(data, "material_overrides")
            ],
            transforms=[parse_transform(t) for t in _list(data, "transforms")],
        )

    async def apply(self, ctx: PipelineCtx, crate: ModelCrate, out_model_path: str) -> None:
        """
        Run the post-processing stages on an imported crate.

        Raises:
            AssetError: If an override texture cannot be fetched
            StructuralError: If collider extraction or component injection fails
        """
        for transform in self.transforms:
            transform.apply(crate)

        materials_root = ctx.out_root().push(out_model_path).push(MATERIALS_DIR)
        for override in self.material_overrides:
            material = await override.material.to_mat(ctx, ctx.in_root(), materials_root)
            matched = crate.override_material(override.filter, material)
            logger.debug(
                "Applied material override",
                crate=crate.name,
                filter=override.filter.type,
                matched=matched,
            )

        if self.cap_texture_sizes is not None:
            crate.cap_texture_sizes(self.cap_texture_sizes)

        crate.finalize_model()

        if self.collider.type == "from_model":
            crate.create_collider_from_model()
        elif self.collider.type == "character":
            crate.create_character_collider(self.collider.radius, self.collider.height)
        else:
            crate.add_component_to_object("collider", {"type": "none"})
        crate.add_component_to_object("collider_type", self.collider_type.value)

        world = crate.object_world
        world.add_components(world.root_child(), self.object_components)


async def export_model(
    ctx: PipelineCtx, config: ModelsPipeline, model: ImportedModel, tags: list[str]
) -> list[OutAsset]:
    """Write the artifacts of an applied crate and describe them as out assets."""
    crate = model.crate
    asset_dir = ctx.out_root().push(model.model_path)
    categories = tuple(tuple(c) for c in ctx.categories)
    source = model.source.url if model.source else None
    assets: list[OutAsset] = []

    for material in crate.materials.values():
        for slot, img in material.textures():
            url = material.texture_urls.get(slot)
            if url is not None:
                await ctx.process_ctx.write_file(AbsAssetUrl(url), encode_png(img))

    glb = crate_to_glb(crate)
    model_url = None
    if glb is not None:
        model_url = await ctx.process_ctx.write_file(asset_dir.push(MODEL_PATH), glb)

    if "main" in crate.colliders:
        await ctx.process_ctx.write_file(
            asset_dir.push(COLLIDER_PATH), to_json_bytes(crate.colliders["main"].to_dict())
        )

    animation_names: list[str] = []
    if config.output_animations:
        for clip in crate.animations.values():
            file_name = animation_file_name(clip.name)
            url = await ctx.process_ctx.write_file(
                asset_dir.push(f"{ANIMATIONS_DIR}/{file_name}.json"), to_json_bytes(clip.to_dict())
            )
            animation_names.append(file_name)
            assets.append(
                OutAsset(
                    id=asset_id_from_url(url),
                    type=AssetType.ANIMATION,
                    name=f"{model.name}/{clip.name}",
                    content=OutAssetContent.artifact(url),
                    tags=tuple(tags),
                    categories=categories,
                    source=source,
                )
            )

    preview = OutAssetPreview("from_model", model_url.url) if model_url else OutAssetPreview()
    if config.output_objects:
        document = object_document(crate, model_url is not None, animation_names)
        url = await ctx.process_ctx.write_file(
            asset_dir.push(OBJECT_PATH), document.to_json().encode()
        )
        assets.insert(
            0,
            OutAsset(
                id=asset_id_from_url(url),
                type=AssetType.OBJECT,
                name=model.name,
                content=OutAssetContent.artifact(url),
                tags=tuple(tags),
                categories=categories,
                preview=preview,
                source=source,
            ),
        )
    elif model_url is not None:
        assets.insert(
            0,
            OutAsset(
                id=asset_id_from_url(model_url),
                type=AssetType.MODEL,
                name=model.name,
                content=OutAssetContent.artifact(model_url),
                tags=tuple(tags),
                categories=categories,
                preview=preview,
                source=source,
            ),
        )
    return assets


async def pipeline(ctx: PipelineCtx, config: ModelsPipeline) -> list[OutAsset]:
    """
    Run a models pipeline entry end to end.

    Raises:
        AssetError: If a required file cannot be fetched or parsed
        StructuralError: If a stage finds the crate in an invalid state
    """
    models = await get_importer(config.importer).import_crates(ctx, config)

    assets: list[OutAsset] = []
    for model in models:
        try:
            await config.apply(ctx, model.crate, model.model_path)
            assets.extend(await export_model(ctx, config, model, [*ctx.tags, *model.tags]))
        except Exception:
            logger.error(
                "Failed to process model",
                crate=model.name,
                source=model.source.url if model.source else None,
                pipeline=ctx.pipeline_file.url,
            )
            raise

    if config.collection_of_variants and len(assets) > 1:
        assets = [a.with_hidden() for a in assets]
        assets.append(
            OutAsset(
                id=asset_id_from_url(ctx.out_root().push("col")),
                type=AssetType.OBJECT,
                name=ctx.process_ctx.package_name,
                content=OutAssetContent.collection([a.id for a in assets]),
            )
        )

    logger.info(
        "Models pipeline finished",
        pipeline=ctx.pipeline_file.url,
        models=len(models),
        assets=len(assets),
    )
    return assets
