"""
Pipeline materials - Material descriptions written in pipeline files.

Texture references are relative to the pipeline file's directory (or absolute
URLs). Resolving a description fetches its textures and records where the
exporter writes them below the asset's `materials/` directory.

Example:

    material_overrides:
      - filter: {type: by_name, name: Wood}
        material:
          name: PolishedWood
          base_color: textures/wood_albedo.png
          roughness: 0.4
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from fab_pipeline.asset_url import AbsAssetUrl, check_reference, resolve
from fab_pipeline.download import download_image
from fab_pipeline.errors import AssetUrlError, ConfigError
from fab_pipeline.model.mesh import TEXTURE_SLOTS, PbrMaterial

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx

logger = structlog.get_logger()


def _floats(value: Any, width: int, key: str) -> tuple[float, ...]:
    if not isinstance(value, (list, tuple)) or len(value) != width:
        raise ConfigError(f"Material '{key}' must be a list of {width} numbers, got {value!r}")
    try:
        return tuple(float(v) for v in value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Material '{key}' must be numeric: {value!r}") from e


@dataclass(frozen=True)
class PipelinePbrMaterial:
    name: str | None = None
    base_color: str | None = None
    normalmap: str | None = None
    metallic_roughness: str | None = None
    base_color_factor: tuple[float, float, float, float] | None = None
    emissive_factor: tuple[float, float, float] | None = None
    metallic: float | None = None
    roughness: float | None = None
    alpha_cutoff: float | None = None
    transparent: bool | None = None
    double_sided: bool | None = None

    @classmethod
    def from_dict(cls, data: Any) -> PipelinePbrMaterial:
        """
        Raises:
            ConfigError: If a field has the wrong type
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Material must be a mapping, got {data!r}")

        for slot in TEXTURE_SLOTS:
            value = data.get(slot)
            if value is None:
                continue
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"Material texture '{slot}' must be a non-empty path")
            try:
                check_reference(value)
            except AssetUrlError as e:
                raise ConfigError(f"Material texture '{slot}': {e}") from e

        try:
            return cls(
                name=data.get("name"),
                base_color=data.get("base_color"),
                normalmap=data.get("normalmap"),
                metallic_roughness=data.get("metallic_roughness"),
                base_color_factor=(
                    _floats(data["base_color_factor"], 4, "base_color_factor")
                    if data.get("base_color_factor") is not None
                    else None
                ),
                emissive_factor=(
                    _floats(data["emissive_factor"], 3, "emissive_factor")
                    if data.get("emissive_factor") is not None
                    else None
                ),
                metallic=float(data["metallic"]) if data.get("metallic") is not None else None,
                roughness=float(data["roughness"]) if data.get("roughness") is not None else None,
                alpha_cutoff=(
                    float(data["alpha_cutoff"]) if data.get("alpha_cutoff") is not None else None
                ),
                transparent=data.get("transparent"),
                double_sided=data.get("double_sided"),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid material definition: {e}") from e

    async def to_mat(
        self, ctx: PipelineCtx, source_root: AbsAssetUrl, out_root: AbsAssetUrl
    ) -> PbrMaterial:
        """
        Build the engine material, fetching its textures.

        Args:
            ctx: Build job context (asset cache)
            source_root: Directory texture paths are relative to
            out_root: Directory the textures are exported to

        Raises:
            AssetError: If a texture cannot be fetched or decoded
        """
        material = PbrMaterial(name=self.name or "override")
        for key in (
            "base_color_factor",
            "emissive_factor",
            "metallic",
            "roughness",
            "alpha_cutoff",
            "transparent",
            "double_sided",
        ):
            value = getattr(self, key)
            if value is not None:
                setattr(material, key, value)

        for slot in TEXTURE_SLOTS:
            reference = getattr(self, slot)
            if reference is None:
                continue
            try:
                url = resolve(reference, source_root.as_directory())
            except AssetUrlError as e:
                raise ConfigError(f"Invalid texture reference {reference!r}: {e}") from e
            setattr(material, slot, await download_image(ctx.assets, url))
            material.texture_urls[slot] = out_root.push(f"{url.stem}_{slot}.png").url
            logger.debug("Resolved override texture", slot=slot, url=url.url)

        return material
