"""
Geometry import shared by all importer backends.

glTF and GLB go through the glTF reader, which keeps skins and animations.
Other formats (and glTF when the pipeline forces the generic importer) are
loaded with trimesh directly, which carries less material information across.
An OBJ's material library and its diffuse maps are fetched up front and handed
to trimesh from memory; diffuse maps are looked up like any other texture.
"""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING

import numpy as np
import structlog
import trimesh
from PIL import Image
from trimesh.resolvers import ZipResolver
from trimesh.visual.material import PBRMaterial, SimpleMaterial

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.download import BytesFromUrl
from fab_pipeline.errors import AssetError, AssetUrlError
from fab_pipeline.importers.textures import create_texture_resolver
from fab_pipeline.model.crate import ModelCrate
from fab_pipeline.model.gltf import read_gltf
from fab_pipeline.model.mesh import Mesh, PbrMaterial

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx
    from fab_pipeline.pipeline.models import ModelsPipeline

logger = structlog.get_logger()

NATIVE_EXTENSIONS = ("glb", "gltf")
GENERIC_EXTENSIONS = ("obj", "stl", "ply", "off")
MODEL_EXTENSIONS = NATIVE_EXTENSIONS + GENERIC_EXTENSIONS


def _color(values: object, width: int) -> tuple[float, ...]:
    arr = np.asarray(values, dtype=np.float64).reshape(-1)[:width]
    if arr.max(initial=0.0) > 1.0:
        arr = arr / 255.0
    return tuple(float(v) for v in arr)


def _open_image(data: bytes) -> Image.Image:
    with Image.open(io.BytesIO(data)) as img:
        return img.convert("RGBA")


def _material_from_visual(
    visual: object, source: str, diffuse_maps: dict[str, bytes]
) -> PbrMaterial | None:
    material = getattr(visual, "material", None)
    if material is None:
        return None

    if isinstance(material, PBRMaterial):
        result = PbrMaterial(
            name=material.name or "material",
            source=source,
            metallic=float(material.metallicFactor if material.metallicFactor is not None else 1.0),
            roughness=float(
                material.roughnessFactor if material.roughnessFactor is not None else 1.0
            ),
            double_sided=bool(material.doubleSided),
            transparent=material.alphaMode == "BLEND",
            alpha_cutoff=material.alphaCutoff if material.alphaMode == "MASK" else None,
        )
        if material.baseColorFactor is not None:
            result.base_color_factor = _color(material.baseColorFactor, 4)
        if material.emissiveFactor is not None:
            result.emissive_factor = _color(material.emissiveFactor, 3)
        textures = (
            ("base_color", material.baseColorTexture),
            ("normalmap", material.normalTexture),
            ("metallic_roughness", material.metallicRoughnessTexture),
        )
        for slot, img in textures:
            if img is not None:
                setattr(result, slot, img.convert("RGBA"))
        return result

    if isinstance(material, SimpleMaterial):
        result = PbrMaterial(name=material.name or "material", source=source, metallic=0.0)
        if material.diffuse is not None:
            result.base_color_factor = _color(material.diffuse, 4)
        # trimesh fills in placeholder images; only resolved diffuse maps count
        if material.name in diffuse_maps:
            result.base_color = _open_image(diffuse_maps[material.name])
        return result

    return None


def material_library(text: str) -> str | None:
    """The `mtllib` reference of an OBJ file."""
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) == 2 and parts[0] == "mtllib":
            return parts[1].strip()
    return None


def diffuse_map_references(mtl: str) -> dict[str, str]:
    """Material name to `map_Kd` reference of a material library."""
    references = {}
    material = None
    for line in mtl.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) < 2:
            continue
        key = parts[0].lower()
        if key == "newmtl":
            material = " ".join(parts[1].split())
        elif key == "map_kd" and material is not None:
            references[material] = parts[1].strip()
    return references


async def _obj_files(
    ctx: PipelineCtx, data: bytes, url: AbsAssetUrl
) -> tuple[dict[str, bytes], dict[str, bytes]]:
    """
    Fetch the material library of an OBJ file and the diffuse maps it names.

    Returns:
        The archive served to trimesh, and the resolved diffuse map of each
        material by name
    """
    library = material_library(data.decode("utf-8", errors="replace"))
    if library is None:
        return {}, {}
    try:
        mtl = await BytesFromUrl(url.join(library)).get(ctx.assets)
    except (AssetError, AssetUrlError) as e:
        logger.error("Failed to read material library", url=url.url, library=library, error=str(e))
        return {}, {}

    archive = {library: mtl}
    diffuse_maps = {}
    resolve_texture = create_texture_resolver(ctx)
    references = diffuse_map_references(mtl.decode("utf-8", errors="replace"))
    for material, reference in references.items():
        texture = await resolve_texture(reference)
        if texture is not None:
            archive[reference] = texture
            diffuse_maps[material] = texture
    return archive, diffuse_maps


def _load_trimesh(
    data: bytes,
    extension: str,
    url: AbsAssetUrl,
    archive: dict[str, bytes],
    diffuse_maps: dict[str, bytes],
) -> ModelCrate:
    loaded = trimesh.load(
        io.BytesIO(data),
        file_type=extension,
        resolver=ZipResolver(archive),
        process=False,
    )
    if isinstance(loaded, trimesh.Trimesh):
        scene = trimesh.Scene(loaded)
    elif isinstance(loaded, trimesh.Scene):
        scene = loaded
    else:
        raise AssetError(f"{url} contains no triangle geometry")

    crate = ModelCrate(name=url.stem)
    for node_name in scene.graph.nodes_geometry:
        transform, geometry_name = scene.graph[node_name]
        geometry = scene.geometry[geometry_name]
        if not isinstance(geometry, trimesh.Trimesh):
            continue

        visual = geometry.visual
        uv = getattr(visual, "uv", None) if getattr(visual, "kind", None) == "texture" else None
        mesh = Mesh(
            positions=geometry.vertices,
            indices=np.asarray(geometry.faces).reshape(-1),
            normals=geometry.vertex_normals,
            texcoords=[uv] if uv is not None and len(uv) == len(geometry.vertices) else [],
            name=str(node_name),
        )
        mesh.apply_matrix(transform)

        material_id = None
        material = _material_from_visual(visual, url.url, diffuse_maps)
        if material is not None:
            material_id = crate.add_material(f"{geometry_name}/material", material)
        crate.add_mesh(str(node_name), mesh, material_id)
    return crate


async def import_model_file(ctx: PipelineCtx, config: ModelsPipeline, url: AbsAssetUrl) -> ModelCrate:
    """
    Fetch and read one model file into a new crate with a single object.

    Raises:
        AssetError: If the file cannot be fetched or parsed
    """
    data = await BytesFromUrl(url).get(ctx.assets)
    extension = url.extension

    if extension in NATIVE_EXTENSIONS and not config.force_generic:
        crate = await read_gltf(data, url, ctx.assets, create_texture_resolver(ctx))
    elif extension in MODEL_EXTENSIONS:
        archive, diffuse_maps = {}, {}
        if extension == "obj":
            archive, diffuse_maps = await _obj_files(ctx, data, url)
        try:
            crate = await asyncio.to_thread(
                _load_trimesh, data, extension, url, archive, diffuse_maps
            )
        except AssetError:
            raise
        except Exception as e:
            raise AssetError(f"Failed to import {url}: {e}") from e
    else:
        raise AssetError(f"Unsupported model format: {url}")

    crate.create_object(url.stem)
    logger.info(
        "Imported model",
        url=url.url,
        meshes=len(crate.meshes),
        materials=len(crate.materials),
        triangles=crate.triangle_count,
    )
    return crate
