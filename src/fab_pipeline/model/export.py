"""
Crate export - Serializes a finalized crate into output artifacts.

Geometry and materials become a GLB written with trimesh; the object world, the
collider shape and animation clips are written as JSON documents next to it.
"""

from __future__ import annotations

import io
import json
from typing import Any

import numpy as np
import structlog
import trimesh
from PIL import Image
from trimesh.visual.material import PBRMaterial
from trimesh.visual.texture import TextureVisuals

from fab_pipeline.errors import StructuralError
from fab_pipeline.model.crate import ANIMATIONS_DIR, MODEL_PATH, ModelCrate
from fab_pipeline.model.mesh import PbrMaterial
from fab_pipeline.world import World

logger = structlog.get_logger()


def encode_png(img: Image.Image) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def _trimesh_material(material: PbrMaterial) -> PBRMaterial:
    if material.transparent:
        alpha_mode = "BLEND"
    elif material.alpha_cutoff is not None:
        alpha_mode = "MASK"
    else:
        alpha_mode = "OPAQUE"
    return PBRMaterial(
        name=material.name or None,
        baseColorFactor=list(material.base_color_factor),
        emissiveFactor=list(material.emissive_factor),
        metallicFactor=material.metallic,
        roughnessFactor=material.roughness,
        baseColorTexture=material.base_color,
        normalTexture=material.normalmap,
        metallicRoughnessTexture=material.metallic_roughness,
        doubleSided=material.double_sided,
        alphaMode=alpha_mode,
        alphaCutoff=material.alpha_cutoff,
    )


def crate_to_scene(crate: ModelCrate) -> trimesh.Scene:
    scene = trimesh.Scene()
    materials = {k: _trimesh_material(m) for k, m in crate.materials.items()}
    for i, primitive in enumerate(crate.primitives):
        mesh = crate.meshes[primitive.mesh]
        if not mesh.triangle_count:
            continue
        uv = mesh.texcoords[0] if mesh.texcoords else None
        geometry = trimesh.Trimesh(
            vertices=mesh.positions,
            faces=mesh.indices[: mesh.triangle_count * 3].reshape(-1, 3),
            vertex_normals=mesh.normals,
            visual=TextureVisuals(uv=uv, material=materials[primitive.material]),
            process=False,
        )
        scene.add_geometry(geometry, node_name=primitive.mesh, geom_name=f"{primitive.mesh}:{i}")
    return scene


def crate_to_glb(crate: ModelCrate) -> bytes | None:
    """
    GLB bytes for a finalized crate, or None when it has no geometry.

    Raises:
        StructuralError: If the crate has not been finalized
    """
    if not crate.finalized:
        raise StructuralError(f"Crate '{crate.name}' must be finalized before export")
    scene = crate_to_scene(crate)
    if not scene.geometry:
        return None
    logger.debug("Exporting glb", crate=crate.name, geometries=len(scene.geometry))
    return scene.export(file_type="glb")


def object_document(crate: ModelCrate, has_model: bool, animations: list[str]) -> World:
    """
    The spawnable object world of a crate, pointing at the exported artifacts.

    Paths are relative to the asset's output directory (the package root of the
    object document).
    """
    world = crate.object_world.copy()
    root = world.root_child()
    if has_model:
        world.add_component(root, "model_from_url", MODEL_PATH)
    if animations:
        world.add_component(root, "animations", [f"{ANIMATIONS_DIR}/{a}.json" for a in animations])
    return world


def animation_file_name(name: str) -> str:
    safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in name)
    return safe or "animation"


def to_json_bytes(data: Any) -> bytes:
    return json.dumps(data, indent=2, default=_json_default).encode()


def _json_default(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")
