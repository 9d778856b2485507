"""
Model Crate - Mutable staging representation of one imported asset.

A crate is created empty, populated by exactly one importer, mutated in place by
the pipeline stages and finalized before export. It holds meshes, materials,
the primitives pairing them, an optional skeleton and animation set, and an
object world whose root children represent the logical parts of the asset.

Output layout below an asset's output directory:

    models/main.glb       finalized geometry and materials
    objects/main.json     object document (spawnable)
    colliders/main.json   collider shape extracted from the model
    animations/<clip>.json
    materials/<texture>_<slot>.png
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np
import structlog

from fab_pipeline.errors import StructuralError
from fab_pipeline.model.colliders import ColliderShape, character_dimensions
from fab_pipeline.model.filters import MaterialFilter
from fab_pipeline.model.mesh import AnimationClip, Mesh, PbrMaterial, Skeleton
from fab_pipeline.world import World

logger = structlog.get_logger()

MODEL_PATH = "models/main.glb"
OBJECT_PATH = "objects/main.json"
COLLIDER_PATH = "colliders/main.json"
ANIMATIONS_DIR = "animations"
MATERIALS_DIR = "materials"

DEFAULT_MATERIAL = "default"


@dataclass
class Primitive:
    """A mesh drawn with a material."""

    mesh: str
    material: str


@dataclass
class ModelCrate:
    """Meshes, materials and an object world for one asset."""

    name: str = "model"
    meshes: dict[str, Mesh] = field(default_factory=dict)
    materials: dict[str, PbrMaterial] = field(default_factory=dict)
    primitives: list[Primitive] = field(default_factory=list)
    skeleton: Skeleton | None = None
    animations: dict[str, AnimationClip] = field(default_factory=dict)
    colliders: dict[str, ColliderShape] = field(default_factory=dict)
    object_world: World = field(default_factory=World)
    finalized: bool = False

    def _check_editable(self) -> None:
        if self.finalized:
            raise StructuralError(f"Crate '{self.name}' is finalized; geometry is read-only")

    def add_material(self, material_id: str, material: PbrMaterial) -> str:
        self._check_editable()
        self.materials[material_id] = material
        return material_id

    def add_mesh(self, mesh_id: str, mesh: Mesh, material: str | None = None) -> str:
        """Register a mesh and draw it with `material` (the default material if None)."""
        self._check_editable()
        if mesh_id in self.meshes:
            suffix = 1
            while f"{mesh_id}.{suffix}" in self.meshes:
                suffix += 1
            mesh_id = f"{mesh_id}.{suffix}"
        if material is None:
            material = DEFAULT_MATERIAL
            self.materials.setdefault(DEFAULT_MATERIAL, PbrMaterial(name=DEFAULT_MATERIAL))
        self.meshes[mesh_id] = mesh
        self.primitives.append(Primitive(mesh=mesh_id, material=material))
        return mesh_id

    def create_object(self, name: str | None = None, components: dict[str, Any] | None = None) -> int:
        """Spawn the entity representing this asset under the object world root."""
        return self.object_world.spawn({"name": name or self.name, **(components or {})})

    def ensure_object(self) -> int:
        if self.object_world.children():
            return self.object_world.root_child()
        return self.create_object()

    @property
    def triangle_count(self) -> int:
        return sum(self.meshes[p.mesh].triangle_count for p in self.primitives)

    def aabb(self) -> tuple[np.ndarray, np.ndarray] | None:
        boxes = [b for b in (self.meshes[p.mesh].aabb() for p in self.primitives) if b]
        if not boxes:
            return None
        return (
            np.min([b[0] for b in boxes], axis=0),
            np.max([b[1] for b in boxes], axis=0),
        )

    def transform(self, matrix: np.ndarray) -> None:
        """Apply a 4x4 transform to every mesh."""
        self._check_editable()
        for mesh in self.meshes.values():
            mesh.apply_matrix(matrix)

    def merge(self, other: ModelCrate, prefix: str, matrix: np.ndarray | None = None) -> None:
        """Copy another crate's meshes and materials in, optionally transformed."""
        self._check_editable()
        material_ids = {}
        for material_id, material in other.materials.items():
            material_ids[material_id] = self.add_material(f"{prefix}/{material_id}", material.copy())
        for primitive in other.primitives:
            mesh = other.meshes[primitive.mesh].copy()
            if matrix is not None:
                mesh.apply_matrix(matrix)
            self.add_mesh(f"{prefix}/{primitive.mesh}", mesh, material_ids[primitive.material])
        if self.skeleton is None and other.skeleton is not None:
            self.skeleton = other.skeleton
        for clip_name, clip in other.animations.items():
            self.animations.setdefault(clip_name, clip)

    def override_material(self, material_filter: MaterialFilter, material: PbrMaterial) -> int:
        """Replace every material matched by the filter; returns the match count."""
        self._check_editable()
        matched = 0
        for material_id, current in list(self.materials.items()):
            if material_filter.matches(material_id, current):
                self.materials[material_id] = material.copy()
                matched += 1
        return matched

    def cap_texture_sizes(self, max_size: int) -> int:
        """Downsize textures larger than `max_size`, keeping aspect ratio."""
        resized = 0
        for material in self.materials.values():
            for slot, img in list(material.textures()):
                if max(img.size) <= max_size:
                    continue
                scale = max_size / max(img.size)
                size = (max(1, round(img.width * scale)), max(1, round(img.height * scale)))
                setattr(material, slot, img.resize(size))
                resized += 1
        return resized

    def finalize_model(self) -> dict[str, int]:
        """
        Deduplicate meshes and materials, drop unused materials and freeze
        geometry. Returns counts of what was removed.
        """
        self._check_editable()

        mesh_by_hash: dict[str, str] = {}
        mesh_remap: dict[str, str] = {}
        for mesh_id, mesh in self.meshes.items():
            mesh_remap[mesh_id] = mesh_by_hash.setdefault(mesh.content_hash(), mesh_id)

        material_by_hash: dict[str, str] = {}
        material_remap: dict[str, str] = {}
        for material_id, material in self.materials.items():
            material_remap[material_id] = material_by_hash.setdefault(
                material.content_hash(), material_id
            )

        # Identical mesh+material pairs are kept: they are separate instances.
        primitives = [
            Primitive(mesh=mesh_remap[p.mesh], material=material_remap[p.material])
            for p in self.primitives
        ]

        used_meshes = {p.mesh for p in primitives}
        used_materials = {p.material for p in primitives}
        removed = {
            "meshes": len(self.meshes) - len(used_meshes),
            "materials": len(self.materials) - len(used_materials),
        }
        self.meshes = {k: v for k, v in self.meshes.items() if k in used_meshes}
        self.materials = {k: v for k, v in self.materials.items() if k in used_materials}
        self.primitives = primitives
        self.finalized = True

        logger.debug(
            "Finalized crate",
            crate=self.name,
            meshes=len(self.meshes),
            materials=len(self.materials),
            removed_meshes=removed["meshes"],
            removed_materials=removed["materials"],
        )
        return removed

    def add_component_to_object(self, name: str, value: Any) -> None:
        """
        Raises:
            StructuralError: If the object world has no root child
        """
        self.object_world.add_component(self.object_world.root_child(), name, value)

    def create_collider_from_model(self) -> ColliderShape:
        """
        Extract a triangle mesh collider from the (finalized) geometry.

        Raises:
            StructuralError: If the model has no non-degenerate triangles
        """
        triangles = [self.meshes[p.mesh].triangles() for p in self.primitives]
        shape = ColliderShape.from_triangles(
            np.concatenate(triangles) if triangles else np.zeros((0, 3, 3))
        )
        if shape is None:
            raise StructuralError(
                f"Cannot create a collider for '{self.name}': the model has no usable triangles"
            )
        self.colliders["main"] = shape
        self.add_component_to_object("collider", {"type": "concave_mesh", "url": COLLIDER_PATH})
        return shape

    def create_character_collider(self, radius: float | None, height: float | None) -> None:
        radius, height = character_dimensions(self.aabb(), radius, height)
        self.add_component_to_object(
            "collider", {"type": "character", "radius": radius, "height": height}
        )
