"""
Collider definitions attached to objects and collider shapes derived from
geometry.

A collider definition is the value of the "collider" component:

    {"type": "none"}
    {"type": "concave_mesh", "url": "colliders/main.json"}
    {"type": "character", "radius": 0.4, "height": 1.8}
    {"type": "box", "size": [1, 1, 1]}
    {"type": "sphere", "radius": 0.5}

Definitions carrying a "url" reference a collider asset and must be resolved
against the document that contains them before use.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import numpy as np

from fab_pipeline.asset_url import AbsAssetUrl, resolve
from fab_pipeline.errors import AssetUrlError, ConfigError

DEFAULT_CHARACTER_RADIUS = 0.5
DEFAULT_CHARACTER_HEIGHT = 2.0

# Triangles with a smaller area are treated as degenerate.
MIN_TRIANGLE_AREA = 1e-12


class ColliderType(str, Enum):
    """How the physics layer treats an object's collider."""

    STATIC = "static"
    DYNAMIC = "dynamic"
    TRIGGER_AREA = "trigger_area"
    PICKING = "picking"

    @classmethod
    def parse(cls, value: Any) -> ColliderType:
        if value is None:
            return cls.STATIC
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ConfigError(f"Unknown collider_type: {value!r}") from None


def resolve_collider_def(definition: dict[str, Any], base: AbsAssetUrl) -> dict[str, Any]:
    """
    Return a copy of a collider definition with its asset url made absolute.

    Raises:
        AssetUrlError: If the url cannot be parsed or resolved
    """
    if not isinstance(definition, dict):
        raise AssetUrlError(f"Collider definition must be a mapping, got {definition!r}")
    resolved = dict(definition)
    if "url" in resolved:
        resolved["url"] = str(resolve(resolved["url"], base))
    return resolved


@dataclass
class ColliderShape:
    """Triangle mesh collider extracted from finalized geometry."""

    vertices: np.ndarray  # (V, 3) float32
    indices: np.ndarray  # (T * 3,) uint32

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    @classmethod
    def from_triangles(cls, triangles: np.ndarray) -> ColliderShape | None:
        """
        Build a welded shape from (T, 3, 3) triangle corners.

        Returns None when every triangle is degenerate.
        """
        if not len(triangles):
            return None
        triangles = np.asarray(triangles, dtype=np.float64).reshape(-1, 3, 3)
        areas = 0.5 * np.linalg.norm(
            np.cross(triangles[:, 1] - triangles[:, 0], triangles[:, 2] - triangles[:, 0]),
            axis=1,
        )
        triangles = triangles[areas > MIN_TRIANGLE_AREA]
        if not len(triangles):
            return None

        corners = triangles.reshape(-1, 3).astype(np.float32)
        vertices, inverse = np.unique(corners, axis=0, return_inverse=True)
        return cls(vertices=vertices, indices=inverse.reshape(-1).astype(np.uint32))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "concave_mesh",
            "vertices": self.vertices.tolist(),
            "indices": self.indices.tolist(),
        }


def character_dimensions(
    bounds: tuple[np.ndarray, np.ndarray] | None,
    radius: float | None,
    height: float | None,
) -> tuple[float, float]:
    """
    Radius and height of a character capsule, filling unspecified values from
    the model bounds (Z up).
    """
    if bounds is not None:
        extent = bounds[1] - bounds[0]
        if radius is None:
            radius = float(max(extent[0], extent[1])) / 2.0
        if height is None:
            height = float(extent[2])
    if not radius or radius <= 0:
        radius = DEFAULT_CHARACTER_RADIUS
    if not height or height <= 0:
        height = DEFAULT_CHARACTER_HEIGHT
    return radius, height
