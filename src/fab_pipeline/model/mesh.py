"""
Geometry, material, skeleton and animation records held by a crate.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Any, Iterator

import numpy as np
from PIL import Image

TEXTURE_SLOTS = ("base_color", "normalmap", "metallic_roughness")


def _as_array(value: Any, dtype: Any, width: int | None = None) -> np.ndarray | None:
    if value is None:
        return None
    arr = np.ascontiguousarray(np.asarray(value, dtype=dtype))
    if width is not None:
        arr = arr.reshape(-1, width)
    return arr


@dataclass
class Mesh:
    """One triangle list with its vertex attributes."""

    positions: np.ndarray
    indices: np.ndarray | None = None
    normals: np.ndarray | None = None
    tangents: np.ndarray | None = None
    texcoords: list[np.ndarray] = field(default_factory=list)  # bottom-left origin
    colors: np.ndarray | None = None
    joint_indices: np.ndarray | None = None
    joint_weights: np.ndarray | None = None
    name: str = ""

    def __post_init__(self) -> None:
        self.positions = _as_array(self.positions, np.float32, 3)
        if self.indices is None:
            self.indices = np.arange(len(self.positions), dtype=np.uint32)
        self.indices = _as_array(self.indices, np.uint32).reshape(-1)
        self.normals = _as_array(self.normals, np.float32, 3)
        self.tangents = _as_array(self.tangents, np.float32, 4)
        self.texcoords = [_as_array(uv, np.float32, 2) for uv in self.texcoords]
        self.colors = _as_array(self.colors, np.float32, 4)
        self.joint_indices = _as_array(self.joint_indices, np.uint16, 4)
        self.joint_weights = _as_array(self.joint_weights, np.float32, 4)

    @property
    def vertex_count(self) -> int:
        return len(self.positions)

    @property
    def triangle_count(self) -> int:
        return len(self.indices) // 3

    @property
    def skinned(self) -> bool:
        return self.joint_indices is not None and self.joint_weights is not None

    def triangles(self) -> np.ndarray:
        """Triangle corner positions, shape (T, 3, 3)."""
        count = self.triangle_count * 3
        return self.positions[self.indices[:count]].reshape(-1, 3, 3)

    def aabb(self) -> tuple[np.ndarray, np.ndarray] | None:
        if not len(self.positions):
            return None
        return self.positions.min(axis=0), self.positions.max(axis=0)

    def apply_matrix(self, matrix: np.ndarray) -> None:
        """Transform positions (and directions) by a 4x4 matrix."""
        matrix = np.asarray(matrix, dtype=np.float64)
        linear = matrix[:3, :3]
        positions = self.positions.astype(np.float64) @ linear.T + matrix[:3, 3]
        self.positions = positions.astype(np.float32)

        if self.normals is not None and len(self.normals):
            normal_matrix = np.linalg.inv(linear).T if np.linalg.det(linear) else linear
            normals = self.normals.astype(np.float64) @ normal_matrix.T
            lengths = np.linalg.norm(normals, axis=1, keepdims=True)
            lengths[lengths == 0] = 1.0
            self.normals = (normals / lengths).astype(np.float32)

        if self.tangents is not None and len(self.tangents):
            xyz = self.tangents[:, :3].astype(np.float64) @ linear.T
            lengths = np.linalg.norm(xyz, axis=1, keepdims=True)
            lengths[lengths == 0] = 1.0
            self.tangents = np.concatenate(
                [xyz / lengths, self.tangents[:, 3:4]], axis=1
            ).astype(np.float32)

        # Mirroring transforms flip triangle winding.
        if np.linalg.det(linear) < 0:
            tris = self.indices[: self.triangle_count * 3].reshape(-1, 3)
            self.indices = np.ascontiguousarray(tris[:, ::-1]).reshape(-1)

    def copy(self) -> Mesh:
        return Mesh(
            positions=self.positions.copy(),
            indices=self.indices.copy(),
            normals=None if self.normals is None else self.normals.copy(),
            tangents=None if self.tangents is None else self.tangents.copy(),
            texcoords=[uv.copy() for uv in self.texcoords],
            colors=None if self.colors is None else self.colors.copy(),
            joint_indices=None if self.joint_indices is None else self.joint_indices.copy(),
            joint_weights=None if self.joint_weights is None else self.joint_weights.copy(),
            name=self.name,
        )

    def content_hash(self) -> str:
        digest = hashlib.sha256()
        for arr in (
            self.positions,
            self.indices,
            self.normals,
            self.tangents,
            self.colors,
            self.joint_indices,
            self.joint_weights,
            *self.texcoords,
        ):
            digest.update(b"-" if arr is None else arr.tobytes())
        return digest.hexdigest()


def _image_digest(img: Image.Image) -> str:
    digest = hashlib.sha256(f"{img.mode}{img.size}".encode())
    digest.update(img.tobytes())
    return digest.hexdigest()


@dataclass
class PbrMaterial:
    """
    Engine material description in metallic-roughness form.

    Texture slots hold decoded images; `texture_urls` records where a texture
    is written when the material came from a pipeline override.
    """

    name: str = ""
    source: str | None = None
    base_color_factor: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
    emissive_factor: tuple[float, float, float] = (0.0, 0.0, 0.0)
    metallic: float = 1.0
    roughness: float = 1.0
    alpha_cutoff: float | None = None
    transparent: bool = False
    double_sided: bool = False
    base_color: Image.Image | None = None
    normalmap: Image.Image | None = None
    metallic_roughness: Image.Image | None = None
    texture_urls: dict[str, str] = field(default_factory=dict)

    def textures(self) -> Iterator[tuple[str, Image.Image]]:
        for slot in TEXTURE_SLOTS:
            img = getattr(self, slot)
            if img is not None:
                yield slot, img

    def copy(self) -> PbrMaterial:
        """A copy owning its own images."""
        clone = PbrMaterial(
            name=self.name,
            source=self.source,
            base_color_factor=tuple(self.base_color_factor),
            emissive_factor=tuple(self.emissive_factor),
            metallic=self.metallic,
            roughness=self.roughness,
            alpha_cutoff=self.alpha_cutoff,
            transparent=self.transparent,
            double_sided=self.double_sided,
            texture_urls=dict(self.texture_urls),
        )
        for slot, img in self.textures():
            setattr(clone, slot, img.copy())
        return clone

    def content_hash(self) -> str:
        digest = hashlib.sha256(
            repr(
                (
                    self.name,
                    tuple(self.base_color_factor),
                    tuple(self.emissive_factor),
                    self.metallic,
                    self.roughness,
                    self.alpha_cutoff,
                    self.transparent,
                    self.double_sided,
                    sorted(self.texture_urls.items()),
                )
            ).encode()
        )
        for slot in TEXTURE_SLOTS:
            img = getattr(self, slot)
            digest.update(f"{slot}:{'-' if img is None else _image_digest(img)}".encode())
        return digest.hexdigest()

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "source": self.source,
            "base_color_factor": list(self.base_color_factor),
            "emissive_factor": list(self.emissive_factor),
            "metallic": self.metallic,
            "roughness": self.roughness,
            "alpha_cutoff": self.alpha_cutoff,
            "transparent": self.transparent,
            "double_sided": self.double_sided,
            "textures": {slot: list(img.size) for slot, img in self.textures()},
            "texture_urls": dict(self.texture_urls),
        }


@dataclass
class Skeleton:
    """Joint hierarchy of a skinned model."""

    joints: list[str]
    parents: list[int]
    inverse_bind_matrices: np.ndarray | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "joints": list(self.joints),
            "parents": list(self.parents),
        }


@dataclass
class AnimationChannel:
    target: str
    path: str  # translation, rotation, scale, weights
    times: np.ndarray
    values: np.ndarray
    interpolation: str = "LINEAR"


@dataclass
class AnimationClip:
    name: str
    channels: list[AnimationChannel] = field(default_factory=list)

    @property
    def duration(self) -> float:
        ends = [float(c.times.max()) for c in self.channels if len(c.times)]
        return max(ends, default=0.0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "duration": self.duration,
            "channels": [
                {
                    "target": c.target,
                    "path": c.path,
                    "interpolation": c.interpolation,
                    "times": c.times.reshape(-1).tolist(),
                    "values": c.values.reshape(len(c.times), -1).tolist()
                    if len(c.times)
                    else [],
                }
                for c in self.channels
            ],
        }
