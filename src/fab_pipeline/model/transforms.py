"""
Geometric transforms applied to a crate before finalization.

Transforms compose left to right: the pipeline applies them in list order.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

from fab_pipeline.errors import ConfigError

if TYPE_CHECKING:
    from fab_pipeline.model.crate import ModelCrate


def translation_matrix(offset: Any) -> np.ndarray:
    m = np.eye(4)
    m[:3, 3] = np.asarray(offset, dtype=np.float64)
    return m


def scale_matrix(scale: Any) -> np.ndarray:
    m = np.eye(4)
    m[:3, :3] = np.diag(np.broadcast_to(np.asarray(scale, dtype=np.float64), (3,)))
    return m


def rotation_matrix(axis: str, degrees: float) -> np.ndarray:
    r = math.radians(degrees)
    c, s = math.cos(r), math.sin(r)
    m = np.eye(4)
    if axis == "x":
        m[1:3, 1:3] = [[c, -s], [s, c]]
    elif axis == "y":
        m[0, 0], m[0, 2], m[2, 0], m[2, 2] = c, s, -s, c
    else:
        m[0:2, 0:2] = [[c, -s], [s, c]]
    return m


def _vec3(data: dict[str, Any], key: str) -> tuple[float, float, float]:
    value = data.get(key)
    if (
        not isinstance(value, (list, tuple))
        or len(value) != 3
        or not all(isinstance(v, (int, float)) for v in value)
    ):
        raise ConfigError(f"Transform field '{key}' must be a list of 3 numbers, got {value!r}")
    return (float(value[0]), float(value[1]), float(value[2]))


def _number(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Transform field '{key}' must be a number, got {value!r}")
    return float(value)


class ModelTransform:
    """Base class; subclasses provide the matrix for a given crate."""

    TYPE: ClassVar[str]

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        raise NotImplementedError

    def apply(self, crate: ModelCrate) -> None:
        crate.transform(self.matrix(crate))

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE}


@dataclass(frozen=True)
class RotateYUpToZUp(ModelTransform):
    TYPE: ClassVar[str] = "rotate_y_up_to_z_up"

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        return rotation_matrix("x", 90.0)


@dataclass(frozen=True)
class Rotate(ModelTransform):
    axis: str
    deg: float

    @property
    def TYPE(self) -> str:  # type: ignore[override]
        return f"rotate_{self.axis}"

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        return rotation_matrix(self.axis, self.deg)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "deg": self.deg}


@dataclass(frozen=True)
class Scale(ModelTransform):
    TYPE: ClassVar[str] = "scale"
    scale: float

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        return scale_matrix(self.scale)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "scale": self.scale}


@dataclass(frozen=True)
class ScaleAabb(ModelTransform):
    """Uniform scale so that the largest bounding box side equals `scale`."""

    TYPE: ClassVar[str] = "scale_aabb"
    scale: float

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        bounds = crate.aabb()
        if bounds is None:
            return np.eye(4)
        extent = float((bounds[1] - bounds[0]).max())
        if extent <= 0:
            return np.eye(4)
        return scale_matrix(self.scale / extent)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "scale": self.scale}


@dataclass(frozen=True)
class ScaleAroundCenter(ModelTransform):
    TYPE: ClassVar[str] = "scale_around_center"
    scale: float

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        bounds = crate.aabb()
        if bounds is None:
            return scale_matrix(self.scale)
        center = (bounds[0] + bounds[1]) / 2.0
        return translation_matrix(center) @ scale_matrix(self.scale) @ translation_matrix(-center)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "scale": self.scale}


@dataclass(frozen=True)
class Translate(ModelTransform):
    TYPE: ClassVar[str] = "translate"
    translation: tuple[float, float, float]

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        return translation_matrix(self.translation)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.TYPE, "translation": list(self.translation)}


@dataclass(frozen=True)
class Center(ModelTransform):
    """Move the bounding box center to the origin."""

    TYPE: ClassVar[str] = "center"

    def matrix(self, crate: ModelCrate) -> np.ndarray:
        bounds = crate.aabb()
        if bounds is None:
            return np.eye(4)
        return translation_matrix(-(bounds[0] + bounds[1]) / 2.0)


def parse_transform(data: Any) -> ModelTransform:
    """
    Parse one transform entry, e.g. {"type": "translate", "translation": [0, 0, 1]}.

    Raises:
        ConfigError: If the entry is malformed or of an unknown type
    """
    if not isinstance(data, dict) or "type" not in data:
        raise ConfigError(f"Transform must be a mapping with a 'type', got {data!r}")

    kind = str(data["type"]).lower()
    if kind == "rotate_y_up_to_z_up":
        return RotateYUpToZUp()
    if kind in ("rotate_x", "rotate_y", "rotate_z"):
        return Rotate(axis=kind[-1], deg=_number(data, "deg"))
    if kind == "scale":
        return Scale(scale=_number(data, "scale"))
    if kind == "scale_aabb":
        return ScaleAabb(scale=_number(data, "scale"))
    if kind == "scale_around_center":
        return ScaleAroundCenter(scale=_number(data, "scale"))
    if kind == "translate":
        return Translate(translation=_vec3(data, "translation"))
    if kind == "center":
        return Center()
    raise ConfigError(f"Unknown transform type: {kind!r}")
