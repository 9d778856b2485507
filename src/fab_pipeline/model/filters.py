"""
Material selectors and texture size caps used by pipeline configuration.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from fab_pipeline.errors import ConfigError
from fab_pipeline.model.mesh import PbrMaterial


@dataclass(frozen=True)
class MaterialFilter:
    """
    Selects crate materials for an override.

    Types:
        all       - every material
        by_name   - materials whose name (or crate id) equals `name`
        by_regex  - materials whose name (or crate id) matches `pattern`
    """

    type: str = "all"
    name: str | None = None
    pattern: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> MaterialFilter:
        """
        Raises:
            ConfigError: If the filter is malformed
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"Material filter must be a mapping, got {data!r}")

        kind = str(data.get("type", "all")).lower()
        if kind == "all":
            return cls()
        if kind == "by_name":
            name = data.get("name")
            if not isinstance(name, str) or not name:
                raise ConfigError("Material filter 'by_name' requires a non-empty 'name'")
            return cls(type="by_name", name=name)
        if kind == "by_regex":
            pattern = data.get("pattern")
            if not isinstance(pattern, str) or not pattern:
                raise ConfigError("Material filter 'by_regex' requires a 'pattern'")
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigError(f"Invalid material filter pattern {pattern!r}: {e}") from e
            return cls(type="by_regex", pattern=pattern)
        raise ConfigError(f"Unknown material filter type: {kind!r}")

    def matches(self, material_id: str, material: PbrMaterial) -> bool:
        if self.type == "all":
            return True
        candidates = (material.name, material_id)
        if self.type == "by_name":
            return self.name in candidates
        return any(re.search(self.pattern, c) for c in candidates if c)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"type": self.type}
        if self.name is not None:
            data["name"] = self.name
        if self.pattern is not None:
            data["pattern"] = self.pattern
        return data


class ModelTextureSize(int, Enum):
    X128 = 128
    X256 = 256
    X512 = 512
    X1024 = 1024
    X2048 = 2048
    X4096 = 4096


def parse_texture_size(value: Any) -> int | None:
    """
    Parse a texture cap: "x512", 512, or {"custom": 300}.

    Raises:
        ConfigError: If the value is not a positive size
    """
    if value is None:
        return None
    if isinstance(value, dict):
        if "custom" not in value:
            raise ConfigError(f"Invalid texture size {value!r}")
        value = value["custom"]
    elif isinstance(value, str):
        key = value.strip().upper()
        try:
            return int(ModelTextureSize[key])
        except KeyError:
            raise ConfigError(f"Invalid texture size {value!r}") from None

    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"Invalid texture size {value!r}")
    return value
