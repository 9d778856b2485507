"""
Output assets - The addressable records a build emits.

Each record points at an artifact written below the output root, or at other
records of the same build (a collection). Ids are derived from output URLs, so
a rebuild of the same package produces the same ids.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import StructuralError


class AssetType(str, Enum):
    OBJECT = "object"
    MODEL = "model"
    ANIMATION = "animation"


def asset_id_from_url(url: AbsAssetUrl) -> str:
    return hashlib.sha256(url.url.encode()).hexdigest()[:24]


@dataclass(frozen=True)
class OutAssetPreview:
    """`none`, `image` (url of an image) or `from_model` (url of a model)."""

    type: str = "none"
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.type == "none":
            return {"type": "none"}
        return {"type": self.type, "url": self.url}


@dataclass(frozen=True)
class OutAssetContent:
    """`artifact` (url of a written file) or `collection` (ids of other assets)."""

    type: str
    url: str | None = None
    ids: tuple[str, ...] = ()

    @classmethod
    def artifact(cls, url: AbsAssetUrl) -> OutAssetContent:
        return cls(type="artifact", url=url.url)

    @classmethod
    def collection(cls, ids: list[str]) -> OutAssetContent:
        return cls(type="collection", ids=tuple(ids))

    def to_dict(self) -> dict[str, Any]:
        if self.type == "collection":
            return {"type": "collection", "ids": list(self.ids)}
        return {"type": "artifact", "url": self.url}


@dataclass(frozen=True)
class OutAsset:
    id: str
    type: AssetType
    name: str
    content: OutAssetContent
    hidden: bool = False
    tags: tuple[str, ...] = ()
    categories: tuple[tuple[str, ...], ...] = ()
    preview: OutAssetPreview = field(default_factory=OutAssetPreview)
    source: str | None = None

    def with_hidden(self, hidden: bool = True) -> OutAsset:
        return replace(self, hidden=hidden)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "hidden": self.hidden,
            "tags": list(self.tags),
            "categories": [list(c) for c in self.categories],
            "preview": self.preview.to_dict(),
            "content": self.content.to_dict(),
            "source": self.source,
        }


def validate_collections(assets: list[OutAsset]) -> None:
    """
    Check that collection members were emitted earlier in the same build.

    Raises:
        StructuralError: If a collection references a later or unknown asset
    """
    seen: set[str] = set()
    for asset in assets:
        if asset.content.type == "collection":
            missing = [i for i in asset.content.ids if i not in seen]
            if missing:
                raise StructuralError(
                    f"Collection '{asset.name}' references assets not emitted before it: {missing}"
                )
        seen.add(asset.id)
