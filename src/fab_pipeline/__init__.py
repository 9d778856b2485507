"""
fab-pipeline: 3D asset build pipeline

Converts model files, Unity prefab bundles and Quixel Megascans sets into
normalized crates and output artifacts:
- Async memoizing asset cache shared by build stages and runtime loads
- Importer backends (regular, unity_models, quixel)
- Fixed-order post-processing (transforms, material overrides, texture caps,
  colliders, object components)
- Composite object loading with reference resolution
"""

__version__ = "0.1.0"

from fab_pipeline.asset_cache import AssetCache, AsyncAssetKey
from fab_pipeline.asset_url import AbsAssetUrl, resolve
from fab_pipeline.errors import (
    AssetError,
    AssetUrlError,
    ConfigError,
    DeserializationError,
    FabPipelineError,
    StructuralError,
)
from fab_pipeline.world import World

__all__ = [
    "AbsAssetUrl",
    "AssetCache",
    "AssetError",
    "AssetUrlError",
    "AsyncAssetKey",
    "ConfigError",
    "DeserializationError",
    "FabPipelineError",
    "StructuralError",
    "World",
    "resolve",
]
