"""
Error taxonomy for the build pipeline and the asset cache.

Configuration errors are raised while loading pipeline files, before any stage
runs. Asset errors cover fetch and decode failures. Structural errors abort the
enclosing stage and build job.
"""

from __future__ import annotations


class FabPipelineError(Exception):
    """Base exception for fab-pipeline errors."""

    pass


class ConfigError(FabPipelineError):
    """Malformed pipeline configuration (bad filter, identifier, type tag)."""

    pass


class AssetError(FabPipelineError):
    """A cache-backed load failed (network, file, decode)."""

    def __init__(self, message: str, key: object | None = None) -> None:
        super().__init__(message)
        self.key = key


class AssetUrlError(FabPipelineError, ValueError):
    """A reference could not be parsed or joined."""

    pass


class StructuralError(FabPipelineError):
    """A crate or object document violates a structural invariant."""

    pass


class DeserializationError(FabPipelineError):
    """An object document could not be deserialized."""

    pass
