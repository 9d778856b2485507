"""Importer backends turning source files into model crates."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fab_pipeline.errors import ConfigError
from fab_pipeline.importers.base import ImportedModel, ModelImporterBackend
from fab_pipeline.importers.quixel import QuixelImporter
from fab_pipeline.importers.regular import RegularImporter
from fab_pipeline.importers.unity import UnityImporter

if TYPE_CHECKING:
    from fab_pipeline.pipeline.models import ModelImporter


def get_importer(importer: ModelImporter) -> ModelImporterBackend:
    """
    Create the backend for an importer selection.

    Raises:
        ConfigError: If the importer type is unknown
    """
    if importer.type == "regular":
        return RegularImporter()
    if importer.type == "unity_models":
        return UnityImporter(use_prefabs=importer.use_prefabs)
    if importer.type == "quixel":
        return QuixelImporter()
    raise ConfigError(f"Unknown importer type: {importer.type!r}")


__all__ = [
    "ImportedModel",
    "ModelImporterBackend",
    "QuixelImporter",
    "RegularImporter",
    "UnityImporter",
    "get_importer",
]
