"""
Importer backend interface.

Every backend populates crates from one source format family. Whatever the
backend, each returned crate has at least one entity under its object world
root; later stages attach components to it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import StructuralError
from fab_pipeline.model.crate import ModelCrate

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx
    from fab_pipeline.pipeline.models import ModelsPipeline


@dataclass
class ImportedModel:
    """A populated crate and where its outputs go."""

    crate: ModelCrate
    model_path: str  # output directory relative to the pipeline's out root
    name: str
    source: AbsAssetUrl | None = None
    tags: list[str] = field(default_factory=list)


class ModelImporterBackend(ABC):
    """Base class for importer backends."""

    name: str

    @abstractmethod
    async def import_models(self, ctx: PipelineCtx, config: ModelsPipeline) -> list[ImportedModel]:
        """
        Populate one crate per logical asset found in the job's files.

        Raises:
            AssetError: If a required file cannot be fetched or parsed
        """
        ...

    async def import_crates(self, ctx: PipelineCtx, config: ModelsPipeline) -> list[ImportedModel]:
        """
        Run the backend and check the object world invariant.

        Raises:
            StructuralError: If a crate has no entity under its object root
        """
        models = await self.import_models(ctx, config)
        for model in models:
            if not model.crate.object_world.children():
                raise StructuralError(
                    f"Importer '{self.name}' produced crate '{model.name}' without an object"
                )
        return models
