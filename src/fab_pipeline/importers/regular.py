"""
Regular importer - One asset per self-contained model file.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from fab_pipeline.importers.base import ImportedModel, ModelImporterBackend
from fab_pipeline.importers.geometry import MODEL_EXTENSIONS, import_model_file

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx
    from fab_pipeline.pipeline.models import ModelsPipeline

logger = structlog.get_logger()


class RegularImporter(ModelImporterBackend):
    name = "regular"

    async def import_models(self, ctx: PipelineCtx, config: ModelsPipeline) -> list[ImportedModel]:
        files = ctx.files_with_extension(*MODEL_EXTENSIONS)
        logger.debug("Importing model files", count=len(files))
        crates = await asyncio.gather(*(import_model_file(ctx, config, url) for url in files))
        return [
            ImportedModel(
                crate=crate,
                model_path=ctx.relative_path(url),
                name=url.stem,
                source=url,
            )
            for url, crate in zip(files, crates)
        ]
