"""
Pipeline - Pipeline files, build contexts and the models pipeline.
"""

from fab_pipeline.pipeline.build import BuildReport, build_package
from fab_pipeline.pipeline.context import PipelineCtx, ProcessCtx
from fab_pipeline.pipeline.models import ModelsPipeline, pipeline
from fab_pipeline.pipeline.out_asset import AssetType, OutAsset

__all__ = [
    "AssetType",
    "BuildReport",
    "ModelsPipeline",
    "OutAsset",
    "PipelineCtx",
    "ProcessCtx",
    "build_package",
    "pipeline",
]
