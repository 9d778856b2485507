"""
Package build - Runs every pipeline of a package directory.

All pipeline files are parsed before any job starts, so a configuration error
aborts the build without touching the output directory. Jobs then run
concurrently; a failing job is logged and recorded in the report while the
remaining jobs carry on.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.pipeline.config import PipelineEntry, find_pipeline_files, load_pipeline_file
from fab_pipeline.pipeline.context import PipelineCtx, ProcessCtx
from fab_pipeline.pipeline.models import pipeline as models_pipeline
from fab_pipeline.pipeline.out_asset import OutAsset, validate_collections
from fab_pipeline.settings import Settings

logger = structlog.get_logger()

ASSETS_FILE = "assets.json"


@dataclass
class JobFailure:
    pipeline_file: str
    index: int
    error: str
    error_type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "pipeline_file": self.pipeline_file,
            "index": self.index,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class BuildReport:
    assets: list[OutAsset] = field(default_factory=list)
    failures: list[JobFailure] = field(default_factory=list)
    written: list[AbsAssetUrl] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "assets": len(self.assets),
            "written": [u.url for u in self.written],
            "failures": [f.to_dict() for f in self.failures],
            "duration_ms": self.duration_ms,
        }


def list_input_files(root: Path) -> list[AbsAssetUrl]:
    return [AbsAssetUrl.from_file_path(p) for p in sorted(root.rglob("*")) if p.is_file()]


async def build_package(
    in_dir: Path,
    out_dir: Path,
    settings: Settings | None = None,
    assets: AssetCache | None = None,
) -> BuildReport:
    """
    Build every pipeline found below `in_dir` into `out_dir`.

    Args:
        in_dir: Package source directory
        out_dir: Output directory (created if missing)
        settings: Build settings (defaults if None)
        assets: Asset cache to share with the caller (a private one if None)

    Returns:
        BuildReport with emitted assets and per-job failures

    Raises:
        ConfigError: If any pipeline file is invalid
    """
    settings = settings or Settings()
    started = time.monotonic()
    in_dir = in_dir.resolve()

    # Parse everything up front: config errors must surface before any stage runs.
    jobs: list[tuple[Path, int, PipelineEntry]] = []
    for path in find_pipeline_files(in_dir):
        for index, entry in enumerate(load_pipeline_file(path).entries):
            jobs.append((path, index, entry))

    out_dir.mkdir(parents=True, exist_ok=True)
    owns_cache = assets is None
    assets = assets or AssetCache(http_timeout=settings.http_timeout, user_agent=settings.user_agent)

    process_ctx = ProcessCtx(
        assets=assets,
        files=list_input_files(in_dir),
        in_root=AbsAssetUrl.from_file_path(in_dir),
        out_root=AbsAssetUrl.from_file_path(out_dir.resolve()),
        package_name=settings.package_name or in_dir.name,
    )
    logger.info(
        "Starting package build",
        input=str(in_dir),
        output=str(out_dir),
        jobs=len(jobs),
        files=len(process_ctx.files),
    )

    report = BuildReport()
    semaphore = asyncio.Semaphore(settings.max_concurrent_jobs)

    async def run_job(path: Path, index: int, entry: PipelineEntry) -> list[OutAsset]:
        ctx = PipelineCtx(
            process_ctx=process_ctx,
            pipeline_file=AbsAssetUrl.from_file_path(path),
            sources=entry.sources,
            tags=entry.tags,
            categories=entry.categories,
        )
        async with semaphore:
            try:
                return await models_pipeline(ctx, entry.config)
            except Exception as e:
                logger.error(
                    "Build job failed",
                    pipeline=str(path),
                    index=index,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report.failures.append(JobFailure(str(path), index, str(e), type(e).__name__))
                return []

    try:
        results = await asyncio.gather(*(run_job(*job) for job in jobs))
    finally:
        if owns_cache:
            await assets.aclose()

    for job_assets in results:
        report.assets.extend(job_assets)
    validate_collections(report.assets)

    manifest = json.dumps([a.to_dict() for a in report.assets], indent=2).encode()
    await process_ctx.write_file(process_ctx.out_root.push(ASSETS_FILE), manifest)

    report.written = list(process_ctx.written)
    report.duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Package build finished",
        assets=len(report.assets),
        failures=len(report.failures),
        duration_ms=report.duration_ms,
    )
    return report
