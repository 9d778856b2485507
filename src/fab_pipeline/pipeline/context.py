"""
Build job context - What a pipeline job can see and where it writes.

A ProcessCtx covers one package build (all input files, the shared asset cache,
the output root). A PipelineCtx narrows it to one pipeline entry of one
pipeline file: its input root is the directory holding the pipeline file and
its files are those matching the entry's source globs.
"""

from __future__ import annotations

import asyncio
import fnmatch
from dataclasses import dataclass, field

import structlog

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import AssetError

logger = structlog.get_logger()


@dataclass
class ProcessCtx:
    """One package build."""

    assets: AssetCache
    files: list[AbsAssetUrl]
    in_root: AbsAssetUrl
    out_root: AbsAssetUrl
    package_name: str
    written: list[AbsAssetUrl] = field(default_factory=list)

    async def write_file(self, url: AbsAssetUrl, data: bytes) -> AbsAssetUrl:
        """
        Write an artifact below the output root.

        Raises:
            AssetError: If the url is outside the output root or not writable
        """
        if url.relative_to(self.out_root) is None:
            raise AssetError(f"Refusing to write {url} outside of {self.out_root}")
        if not url.is_local:
            raise AssetError(f"Only local output is supported, got {url}")

        path = url.to_file_path()

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise AssetError(f"Failed to write {path}: {e}") from e

        self.written.append(url)
        logger.debug("Wrote artifact", url=url.url, size=len(data))
        return url


@dataclass
class PipelineCtx:
    """One pipeline entry running inside a package build."""

    process_ctx: ProcessCtx
    pipeline_file: AbsAssetUrl
    sources: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    categories: list[list[str]] = field(default_factory=list)

    @property
    def assets(self) -> AssetCache:
        return self.process_ctx.assets

    @property
    def root_path(self) -> str:
        """Directory of the pipeline file relative to the package input root."""
        return self.pipeline_file.parent().relative_to(self.process_ctx.in_root) or ""

    def in_root(self) -> AbsAssetUrl:
        return self.pipeline_file.parent()

    def out_root(self) -> AbsAssetUrl:
        if not self.root_path:
            return self.process_ctx.out_root.as_directory()
        return self.process_ctx.out_root.push(self.root_path)

    def relative_path(self, url: AbsAssetUrl) -> str:
        """Path of an input file relative to this pipeline's input root."""
        relative = url.relative_to(self.in_root())
        return relative if relative is not None else url.file_name

    @property
    def files(self) -> list[AbsAssetUrl]:
        """Input files of this job: below the pipeline's root and matching its sources."""
        files = []
        for url in self.process_ctx.files:
            if url == self.pipeline_file:
                continue
            relative = url.relative_to(self.in_root())
            if relative is None:
                continue
            if self.sources and not any(fnmatch.fnmatch(relative, g) for g in self.sources):
                continue
            files.append(url)
        return files

    def files_with_extension(self, *extensions: str) -> list[AbsAssetUrl]:
        wanted = {e.lower().lstrip(".") for e in extensions}
        return [url for url in self.files if url.extension in wanted]

    async def write_file(self, relative: str, data: bytes) -> AbsAssetUrl:
        return await self.process_ctx.write_file(self.out_root().push(relative), data)
