"""
Pipeline file loading.

A package directory may contain any number of pipeline files; each one applies
to the files below its own directory.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from fab_pipeline.errors import ConfigError
from fab_pipeline.pipeline.models import ModelsPipeline

PIPELINE_FILE_NAMES = ("pipeline.yaml", "pipeline.yml", "pipeline.json")


@dataclass
class PipelineEntry:
    """One entry of a pipeline file's `pipelines` list."""

    type: str
    config: ModelsPipeline
    sources: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    categories: list[list[str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> PipelineEntry:
        if not isinstance(data, dict):
            raise ConfigError(f"Pipeline entry must be a mapping, got {data!r}")
        kind = data.get("type", "models")
        if kind != "models":
            raise ConfigError(f"Unsupported pipeline type: {kind!r}")

        sources = data.get("sources") or []
        if isinstance(sources, str):
            sources = [sources]
        tags = data.get("tags") or []
        categories = data.get("categories") or []
        if not all(isinstance(s, str) for s in sources):
            raise ConfigError(f"'sources' must be a list of globs, got {sources!r}")
        if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
            raise ConfigError(f"'tags' must be a list of strings, got {tags!r}")
        if not isinstance(categories, list) or not all(isinstance(c, list) for c in categories):
            raise ConfigError(f"'categories' must be a list of paths, got {categories!r}")

        return cls(
            type=kind,
            config=ModelsPipeline.from_dict(data),
            sources=list(sources),
            tags=list(tags),
            categories=[[str(part) for part in c] for c in categories],
        )


@dataclass
class PipelineFile:
    path: Path
    entries: list[PipelineEntry]


def load_pipeline_file(path: Path) -> PipelineFile:
    """
    Load and validate a pipeline file.

    Args:
        path: Path to a pipeline.yaml / pipeline.yml / pipeline.json

    Returns:
        The parsed entries

    Raises:
        ConfigError: If the file is unreadable or any entry is invalid
    """
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read pipeline file {path}: {e}") from e

    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Invalid pipeline file {path}: {e}") from e

    if isinstance(raw, list):
        raw = {"pipelines": raw}
    if not isinstance(raw, dict) or not isinstance(raw.get("pipelines"), list):
        raise ConfigError(f"Pipeline file {path} must contain a 'pipelines' list")

    entries = []
    for index, entry in enumerate(raw["pipelines"]):
        try:
            entries.append(PipelineEntry.from_dict(entry))
        except ConfigError as e:
            raise ConfigError(f"{path}: pipelines[{index}]: {e}") from e
    return PipelineFile(path=path, entries=entries)


def find_pipeline_files(root: Path) -> list[Path]:
    """All pipeline files below `root`, sorted by path."""
    return sorted(p for p in root.rglob("*") if p.is_file() and p.name in PIPELINE_FILE_NAMES)
