"""
Settings - Build and runtime options.

Loaded from a YAML file with environment variable overrides:

    FAB_PIPELINE_HTTP_TIMEOUT=60
    FAB_PIPELINE_MAX_CONCURRENT_JOBS=8
    FAB_PIPELINE_USER_AGENT=my-builder/1.0
    FAB_PIPELINE_PACKAGE_NAME=props
    FAB_PIPELINE_COMMAND_QUEUE_SIZE=256
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping

import yaml

from fab_pipeline.errors import ConfigError

ENV_PREFIX = "FAB_PIPELINE_"


@dataclass
class Settings:
    http_timeout: float = 30.0
    max_concurrent_jobs: int = 4
    user_agent: str | None = None
    package_name: str | None = None  # defaults to the input directory name
    command_queue_size: int = 1024

    @classmethod
    def load(cls, path: Path | None = None, env: Mapping[str, str] | None = None) -> Settings:
        """
        Load settings from a YAML file (if it exists), then apply env overrides.

        Raises:
            ConfigError: If the file or a value is invalid
        """
        data: dict[str, Any] = {}
        if path is not None and path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid settings file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Settings file {path} must contain a mapping")

        env = os.environ if env is None else env
        for f in fields(cls):
            value = env.get(f"{ENV_PREFIX}{f.name.upper()}")
            if value is not None:
                data[f.name] = value

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Settings:
        defaults = cls()
        try:
            settings = cls(
                http_timeout=float(data.get("http_timeout", defaults.http_timeout)),
                max_concurrent_jobs=int(data.get("max_concurrent_jobs", defaults.max_concurrent_jobs)),
                user_agent=data.get("user_agent", defaults.user_agent),
                package_name=data.get("package_name", defaults.package_name),
                command_queue_size=int(data.get("command_queue_size", defaults.command_queue_size)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings value: {e}") from e

        if settings.max_concurrent_jobs < 1:
            raise ConfigError("max_concurrent_jobs must be at least 1")
        if settings.http_timeout <= 0:
            raise ConfigError("http_timeout must be positive")
        if settings.command_queue_size < 1:
            raise ConfigError("command_queue_size must be at least 1")
        return settings
