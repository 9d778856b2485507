"""Tests for asset URL parsing and reference resolution."""

from __future__ import annotations

from pathlib import Path

import pytest

from fab_pipeline.asset_url import AbsAssetUrl, is_absolute, resolve
from fab_pipeline.errors import AssetUrlError


class TestResolve:
    """Tests for resolving references against a base URL."""

    def test_relative_reference_joins_base_directory(self) -> None:
        url = resolve("mesh.glb", "https://host/pkg/objects/main.json")
        assert url.url == "https://host/pkg/objects/mesh.glb"

    def test_parent_segments(self) -> None:
        url = resolve("../mesh.glb", "https://host/pkg/objects/main.json")
        assert url.url == "https://host/pkg/mesh.glb"

    def test_absolute_reference_unchanged(self) -> None:
        url = resolve("https://cdn.example.com/a/b.png", "https://host/pkg/objects/main.json")
        assert url.url == "https://cdn.example.com/a/b.png"

    def test_local_absolute_path_becomes_file_url(self, tmp_path: Path) -> None:
        target = tmp_path / "tex.png"
        url = resolve(str(target), "https://host/pkg/main.json")
        assert url.is_local
        assert url.to_file_path() == target.resolve()

    def test_resolution_is_idempotent(self) -> None:
        """Resolving an already resolved URL should return it unchanged."""
        base = AbsAssetUrl("https://host/pkg/objects/main.json")
        once = resolve("../models/main.glb", base)
        assert resolve(once.url, base) == once
        assert resolve(once.url, "https://elsewhere/x.json") == once

    @pytest.mark.parametrize("reference", ["", "   ", "tex\n.png", "http://[bad"])
    def test_invalid_references(self, reference: str) -> None:
        with pytest.raises(AssetUrlError):
            resolve(reference, "https://host/pkg/main.json")

    def test_climbing_above_root_fails(self) -> None:
        """Relative references may not climb above the base's root."""
        with pytest.raises(AssetUrlError, match="escapes"):
            resolve("../../../x.glb", "https://host/pkg/main.json")

    def test_asset_url_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            resolve("", "https://host/pkg/main.json")


class TestAbsAssetUrl:
    """Tests for AbsAssetUrl path helpers."""

    def test_parse_rejects_relative(self) -> None:
        with pytest.raises(AssetUrlError, match="relative"):
            AbsAssetUrl.parse("models/main.glb")

    def test_directory_helpers(self) -> None:
        url = AbsAssetUrl("https://host/pkg/chairs/chair.glb")
        assert url.file_name == "chair.glb"
        assert url.stem == "chair"
        assert url.extension == "glb"
        assert url.parent().url == "https://host/pkg/chairs/"
        assert url.parent().parent().url == "https://host/pkg/"
        assert url.as_directory().url == "https://host/pkg/chairs/chair.glb/"

    def test_push_treats_url_as_directory(self) -> None:
        """Test push joins below the URL even without a trailing slash."""
        root = AbsAssetUrl("https://host/out")
        assert root.push("chairs/chair.glb").url == "https://host/out/chairs/chair.glb"
        assert root.join("chairs/chair.glb").url == "https://host/chairs/chair.glb"

    def test_relative_to(self) -> None:
        base = AbsAssetUrl("file:///data/in/")
        assert AbsAssetUrl("file:///data/in/a/b.glb").relative_to(base) == "a/b.glb"
        assert AbsAssetUrl("file:///data/other/b.glb").relative_to(base) is None

    def test_from_file_path_marks_directories(self, tmp_path: Path) -> None:
        assert AbsAssetUrl.from_file_path(tmp_path).url.endswith("/")
        file_path = tmp_path / "a.txt"
        file_path.write_text("a")
        assert not AbsAssetUrl.from_file_path(file_path).url.endswith("/")

    def test_is_absolute(self) -> None:
        assert is_absolute("https://x/y")
        assert is_absolute("/tmp/x")
        assert not is_absolute("x/y.png")
