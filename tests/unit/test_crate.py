"""
Tests for model crates.

Tests focus on:
- Finalize (dedup, pruning, read-only geometry)
- Material overrides and texture capping
- Collider synthesis
- Transforms and their configuration
"""

from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import ConfigError, StructuralError
from fab_pipeline.model.colliders import (
    DEFAULT_CHARACTER_HEIGHT,
    DEFAULT_CHARACTER_RADIUS,
    ColliderShape,
    ColliderType,
    character_dimensions,
    resolve_collider_def,
)
from fab_pipeline.model.crate import COLLIDER_PATH, DEFAULT_MATERIAL, ModelCrate
from fab_pipeline.model.filters import MaterialFilter, parse_texture_size
from fab_pipeline.model.mesh import Mesh, PbrMaterial
from fab_pipeline.model.transforms import (
    Center,
    Rotate,
    Scale,
    ScaleAabb,
    Translate,
    parse_transform,
)

from helpers import QUAD_INDICES, QUAD_POSITIONS


def quad_crate(name: str = "quad") -> ModelCrate:
    crate = ModelCrate(name=name)
    crate.add_material("wood", PbrMaterial(name="Wood"))
    crate.add_mesh("quad", Mesh(positions=QUAD_POSITIONS, indices=QUAD_INDICES), "wood")
    crate.create_object()
    return crate


class TestModelCrate:
    """Tests for ModelCrate editing and finalization."""

    def test_add_mesh_uses_default_material(self) -> None:
        crate = ModelCrate()
        crate.add_mesh("m", Mesh(positions=QUAD_POSITIONS, indices=QUAD_INDICES))
        assert crate.primitives[0].material == DEFAULT_MATERIAL
        assert DEFAULT_MATERIAL in crate.materials

    def test_add_mesh_makes_ids_unique(self) -> None:
        crate = ModelCrate()
        first = crate.add_mesh("m", Mesh(positions=QUAD_POSITIONS))
        second = crate.add_mesh("m", Mesh(positions=QUAD_POSITIONS))
        assert first == "m"
        assert second == "m.1"

    def test_aabb_and_triangle_count(self) -> None:
        crate = quad_crate()
        low, high = crate.aabb()
        assert low.tolist() == [0.0, 0.0, 0.0]
        assert high.tolist() == [1.0, 1.0, 0.0]
        assert crate.triangle_count == 2

    def test_finalize_dedups_and_prunes(self) -> None:
        """Test finalize merges identical materials and drops unused ones."""
        crate = ModelCrate()
        crate.add_material("a", PbrMaterial(name="Same"))
        crate.add_material("b", PbrMaterial(name="Same"))
        crate.add_material("unused", PbrMaterial(name="Unused"))
        crate.add_mesh("one", Mesh(positions=QUAD_POSITIONS, indices=QUAD_INDICES), "a")
        crate.add_mesh("two", Mesh(positions=QUAD_POSITIONS, indices=QUAD_INDICES), "b")

        removed = crate.finalize_model()

        assert removed == {"meshes": 1, "materials": 2}
        assert list(crate.meshes) == ["one"]
        assert list(crate.materials) == ["a"]
        assert len(crate.primitives) == 2
        assert crate.finalized

    def test_geometry_is_read_only_after_finalize(self) -> None:
        """Editing a finalized crate should raise StructuralError."""
        crate = quad_crate()
        crate.finalize_model()
        with pytest.raises(StructuralError, match="finalized"):
            crate.transform(np.eye(4))
        with pytest.raises(StructuralError):
            crate.add_mesh("late", Mesh(positions=QUAD_POSITIONS))

    def test_override_material(self) -> None:
        crate = quad_crate()
        crate.add_material("metal", PbrMaterial(name="Metal"))

        matched = crate.override_material(
            MaterialFilter(type="by_name", name="Wood"), PbrMaterial(name="Oak", roughness=0.3)
        )

        assert matched == 1
        assert crate.materials["wood"].name == "Oak"
        assert crate.materials["metal"].name == "Metal"

    def test_cap_texture_sizes(self) -> None:
        crate = quad_crate()
        crate.materials["wood"].base_color = Image.new("RGBA", (1024, 512))
        crate.materials["wood"].normalmap = Image.new("RGBA", (128, 128))

        assert crate.cap_texture_sizes(256) == 1
        assert crate.materials["wood"].base_color.size == (256, 128)
        assert crate.materials["wood"].normalmap.size == (128, 128)

    def test_merge_prefixes_and_transforms(self) -> None:
        """Test merged meshes get prefixed ids and the merge transform."""
        target = ModelCrate()
        part = quad_crate()
        offset = np.eye(4)
        offset[:3, 3] = [10.0, 0.0, 0.0]

        target.merge(part, prefix="leg", matrix=offset)

        assert list(target.meshes) == ["leg/quad"]
        assert "leg/wood" in target.materials
        assert target.aabb()[0].tolist() == [10.0, 0.0, 0.0]
        assert part.aabb()[0].tolist() == [0.0, 0.0, 0.0]


class TestColliders:
    """Tests for collider synthesis."""

    def test_from_model(self) -> None:
        crate = quad_crate()
        crate.finalize_model()
        shape = crate.create_collider_from_model()

        assert shape.triangle_count == 2
        assert len(shape.vertices) == 4
        root = crate.object_world.root_child()
        assert crate.object_world.get(root, "collider") == {
            "type": "concave_mesh",
            "url": COLLIDER_PATH,
        }

    def test_from_model_without_triangles_fails(self) -> None:
        crate = ModelCrate()
        crate.create_object()
        with pytest.raises(StructuralError, match="no usable triangles"):
            crate.create_collider_from_model()

    def test_degenerate_triangles_are_unusable(self) -> None:
        """Zero-area triangles cannot form a collider."""
        flat = np.array([[[0, 0, 0], [1, 1, 1], [2, 2, 2]]], dtype=np.float32)
        assert ColliderShape.from_triangles(flat) is None

    def test_character_dimensions_from_bounds(self) -> None:
        """Test radius and height come from the model bounds when unspecified."""
        bounds = (np.array([-0.5, -0.25, 0.0]), np.array([0.5, 0.25, 1.8]))
        radius, height = character_dimensions(bounds, None, None)
        assert radius == pytest.approx(0.5)
        assert height == pytest.approx(1.8)

    def test_character_dimensions_defaults(self) -> None:
        assert character_dimensions(None, None, None) == (
            DEFAULT_CHARACTER_RADIUS,
            DEFAULT_CHARACTER_HEIGHT,
        )
        flat = (np.zeros(3), np.array([1.0, 1.0, 0.0]))
        assert character_dimensions(flat, None, None)[1] == DEFAULT_CHARACTER_HEIGHT
        assert character_dimensions(flat, 0.2, 3.0) == (0.2, 3.0)

    def test_character_collider_component(self) -> None:
        crate = quad_crate()
        crate.create_character_collider(None, 2.5)
        collider = crate.object_world.get(crate.object_world.root_child(), "collider")
        assert collider["type"] == "character"
        assert collider["height"] == 2.5
        assert collider["radius"] == pytest.approx(0.5)

    def test_collider_type_parse(self) -> None:
        assert ColliderType.parse("Dynamic") is ColliderType.DYNAMIC
        assert ColliderType.parse(None) is ColliderType.STATIC
        with pytest.raises(ConfigError):
            ColliderType.parse("bouncy")

    def test_resolve_collider_def(self) -> None:
        base = AbsAssetUrl("https://host/pkg/")
        resolved = resolve_collider_def({"type": "concave_mesh", "url": "colliders/main.json"}, base)
        assert resolved["url"] == "https://host/pkg/colliders/main.json"
        assert resolve_collider_def({"type": "none"}, base) == {"type": "none"}


class TestTransforms:
    """Tests for crate transforms."""

    def test_translate(self) -> None:
        crate = quad_crate()
        Translate((1.0, 2.0, 3.0)).apply(crate)
        assert crate.aabb()[0].tolist() == [1.0, 2.0, 3.0]

    def test_scale_aabb(self) -> None:
        crate = quad_crate()
        Scale(4.0).apply(crate)
        ScaleAabb(1.0).apply(crate)
        low, high = crate.aabb()
        assert float((high - low).max()) == pytest.approx(1.0)

    def test_center(self) -> None:
        crate = quad_crate()
        Center().apply(crate)
        low, high = crate.aabb()
        assert ((low + high) / 2).tolist() == pytest.approx([0.0, 0.0, 0.0])

    def test_rotate_z(self) -> None:
        crate = quad_crate()
        Rotate("z", 90.0).apply(crate)
        low, high = crate.aabb()
        assert low.tolist() == pytest.approx([-1.0, 0.0, 0.0], abs=1e-6)
        assert high.tolist() == pytest.approx([0.0, 1.0, 0.0], abs=1e-6)

    def test_parse(self) -> None:
        assert parse_transform({"type": "translate", "translation": [1, 2, 3]}) == Translate(
            (1.0, 2.0, 3.0)
        )
        assert parse_transform({"type": "rotate_x", "deg": 45}) == Rotate("x", 45.0)
        assert parse_transform({"type": "scale", "scale": 2}).to_dict() == {
            "type": "scale",
            "scale": 2.0,
        }

    @pytest.mark.parametrize(
        "data",
        [
            "scale",
            {"scale": 2},
            {"type": "shear"},
            {"type": "scale", "scale": "big"},
            {"type": "translate", "translation": [1, 2]},
        ],
    )
    def test_parse_errors(self, data: object) -> None:
        with pytest.raises(ConfigError):
            parse_transform(data)


class TestFilters:
    """Tests for material filters."""

    def test_by_regex_matches_name_or_id(self) -> None:
        material_filter = MaterialFilter.from_dict({"type": "by_regex", "pattern": "^Wo"})
        assert material_filter.matches("material0", PbrMaterial(name="Wood"))
        assert material_filter.matches("Wool", PbrMaterial(name="Other"))
        assert not material_filter.matches("material1", PbrMaterial(name="Metal"))

    @pytest.mark.parametrize(
        "data",
        [
            "all",
            {"type": "by_name"},
            {"type": "by_regex", "pattern": "("},
            {"type": "by_color"},
        ],
    )
    def test_malformed_filters(self, data: object) -> None:
        with pytest.raises(ConfigError):
            MaterialFilter.from_dict(data)

    def test_texture_sizes(self) -> None:
        assert parse_texture_size("x512") == 512
        assert parse_texture_size(300) == 300
        assert parse_texture_size({"custom": 100}) == 100
        assert parse_texture_size(None) is None
        for bad in ("x3", 0, True, {"size": 1}):
            with pytest.raises(ConfigError):
                parse_texture_size(bad)
