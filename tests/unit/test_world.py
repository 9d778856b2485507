"""Tests for the object world and object document (de)serialization."""

from __future__ import annotations

import json

import pytest
from structlog.testing import capture_logs

from fab_pipeline.errors import DeserializationError, StructuralError
from fab_pipeline.world import World, register_component


class TestWorld:
    """Tests for World entities and components."""

    def test_spawn_under_root(self) -> None:
        world = World()
        first = world.spawn({"name": "chair"})
        world.spawn({"name": "detached"}, under_root=False)

        assert world.children() == [first]
        assert world.root_child() == first
        assert len(world) == 2

    def test_root_child_required(self) -> None:
        with pytest.raises(StructuralError, match="no entity under its root"):
            World("empty").root_child()

    def test_components(self) -> None:
        world = World()
        entity = world.spawn()
        world.add_component(entity, "name", "a")
        world.add_components(entity, {"translation": [1.0, 2.0, 3.0]})

        assert world.get(entity, "name") == "a"
        assert world.has(entity, "translation")
        assert [e for e, _ in world.query("name", "translation")] == [entity]
        assert world.remove_component(entity, "name") == "a"
        assert not world.has(entity, "name")

    def test_add_components_copies_values(self) -> None:
        world = World()
        entity = world.spawn()
        components = {"collider": {"type": "none"}}
        world.add_components(entity, components)
        components["collider"]["type"] = "changed"

        assert world.get(entity, "collider") == {"type": "none"}

    def test_frozen_world_is_read_only(self) -> None:
        """Mutating a frozen world should raise StructuralError."""
        world = World()
        entity = world.spawn({"name": "a"})
        world.freeze()

        with pytest.raises(StructuralError, match="read-only"):
            world.add_component(entity, "name", "b")
        with pytest.raises(StructuralError):
            world.spawn()

        clone = world.copy()
        clone.add_component(entity, "name", "b")
        assert world.get(entity, "name") == "a"

    def test_unknown_entity(self) -> None:
        with pytest.raises(StructuralError, match="No such entity"):
            World().get(42, "name")


class TestObjectDocument:
    """Tests for object document serialization."""

    def test_round_trip(self) -> None:
        world = World("chair")
        root = world.spawn({"name": "chair", "model_from_url": "models/main.glb"})
        world.spawn({"translation": [0.0, 1.0, 0.0]}, under_root=False)

        loaded = World.from_json(world.to_json())

        assert loaded.warnings == []
        assert loaded.world.name == "chair"
        assert loaded.world.children() == [root]
        assert loaded.world.to_dict() == world.to_dict()

    def test_unknown_component_kept_with_warning(self) -> None:
        """Unregistered components are kept and reported as warnings."""
        document = {"version": 1, "children": [1], "entities": {"1": {"health": 100}}}
        loaded = World.from_dict(document)

        assert loaded.world.get(1, "health") == 100
        assert len(loaded.warnings) == 1
        assert "unknown component" in str(loaded.warnings[0])

    def test_ill_typed_component_dropped_with_warning(self) -> None:
        """Registered components with bad values are dropped with a warning."""
        document = {
            "version": 1,
            "children": [1],
            "entities": {"1": {"name": "ok", "translation": "up"}},
        }
        loaded = World.from_dict(document)

        assert not loaded.world.has(1, "translation")
        assert loaded.world.get(1, "name") == "ok"
        assert "entity 1, component translation" in str(loaded.warnings[0])

    def test_registered_component_loads_quietly(self) -> None:
        register_component("spawn_point", lambda v: isinstance(v, bool))
        loaded = World.from_dict(
            {"version": 1, "children": [1], "entities": {"1": {"spawn_point": True}}}
        )
        assert loaded.warnings == []

    def test_log_warnings(self) -> None:
        loaded = World.from_dict(
            {"version": 1, "children": [1], "entities": {"1": {"mystery": 1}}}
        )
        with capture_logs() as logs:
            loaded.log_warnings("https://host/pkg/objects/main.json")

        assert [log["event"] for log in logs] == ["Object deserialization warning"]
        assert logs[0]["log_level"] == "warning"

    @pytest.mark.parametrize(
        "document",
        [
            [],
            {"version": 99, "entities": {}},
            {"version": 1},
            {"version": 1, "entities": {"x": {}}},
            {"version": 1, "entities": {"0": {}}},
            {"version": 1, "entities": {"1": []}},
            {"version": 1, "children": [2], "entities": {"1": {}}},
            {"version": 1, "children": 1, "entities": {"1": {}}},
        ],
    )
    def test_structural_problems_are_fatal(self, document: object) -> None:
        with pytest.raises(DeserializationError):
            World.from_dict(document)

    def test_invalid_json(self) -> None:
        with pytest.raises(DeserializationError, match="JSON"):
            World.from_json(b"{not json")

    def test_spawned_ids_continue_after_loaded_ones(self) -> None:
        """Test new entity ids never collide with deserialized ones."""
        loaded = World.from_json(
            json.dumps({"version": 1, "children": [5], "entities": {"5": {"name": "a"}}})
        )
        assert loaded.world.spawn() == 6
