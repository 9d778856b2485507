"""
Object World - A small entity graph with an implicit root.

Crates carry one of these to describe the logical parts of an imported asset,
and composite object documents deserialize into one. Entities are integer ids
holding named component values; the root's children live in the "children"
resource.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import structlog

from fab_pipeline.errors import DeserializationError, StructuralError

logger = structlog.get_logger()

DOCUMENT_VERSION = 1


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_vec(n: int) -> Callable[[Any], bool]:
    def check(value: Any) -> bool:
        return (
            isinstance(value, list)
            and len(value) == n
            and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value)
        )

    return check


def _is_dict(value: Any) -> bool:
    return isinstance(value, dict)


# Known components and their value checks. Unknown components are kept but
# reported; known components with a bad value are dropped and reported.
COMPONENTS: dict[str, Callable[[Any], bool]] = {
    "name": _is_str,
    "object_from_url": _is_str,
    "model_from_url": _is_str,
    "decal": _is_str,
    "collider": _is_dict,
    "collider_type": _is_str,
    "translation": _is_vec(3),
    "rotation": _is_vec(4),
    "scale": _is_vec(3),
    "animations": lambda v: isinstance(v, list) and all(isinstance(a, str) for a in v),
}


def register_component(name: str, check: Callable[[Any], bool] = lambda _: True) -> None:
    """Register a component name so documents carrying it load without warnings."""
    COMPONENTS[name] = check


@dataclass
class DeserializationWarning:
    """A recoverable problem found while loading a document."""

    entity: int | None
    component: str | None
    message: str

    def __str__(self) -> str:
        where = []
        if self.entity is not None:
            where.append(f"entity {self.entity}")
        if self.component:
            where.append(f"component {self.component}")
        prefix = f"{', '.join(where)}: " if where else ""
        return f"{prefix}{self.message}"


@dataclass
class DeserializedWorld:
    """A world plus the non-fatal warnings produced while loading it."""

    world: World
    warnings: list[DeserializationWarning] = field(default_factory=list)

    def log_warnings(self, source: str | None = None) -> None:
        for warning in self.warnings:
            logger.warning("Object deserialization warning", source=source, warning=str(warning))


class World:
    """Entity storage for one crate or one composite object."""

    def __init__(self, name: str = "object") -> None:
        self.name = name
        self.resources: dict[str, Any] = {"children": []}
        self._entities: dict[int, dict[str, Any]] = {}
        self._next_id = 1
        self._frozen = False

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity: int) -> bool:
        return entity in self._entities

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> World:
        """Make the world read-only; it can still be cloned."""
        self._frozen = True
        return self

    def _check_mutable(self) -> None:
        if self._frozen:
            raise StructuralError(f"World '{self.name}' is read-only")

    def _entity(self, entity: int) -> dict[str, Any]:
        try:
            return self._entities[entity]
        except KeyError:
            raise StructuralError(f"No such entity {entity} in world '{self.name}'") from None

    def children(self) -> list[int]:
        """Children of the implicit root."""
        return list(self.resources["children"])

    def root_child(self) -> int:
        """
        The first child of the root, the entity that represents the asset.

        Raises:
            StructuralError: If the root has no children
        """
        children = self.resources["children"]
        if not children:
            raise StructuralError(f"World '{self.name}' has no entity under its root")
        return children[0]

    def spawn(self, components: dict[str, Any] | None = None, under_root: bool = True) -> int:
        self._check_mutable()
        entity = self._next_id
        self._next_id += 1
        self._entities[entity] = dict(components or {})
        if under_root:
            self.resources["children"].append(entity)
        return entity

    def despawn(self, entity: int) -> dict[str, Any]:
        self._check_mutable()
        components = self._entities.pop(entity)
        if entity in self.resources["children"]:
            self.resources["children"].remove(entity)
        return components

    def entities(self) -> list[int]:
        return list(self._entities)

    def add_component(self, entity: int, name: str, value: Any) -> None:
        """Add or replace a component."""
        self._check_mutable()
        self._entity(entity)[name] = value

    def add_components(self, entity: int, components: dict[str, Any]) -> None:
        self._check_mutable()
        self._entity(entity).update(copy.deepcopy(components))

    def remove_component(self, entity: int, name: str) -> Any:
        self._check_mutable()
        return self._entity(entity).pop(name, None)

    def get(self, entity: int, name: str, default: Any = None) -> Any:
        return self._entity(entity).get(name, default)

    def has(self, entity: int, name: str) -> bool:
        return name in self._entity(entity)

    def components(self, entity: int) -> dict[str, Any]:
        return dict(self._entity(entity))

    def query(self, *names: str) -> Iterator[tuple[int, tuple[Any, ...]]]:
        """Iterate entities carrying every named component."""
        for entity, components in list(self._entities.items()):
            if all(name in components for name in names):
                yield entity, tuple(components[name] for name in names)

    def clone_entity(self, entity: int) -> dict[str, Any]:
        """A deep copy of an entity's components, safe to hand to another world."""
        return copy.deepcopy(self._entity(entity))

    def copy(self) -> World:
        clone = World(self.name)
        clone.resources = copy.deepcopy(self.resources)
        clone._entities = copy.deepcopy(self._entities)
        clone._next_id = self._next_id
        return clone

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": DOCUMENT_VERSION,
            "name": self.name,
            "children": self.children(),
            "entities": {str(e): copy.deepcopy(c) for e, c in self._entities.items()},
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    @classmethod
    def from_dict(cls, data: Any) -> DeserializedWorld:
        """
        Build a world from a document.

        Raises:
            DeserializationError: If the document is structurally invalid
        """
        if not isinstance(data, dict):
            raise DeserializationError("Object document must be a JSON object")

        version = data.get("version", DOCUMENT_VERSION)
        if not isinstance(version, int) or version > DOCUMENT_VERSION:
            raise DeserializationError(f"Unsupported object document version: {version!r}")

        raw_entities = data.get("entities")
        if not isinstance(raw_entities, dict):
            raise DeserializationError("Object document is missing its 'entities' mapping")

        world = cls(str(data.get("name", "object")))
        warnings: list[DeserializationWarning] = []

        for raw_id, raw_components in raw_entities.items():
            try:
                entity = int(raw_id)
            except (TypeError, ValueError):
                raise DeserializationError(f"Invalid entity id: {raw_id!r}") from None
            if entity < 1:
                raise DeserializationError(f"Invalid entity id: {raw_id!r}")
            if not isinstance(raw_components, dict):
                raise DeserializationError(f"Entity {entity} components must be an object")

            components: dict[str, Any] = {}
            for name, value in raw_components.items():
                check = COMPONENTS.get(name)
                if check is None:
                    warnings.append(DeserializationWarning(entity, name, "unknown component"))
                    components[name] = value
                elif not check(value):
                    warnings.append(
                        DeserializationWarning(entity, name, f"invalid value {value!r}, dropped")
                    )
                else:
                    components[name] = value
            world._entities[entity] = components
            world._next_id = max(world._next_id, entity + 1)

        children = data.get("children", [])
        if not isinstance(children, list):
            raise DeserializationError("Object document 'children' must be a list")
        for child in children:
            if not isinstance(child, int) or child not in world._entities:
                raise DeserializationError(f"Root child {child!r} is not an entity of the document")
            world.resources["children"].append(child)

        return DeserializedWorld(world=world, warnings=warnings)

    @classmethod
    def from_json(cls, data: str | bytes) -> DeserializedWorld:
        try:
            raw = json.loads(data)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DeserializationError(f"Invalid object document JSON: {e}") from e
        return cls.from_dict(raw)
