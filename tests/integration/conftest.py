"""Fixtures for integration tests."""

from pathlib import Path

import pytest

from helpers import make_gltf, png_bytes, write_pipeline


@pytest.fixture
def props_package(tmp_path: Path) -> Path:
    """
    Create a package directory with two pipeline files.

    Structure:
    - pipeline.json           (chairs/*: from_model collider, wood override)
    - chairs/chair.gltf       (quad with a Lift animation)
    - chairs/stool.gltf
    - textures/oak.png
    - lamps/pipeline.json     (character collider, tagged)
    - lamps/lamp.gltf
    """
    root = tmp_path / "props"
    (root / "chairs").mkdir(parents=True)
    (root / "textures").mkdir()
    (root / "lamps").mkdir()

    (root / "chairs" / "chair.gltf").write_bytes(make_gltf(mesh_name="chair", animation=True))
    (root / "chairs" / "stool.gltf").write_bytes(make_gltf(mesh_name="stool"))
    (root / "textures" / "oak.png").write_bytes(png_bytes((32, 32), (120, 80, 40, 255)))
    (root / "lamps" / "lamp.gltf").write_bytes(make_gltf(mesh_name="lamp"))

    write_pipeline(
        root,
        [
            {
                "type": "models",
                "sources": ["chairs/*"],
                "collider": {"type": "from_model"},
                "material_overrides": [
                    {
                        "filter": {"type": "by_name", "name": "Surface"},
                        "material": {"name": "Oak", "base_color": "textures/oak.png"},
                    }
                ],
                "object_components": {"game::Sittable": True},
            }
        ],
    )
    write_pipeline(
        root / "lamps",
        [{"type": "models", "collider": "character", "tags": ["lighting"]}],
    )
    return root
