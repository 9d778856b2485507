"""
Tests for the glTF reader.

Tests focus on:
- Meshes, materials and node transforms loaded through trimesh
- One crate mesh per primitive
- External buffers and images fetched ahead of loading
- Skins and animation channels read from accessors
"""

from __future__ import annotations

import base64
import json
import struct
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.errors import AssetError
from fab_pipeline.model.gltf import loader_document, node_matrix, read_gltf, split_glb

from helpers import make_gltf, png_bytes

URL = AbsAssetUrl("file:///models/quad.gltf")


async def no_textures(reference: str) -> None:
    return None


def to_glb(gltf: bytes) -> bytes:
    """Repack an embedded-buffer glTF as GLB with its buffer in the BIN chunk."""
    document = json.loads(gltf)
    data = base64.b64decode(document["buffers"][0].pop("uri").split(",", 1)[1])
    data += b"\x00" * (-len(data) % 4)
    json_chunk = json.dumps(document).encode()
    json_chunk += b" " * (-len(json_chunk) % 4)
    body = (
        struct.pack("<II", len(json_chunk), 0x4E4F534A)
        + json_chunk
        + struct.pack("<II", len(data), 0x004E4942)
        + data
    )
    return b"glTF" + struct.pack("<II", 2, 12 + len(body)) + body


def with_texcoords(gltf: bytes, uv: np.ndarray) -> dict[str, Any]:
    """Append a TEXCOORD_0 accessor to the first primitive of an embedded-buffer glTF."""
    document = json.loads(gltf)
    buffer = document["buffers"][0]
    data = base64.b64decode(buffer["uri"].split(",", 1)[1])
    blob = np.asarray(uv, dtype=np.float32).tobytes()
    document["bufferViews"].append(
        {"buffer": 0, "byteOffset": len(data), "byteLength": len(blob)}
    )
    document["accessors"].append(
        {
            "bufferView": len(document["bufferViews"]) - 1,
            "componentType": 5126,
            "count": len(uv),
            "type": "VEC2",
        }
    )
    document["meshes"][0]["primitives"][0]["attributes"]["TEXCOORD_0"] = (
        len(document["accessors"]) - 1
    )
    data += blob
    buffer["byteLength"] = len(data)
    buffer["uri"] = "data:application/octet-stream;base64," + base64.b64encode(data).decode()
    return document


class TestReadGltf:
    """Reading glTF and GLB data into crates."""

    @pytest.mark.asyncio
    async def test_reads_mesh_and_material(self) -> None:
        async with AssetCache() as assets:
            crate = await read_gltf(make_gltf(), URL, assets, no_textures)

        assert list(crate.meshes) == ["quad#0"]
        assert crate.triangle_count == 2
        assert crate.materials["material0"].name == "Surface"
        assert crate.materials["material0"].base_color_factor == pytest.approx((0.8, 0.8, 0.8, 1.0))
        assert crate.primitives[0].material == "material0"

    @pytest.mark.asyncio
    async def test_each_primitive_becomes_a_mesh(self) -> None:
        """Primitives sharing a mesh stay separate and share their material."""
        document = json.loads(make_gltf())
        primitives = document["meshes"][0]["primitives"]
        primitives.append(dict(primitives[0]))

        async with AssetCache() as assets:
            crate = await read_gltf(json.dumps(document).encode(), URL, assets, no_textures)

        assert sorted(crate.meshes) == ["quad#0", "quad#1"]
        assert crate.triangle_count == 4
        assert list(crate.materials) == ["material0"]
        assert {p.material for p in crate.primitives} == {"material0"}

    @pytest.mark.asyncio
    async def test_node_transform_is_baked(self) -> None:
        """Test node transforms end up in the vertex positions."""
        async with AssetCache() as assets:
            crate = await read_gltf(make_gltf(translation=[0.0, 0.0, 5.0]), URL, assets, no_textures)

        low, high = crate.aabb()
        assert low[2] == pytest.approx(5.0)
        assert high[2] == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_document_without_scenes(self) -> None:
        """Root nodes are loaded when the document declares no scene."""
        document = json.loads(make_gltf(translation=[1.0, 0.0, 0.0]))
        del document["scene"]
        del document["scenes"]

        async with AssetCache() as assets:
            crate = await read_gltf(json.dumps(document).encode(), URL, assets, no_textures)

        assert crate.triangle_count == 2
        assert crate.aabb()[0][0] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_texcoords_use_bottom_left_origin(self) -> None:
        uv = np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 0.25], [0.0, 0.25]], dtype=np.float32)
        document = with_texcoords(make_gltf(), uv)

        async with AssetCache() as assets:
            crate = await read_gltf(json.dumps(document).encode(), URL, assets, no_textures)

        texcoords = crate.meshes["quad#0"].texcoords
        assert len(texcoords) == 1
        assert texcoords[0][:, 1].tolist() == pytest.approx([1.0, 1.0, 0.75, 0.75])

    @pytest.mark.asyncio
    async def test_reads_glb(self) -> None:
        async with AssetCache() as assets:
            crate = await read_gltf(to_glb(make_gltf()), URL, assets, no_textures)

        assert crate.triangle_count == 2

    @pytest.mark.asyncio
    async def test_reads_animations(self) -> None:
        async with AssetCache() as assets:
            crate = await read_gltf(make_gltf(animation=True), URL, assets, no_textures)

        clip = crate.animations["Lift"]
        assert clip.duration == pytest.approx(1.0)
        assert clip.channels[0].target == "quad"
        assert clip.channels[0].path == "translation"

    @pytest.mark.asyncio
    async def test_texture_goes_through_resolver(self) -> None:
        """External images are handed to the texture resolver verbatim."""
        requested: list[str] = []

        async def resolver(reference: str) -> bytes:
            requested.append(reference)
            return png_bytes((2, 2))

        async with AssetCache() as assets:
            crate = await read_gltf(
                make_gltf(texture_uri="C:\\art\\wood.png"), URL, assets, resolver
            )

        assert requested == ["C:\\art\\wood.png"]
        assert crate.materials["material0"].base_color.size == (2, 2)
        assert crate.materials["material0"].base_color.mode == "RGBA"

    @pytest.mark.asyncio
    async def test_unresolved_texture_leaves_slot_empty(self) -> None:
        async with AssetCache() as assets:
            crate = await read_gltf(
                make_gltf(texture_uri="missing.png"), URL, assets, no_textures
            )

        assert crate.materials["material0"].base_color is None
        assert crate.triangle_count == 2

    @pytest.mark.asyncio
    async def test_embedded_image(self) -> None:
        uri = "data:image/png;base64," + base64.b64encode(png_bytes((3, 3))).decode()
        async with AssetCache() as assets:
            crate = await read_gltf(make_gltf(texture_uri=uri), URL, assets, no_textures)

        assert crate.materials["material0"].base_color.size == (3, 3)

    @pytest.mark.asyncio
    async def test_external_buffer_is_required(self, tmp_path: Path) -> None:
        """A missing external buffer fails the whole file."""
        document = json.loads(make_gltf())
        document["buffers"][0]["uri"] = "missing.bin"
        url = AbsAssetUrl.from_file_path(tmp_path / "quad.gltf")

        async with AssetCache() as assets:
            with pytest.raises(AssetError, match="Failed to read"):
                await read_gltf(json.dumps(document).encode(), url, assets, no_textures)

    @pytest.mark.asyncio
    async def test_external_buffer_next_to_document(self, tmp_path: Path) -> None:
        document = json.loads(make_gltf())
        data = base64.b64decode(document["buffers"][0]["uri"].split(",", 1)[1])
        (tmp_path / "quad.bin").write_bytes(data)
        document["buffers"][0]["uri"] = "quad.bin"
        url = AbsAssetUrl.from_file_path(tmp_path / "quad.gltf")

        async with AssetCache() as assets:
            crate = await read_gltf(json.dumps(document).encode(), url, assets, no_textures)

        assert crate.triangle_count == 2

    @pytest.mark.asyncio
    async def test_malformed_document(self) -> None:
        document = json.loads(make_gltf())
        document["accessors"][0]["componentType"] = 1
        async with AssetCache() as assets:
            with pytest.raises(AssetError, match="Malformed glTF"):
                await read_gltf(json.dumps(document).encode(), URL, assets, no_textures)

    @pytest.mark.asyncio
    async def test_not_json(self) -> None:
        async with AssetCache() as assets:
            with pytest.raises(AssetError):
                await read_gltf(b"\x00\x01garbage", URL, assets, no_textures)


class TestLoaderDocument:
    """The rewritten document handed to trimesh."""

    def test_buffers_and_images_move_into_archive(self) -> None:
        document = json.loads(make_gltf(texture_uri="textures/wood.png"))

        rewritten, archive = loader_document(document, [b"data"], {0: b"png"})

        assert rewritten["buffers"][0]["uri"] == "buffer0.bin"
        assert rewritten["images"][0]["uri"] == "image0"
        assert archive == {"buffer0.bin": b"data", "image0": b"png"}
        assert document["images"][0]["uri"] == "textures/wood.png"

    def test_primitives_get_child_nodes(self) -> None:
        document = json.loads(make_gltf())
        document["meshes"][0]["primitives"].append(dict(document["meshes"][0]["primitives"][0]))

        rewritten, _ = loader_document(document, [b""], {})

        assert [m["name"] for m in rewritten["meshes"]] == ["0#0", "0#1"]
        assert "mesh" not in rewritten["nodes"][0]
        assert [rewritten["nodes"][c]["name"] for c in rewritten["nodes"][0]["children"]] == [
            "0#0",
            "0#1",
        ]


class TestGlbContainer:
    """Tests for GLB chunk parsing."""

    def test_split(self) -> None:
        document, binary = split_glb(to_glb(make_gltf()))
        assert document["asset"]["version"] == "2.0"
        assert binary is not None and len(binary) >= 4 * 3 * 4

    def test_truncated(self) -> None:
        with pytest.raises(AssetError):
            split_glb(b"glTF\x02\x00\x00\x00")


class TestNodeMatrix:
    """Local node transforms."""

    def test_trs(self) -> None:
        m = node_matrix({"translation": [1, 2, 3], "scale": [2, 2, 2]})
        assert m[:3, 3].tolist() == [1, 2, 3]
        assert np.diag(m)[:3].tolist() == [2, 2, 2]

    def test_column_major_matrix(self) -> None:
        values = np.eye(4)
        values[3, :3] = [4, 5, 6]  # column-major translation
        m = node_matrix({"matrix": values.reshape(-1).tolist()})
        assert m[:3, 3].tolist() == [4, 5, 6]
