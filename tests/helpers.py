"""Test helpers: glTF documents built in memory and build job contexts."""

from __future__ import annotations

import base64
import io
import json
from pathlib import Path
from typing import Any

import numpy as np
from PIL import Image

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.pipeline.context import PipelineCtx, ProcessCtx

# Unit quad in the XY plane, two triangles.
QUAD_POSITIONS = np.array(
    [[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [1.0, 1.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float32
)
QUAD_INDICES = np.array([0, 1, 2, 0, 2, 3], dtype=np.uint32)


def png_bytes(size: tuple[int, int] = (4, 4), color: tuple[int, ...] = (255, 0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_gltf(
    positions: np.ndarray = QUAD_POSITIONS,
    indices: np.ndarray | None = QUAD_INDICES,
    *,
    mesh_name: str = "quad",
    material_name: str | None = "Surface",
    texture_uri: str | None = None,
    translation: list[float] | None = None,
    animation: bool = False,
) -> bytes:
    """A minimal glTF 2.0 document with one mesh and an embedded buffer."""
    positions = np.asarray(positions, dtype=np.float32)
    blobs = [positions.tobytes()]
    accessors: list[dict[str, Any]] = [
        {
            "bufferView": 0,
            "componentType": 5126,
            "count": len(positions),
            "type": "VEC3",
            "min": positions.min(axis=0).tolist() if len(positions) else [0, 0, 0],
            "max": positions.max(axis=0).tolist() if len(positions) else [0, 0, 0],
        }
    ]
    primitive: dict[str, Any] = {"attributes": {"POSITION": 0}}
    if indices is not None:
        blobs.append(np.asarray(indices, dtype=np.uint32).tobytes())
        accessors.append(
            {"bufferView": 1, "componentType": 5125, "count": len(indices), "type": "SCALAR"}
        )
        primitive["indices"] = 1

    document: dict[str, Any] = {
        "asset": {"version": "2.0"},
        "scene": 0,
        "scenes": [{"nodes": [0]}],
        "nodes": [{"name": mesh_name, "mesh": 0}],
        "meshes": [{"name": mesh_name, "primitives": [primitive]}],
    }
    if translation is not None:
        document["nodes"][0]["translation"] = translation

    if material_name is not None:
        material: dict[str, Any] = {
            "name": material_name,
            "pbrMetallicRoughness": {"baseColorFactor": [0.8, 0.8, 0.8, 1.0]},
        }
        if texture_uri is not None:
            document["images"] = [{"uri": texture_uri}]
            document["textures"] = [{"source": 0}]
            material["pbrMetallicRoughness"]["baseColorTexture"] = {"index": 0}
        document["materials"] = [material]
        primitive["material"] = 0

    if animation:
        times = np.array([0.0, 1.0], dtype=np.float32)
        values = np.array([[0.0, 0.0, 0.0], [0.0, 0.0, 1.0]], dtype=np.float32)
        blobs += [times.tobytes(), values.tobytes()]
        view = len(blobs) - 2
        accessors += [
            {"bufferView": view, "componentType": 5126, "count": 2, "type": "SCALAR"},
            {"bufferView": view + 1, "componentType": 5126, "count": 2, "type": "VEC3"},
        ]
        document["animations"] = [
            {
                "name": "Lift",
                "samplers": [{"input": len(accessors) - 2, "output": len(accessors) - 1}],
                "channels": [{"sampler": 0, "target": {"node": 0, "path": "translation"}}],
            }
        ]

    views, offset = [], 0
    for blob in blobs:
        views.append({"buffer": 0, "byteOffset": offset, "byteLength": len(blob)})
        offset += len(blob)
    data = b"".join(blobs)
    document["bufferViews"] = views
    document["accessors"] = accessors
    document["buffers"] = [
        {
            "byteLength": len(data),
            "uri": "data:application/octet-stream;base64," + base64.b64encode(data).decode(),
        }
    ]
    return json.dumps(document).encode()


def write_pipeline(directory: Path, pipelines: list[dict[str, Any]]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "pipeline.json"
    path.write_text(json.dumps({"pipelines": pipelines}))
    return path


def make_ctx(
    assets: AssetCache,
    in_dir: Path,
    out_dir: Path,
    pipeline_file: Path | None = None,
    package_name: str = "props",
    **kwargs: Any,
) -> PipelineCtx:
    files = [AbsAssetUrl.from_file_path(p) for p in sorted(in_dir.rglob("*")) if p.is_file()]
    out_dir.mkdir(parents=True, exist_ok=True)
    process_ctx = ProcessCtx(
        assets=assets,
        files=files,
        in_root=AbsAssetUrl.from_file_path(in_dir),
        out_root=AbsAssetUrl.from_file_path(out_dir),
        package_name=package_name,
    )
    pipeline_file = pipeline_file or in_dir / "pipeline.json"
    return PipelineCtx(
        process_ctx=process_ctx,
        pipeline_file=AbsAssetUrl.from_file_path(pipeline_file),
        **kwargs,
    )
