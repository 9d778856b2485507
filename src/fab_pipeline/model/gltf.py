"""
glTF 2.0 reader - Populates a crate from .gltf / .glb data.

Geometry, the node hierarchy and material textures are loaded with trimesh.
External buffers are fetched through the asset cache beforehand and are
required; external images go through a texture resolver and may come back
empty. Both are handed to trimesh from memory. Skins and animation channels,
which trimesh does not load, are read from the document's accessors.

Node transforms are baked into mesh vertices (except for skinned meshes, whose
node transform glTF ignores), so crate geometry is in model space.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import io
import json
from typing import Any, Awaitable, Callable

import numpy as np
import structlog
import trimesh
from PIL import Image
from trimesh import transformations
from trimesh.resolvers import ZipResolver
from trimesh.visual.material import PBRMaterial

from fab_pipeline.asset_cache import AssetCache
from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.download import BytesFromUrl
from fab_pipeline.errors import AssetError
from fab_pipeline.model.crate import ModelCrate
from fab_pipeline.model.mesh import AnimationChannel, AnimationClip, Mesh, PbrMaterial, Skeleton

logger = structlog.get_logger()

# Maps an image reference to the encoded image file, or None when unavailable.
TextureResolver = Callable[[str], Awaitable[bytes | None]]

GLB_MAGIC = b"glTF"
CHUNK_JSON = 0x4E4F534A
CHUNK_BIN = 0x004E4942

COMPONENT_TYPES: dict[int, str] = {
    5120: "<i1",
    5121: "<u1",
    5122: "<i2",
    5123: "<u2",
    5125: "<u4",
    5126: "<f4",
}
TYPE_WIDTHS = {"SCALAR": 1, "VEC2": 2, "VEC3": 3, "VEC4": 4, "MAT2": 4, "MAT3": 9, "MAT4": 16}

# Vertex attributes trimesh drops; they ride along as custom "_NAME" attributes.
KEPT_ATTRIBUTES = ("TANGENT", "JOINTS_0", "WEIGHTS_0")

TEXTURE_INFO = {
    "base_color": ("pbrMetallicRoughness", "baseColorTexture"),
    "normalmap": (None, "normalTexture"),
    "metallic_roughness": ("pbrMetallicRoughness", "metallicRoughnessTexture"),
}
TRIMESH_TEXTURES = {
    "base_color": "baseColorTexture",
    "normalmap": "normalTexture",
    "metallic_roughness": "metallicRoughnessTexture",
}


def is_glb(data: bytes) -> bool:
    return data[:4] == GLB_MAGIC


def split_glb(data: bytes) -> tuple[dict[str, Any], bytes | None]:
    """
    Split a GLB container into its JSON document and binary chunk.

    Raises:
        AssetError: If the container is malformed
    """
    if len(data) < 20 or not is_glb(data):
        raise AssetError("Not a GLB container")
    version, length = (int(v) for v in np.frombuffer(data, dtype="<u4", count=2, offset=4))
    if version != 2:
        raise AssetError(f"Unsupported GLB version {version}")

    document: dict[str, Any] | None = None
    binary: bytes | None = None
    offset = 12
    end = min(length, len(data))
    while offset + 8 <= end:
        chunk_length, chunk_type = (
            int(v) for v in np.frombuffer(data, dtype="<u4", count=2, offset=offset)
        )
        chunk = data[offset + 8 : offset + 8 + chunk_length]
        if chunk_type == CHUNK_JSON:
            document = parse_document(chunk)
        elif chunk_type == CHUNK_BIN and binary is None:
            binary = chunk
        offset += 8 + chunk_length

    if document is None:
        raise AssetError("GLB container has no JSON chunk")
    return document, binary


def parse_document(data: bytes) -> dict[str, Any]:
    try:
        document = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise AssetError(f"Invalid glTF JSON: {e}") from e
    if not isinstance(document, dict):
        raise AssetError("glTF document must be a JSON object")
    return document


def _decode_data_uri(uri: str) -> bytes:
    header, _, payload = uri.partition(",")
    if ";base64" not in header:
        raise AssetError(f"Unsupported data uri encoding: {header}")
    try:
        return base64.b64decode(payload)
    except ValueError as e:
        raise AssetError(f"Invalid base64 data uri: {e}") from e


def _is_external(uri: str | None) -> bool:
    return uri is not None and not uri.startswith("data:")


def node_matrix(node: dict[str, Any]) -> np.ndarray:
    """Local transform of a glTF node (column-major `matrix` or T * R * S)."""
    if "matrix" in node:
        return np.asarray(node["matrix"], dtype=np.float64).reshape(4, 4).T

    x, y, z, w = node.get("rotation", [0.0, 0.0, 0.0, 1.0])
    return (
        transformations.translation_matrix(node.get("translation", [0.0, 0.0, 0.0]))
        @ transformations.quaternion_matrix([w, x, y, z])
        @ np.diag([*node.get("scale", [1.0, 1.0, 1.0]), 1.0])
    )


class Accessors:
    """Typed reads of a document's accessors, for the data trimesh leaves out."""

    def __init__(self, document: dict[str, Any], buffers: list[bytes]) -> None:
        self.document = document
        self.buffers = buffers

    def read(self, index: int) -> np.ndarray:
        """Read an accessor as a (count, width) array (normalized ints become floats)."""
        accessor = self.document["accessors"][index]
        dtype = np.dtype(COMPONENT_TYPES[accessor["componentType"]])
        width = TYPE_WIDTHS[accessor["type"]]
        count = accessor["count"]

        if "bufferView" not in accessor:
            values = np.zeros((count, width), dtype=dtype)
        else:
            view = self.document["bufferViews"][accessor["bufferView"]]
            start = view.get("byteOffset", 0)
            data = self.buffers[view["buffer"]][start : start + view["byteLength"]]
            offset = accessor.get("byteOffset", 0)
            item_size = dtype.itemsize * width
            stride = view.get("byteStride") or item_size
            if count and offset + stride * (count - 1) + item_size > len(data):
                raise AssetError(f"Accessor {index} reads past the end of its buffer view")
            values = np.ndarray(
                shape=(count, width),
                dtype=dtype,
                buffer=data,
                offset=offset,
                strides=(stride, dtype.itemsize),
            ).copy()
        return self.normalized(values, index)

    def normalized(self, values: np.ndarray, index: int) -> np.ndarray:
        values = np.asarray(values)
        if self.document["accessors"][index].get("normalized") and values.dtype.kind in "iu":
            return np.maximum(values.astype(np.float32) / np.iinfo(values.dtype).max, -1.0)
        return values


async def _fetch_buffers(
    document: dict[str, Any], binary: bytes | None, url: AbsAssetUrl, assets: AssetCache
) -> list[bytes]:
    buffers = []
    for index, buffer in enumerate(document.get("buffers", [])):
        uri = buffer.get("uri")
        if uri is None:
            if binary is None:
                raise AssetError(f"Buffer {index} has no uri and there is no GLB binary chunk")
            data = binary
        elif uri.startswith("data:"):
            data = _decode_data_uri(uri)
        else:
            data = await BytesFromUrl(url.join(uri)).get(assets)

        if len(data) < buffer.get("byteLength", 0):
            raise AssetError(f"Buffer {index} is shorter than its declared byteLength")
        buffers.append(data)
    return buffers


async def _fetch_images(
    document: dict[str, Any], texture_resolver: TextureResolver
) -> dict[int, bytes]:
    images = {}
    for index, image in enumerate(document.get("images", [])):
        uri = image.get("uri")
        if not _is_external(uri):
            continue
        data = await texture_resolver(uri)
        if data is not None:
            images[index] = data
    return images


def loader_document(
    document: dict[str, Any], buffers: list[bytes], images: dict[int, bytes]
) -> tuple[dict[str, Any], dict[str, bytes]]:
    """
    Rewrite a document for trimesh and collect the files it references.

    Buffers and external images are renamed to in-memory archive keys. Every
    primitive becomes its own mesh on a child node named "<node>#<primitive>",
    so each loaded geometry maps back to one node and primitive.
    """
    rewritten = copy.deepcopy(document)
    archive: dict[str, bytes] = {}

    for index, buffer in enumerate(rewritten.get("buffers", [])):
        buffer["uri"] = f"buffer{index}.bin"
        archive[buffer["uri"]] = buffers[index]
    for index, image in enumerate(rewritten.get("images", [])):
        if _is_external(image.get("uri")):
            image["uri"] = f"image{index}"
            if index in images:
                archive[image["uri"]] = images[index]

    meshes: list[dict[str, Any]] = []
    split: dict[tuple[int, int], int] = {}
    for mesh_index, mesh in enumerate(rewritten.get("meshes", [])):
        for primitive_index, primitive in enumerate(mesh.get("primitives", [])):
            attributes = primitive.get("attributes", {})
            for name in list(attributes):
                if name in KEPT_ATTRIBUTES or name.startswith("TEXCOORD_"):
                    attributes[f"_{name}"] = attributes[name]
            split[mesh_index, primitive_index] = len(meshes)
            meshes.append({"name": f"{mesh_index}#{primitive_index}", "primitives": [primitive]})
    rewritten["meshes"] = meshes

    nodes = rewritten.get("nodes", [])
    for index in range(len(nodes)):
        node = nodes[index]
        node["name"] = str(index)
        # trimesh stops at camera nodes
        node.pop("camera", None)
        mesh_index = node.pop("mesh", None)
        if mesh_index is None:
            continue
        for primitive_index in range(len(document["meshes"][mesh_index].get("primitives", []))):
            node.setdefault("children", []).append(len(nodes))
            nodes.append(
                {
                    "name": f"{index}#{primitive_index}",
                    "mesh": split[mesh_index, primitive_index],
                }
            )

    if not rewritten.get("scenes"):
        children = {c for n in document.get("nodes", []) for c in n.get("children", [])}
        roots = [i for i in range(len(document.get("nodes", []))) if i not in children]
        rewritten["scenes"] = [{"nodes": roots}]
        rewritten["scene"] = 0
    return rewritten, archive


def load_scene(document: dict[str, Any], archive: dict[str, bytes]) -> trimesh.Scene:
    return trimesh.load(
        io.BytesIO(json.dumps(document).encode()),
        file_type="gltf",
        resolver=ZipResolver(archive),
        force="scene",
        process=False,
    )


def _declared_image(document: dict[str, Any], data: dict[str, Any], slot: str) -> dict | None:
    parent, key = TEXTURE_INFO[slot]
    info = (data.get(parent, {}) if parent else data).get(key)
    if not info:
        return None
    source = document.get("textures", [])[info["index"]].get("source")
    return None if source is None else document["images"][source]


def _texture(loaded: PBRMaterial | None, slot: str, url: AbsAssetUrl) -> Image.Image | None:
    img = getattr(loaded, TRIMESH_TEXTURES[slot], None) if loaded is not None else None
    if img is None:
        return None
    try:
        return img.convert("RGBA")
    except OSError as e:
        logger.error("Failed to decode texture", url=url.url, slot=slot, error=str(e))
        return None


def read_material(
    document: dict[str, Any], index: int, loaded: PBRMaterial | None, url: AbsAssetUrl
) -> PbrMaterial:
    """
    Material `index` of a document.

    Textures come from trimesh's material. Factors are read from the document
    because trimesh quantizes the base color factor to 8 bits.
    """
    data = document["materials"][index]
    pbr = data.get("pbrMetallicRoughness", {})
    alpha_mode = data.get("alphaMode", "OPAQUE")
    material = PbrMaterial(
        name=data.get("name", f"material{index}"),
        source=url.url,
        base_color_factor=tuple(pbr.get("baseColorFactor", [1.0, 1.0, 1.0, 1.0])),
        emissive_factor=tuple(data.get("emissiveFactor", [0.0, 0.0, 0.0])),
        metallic=float(pbr.get("metallicFactor", 1.0)),
        roughness=float(pbr.get("roughnessFactor", 1.0)),
        alpha_cutoff=data.get("alphaCutoff", 0.5) if alpha_mode == "MASK" else None,
        transparent=alpha_mode == "BLEND",
        double_sided=bool(data.get("doubleSided", False)),
    )
    for slot in TEXTURE_INFO:
        img = _texture(loaded, slot, url)
        setattr(material, slot, img)
        image = _declared_image(document, data, slot)
        # External images were already reported by the texture resolver.
        if img is None and image is not None and not _is_external(image.get("uri")):
            logger.error(
                "Failed to load embedded image",
                url=url.url,
                material=material.name,
                slot=slot,
            )
    return material


def _custom_attribute(
    geometry: trimesh.Trimesh, primitive: dict[str, Any], name: str, accessors: Accessors
) -> np.ndarray | None:
    values = geometry.vertex_attributes.get(f"_{name}")
    if values is None:
        return None
    return accessors.normalized(values, primitive["attributes"][name])


def _texcoords(
    geometry: trimesh.Trimesh, primitive: dict[str, Any], accessors: Accessors
) -> list[np.ndarray]:
    texcoords = []
    while True:
        uv = _custom_attribute(geometry, primitive, f"TEXCOORD_{len(texcoords)}", accessors)
        if uv is None:
            return texcoords
        # glTF puts the UV origin top-left; crates use trimesh's bottom-left
        uv = np.array(uv, dtype=np.float32)
        uv[:, 1] = 1.0 - uv[:, 1]
        texcoords.append(uv)


def build_crate(
    crate: ModelCrate,
    scene: trimesh.Scene,
    document: dict[str, Any],
    accessors: Accessors,
    url: AbsAssetUrl,
) -> ModelCrate:
    nodes = document.get("nodes", [])
    frames = []
    for frame in scene.graph.nodes_geometry:
        node_index, _, primitive_index = str(frame).partition("#")
        frames.append((int(node_index), int(primitive_index), frame))

    materials: dict[int, str] = {}
    for node_index, primitive_index, frame in sorted(frames):
        transform, geometry_name = scene.graph[frame]
        geometry = scene.geometry[geometry_name]
        node = nodes[node_index]
        mesh_data = document["meshes"][node["mesh"]]
        primitive = mesh_data["primitives"][primitive_index]
        base_name = node.get("name") or mesh_data.get("name") or f"node{node_index}"

        if not isinstance(geometry, trimesh.Trimesh):
            logger.warning(
                "Skipping non-triangle primitive",
                url=url.url,
                mesh=base_name,
                mode=primitive.get("mode"),
            )
            continue

        mesh = Mesh(
            positions=geometry.vertices,
            indices=np.asarray(geometry.faces).reshape(-1),
            normals=geometry.vertex_normals if "NORMAL" in primitive["attributes"] else None,
            tangents=_custom_attribute(geometry, primitive, "TANGENT", accessors),
            texcoords=_texcoords(geometry, primitive, accessors),
            joint_indices=_custom_attribute(geometry, primitive, "JOINTS_0", accessors),
            joint_weights=_custom_attribute(geometry, primitive, "WEIGHTS_0", accessors),
            name=base_name,
        )
        if "skin" not in node:
            mesh.apply_matrix(transform)

        material_id = None
        index = primitive.get("material")
        if index is not None:
            if index not in materials:
                loaded = getattr(geometry.visual, "material", None)
                materials[index] = crate.add_material(
                    f"material{index}",
                    read_material(
                        document,
                        index,
                        loaded if isinstance(loaded, PBRMaterial) else None,
                        url,
                    ),
                )
            material_id = materials[index]
        crate.add_mesh(f"{base_name}#{primitive_index}", mesh, material_id)

    crate.skeleton = read_skeleton(document, accessors)
    for clip in read_animations(document, accessors):
        crate.animations[clip.name] = clip
    return crate


def read_skeleton(document: dict[str, Any], accessors: Accessors) -> Skeleton | None:
    skins = document.get("skins", [])
    if not skins:
        return None
    nodes = document.get("nodes", [])
    skin = skins[0]
    joints = skin["joints"]
    parent_of = {c: i for i, n in enumerate(nodes) for c in n.get("children", [])}
    position = {node: i for i, node in enumerate(joints)}
    parents = [position.get(parent_of.get(j, -1), -1) for j in joints]
    ibm = None
    if "inverseBindMatrices" in skin:
        ibm = accessors.read(skin["inverseBindMatrices"]).reshape(-1, 4, 4).transpose(0, 2, 1)
    return Skeleton(
        joints=[nodes[j].get("name", f"joint{j}") for j in joints],
        parents=parents,
        inverse_bind_matrices=ibm,
    )


def read_animations(document: dict[str, Any], accessors: Accessors) -> list[AnimationClip]:
    nodes = document.get("nodes", [])
    clips = []
    for index, animation in enumerate(document.get("animations", [])):
        samplers = animation.get("samplers", [])
        clip = AnimationClip(name=animation.get("name") or f"animation{index}")
        for channel in animation.get("channels", []):
            target = channel.get("target", {})
            if "node" not in target:
                continue
            sampler = samplers[channel["sampler"]]
            clip.channels.append(
                AnimationChannel(
                    target=nodes[target["node"]].get("name", f"node{target['node']}"),
                    path=target["path"],
                    times=accessors.read(sampler["input"]).reshape(-1),
                    values=accessors.read(sampler["output"]),
                    interpolation=sampler.get("interpolation", "LINEAR"),
                )
            )
        clips.append(clip)
    return clips


async def read_gltf(
    data: bytes,
    url: AbsAssetUrl,
    assets: AssetCache,
    texture_resolver: TextureResolver,
    crate: ModelCrate | None = None,
) -> ModelCrate:
    """
    Read a glTF or GLB file into a crate.

    Args:
        data: The .gltf or .glb file contents
        url: Where the file lives; relative buffer uris resolve against it
        assets: Cache used to fetch external buffers
        texture_resolver: Looks up external images by their uri
        crate: Crate to add to (a new one named after the file by default)

    Raises:
        AssetError: If the document or one of its buffers cannot be read
    """
    if is_glb(data):
        document, binary = split_glb(data)
    else:
        document, binary = parse_document(data), None

    try:
        buffers = await _fetch_buffers(document, binary, url, assets)
        images = await _fetch_images(document, texture_resolver)
        rewritten, archive = loader_document(document, buffers, images)
        scene = await asyncio.to_thread(load_scene, rewritten, archive)
        return build_crate(
            crate or ModelCrate(name=url.stem), scene, document, Accessors(document, buffers), url
        )
    except AssetError:
        raise
    except Exception as e:
        raise AssetError(f"Malformed glTF {url}: {e!r}") from e
