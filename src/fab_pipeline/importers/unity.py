"""
Unity importer - Prefab bundles exported from a Unity project.

Unity serializes prefabs as multi-document YAML with custom tags:

    %YAML 1.1
    %TAG !u! tag:unity3d.com,2011:
    --- !u!1 &100000
    GameObject:
      m_Name: Chair
      ...

Assets are tied together by GUIDs stored in `<asset>.meta` files. With
`use_prefabs`, every prefab becomes one asset assembled from the model files
its MeshFilters reference, placed at their prefab transforms. Without it, every
model file in the bundle becomes an asset of its own.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
import structlog
import yaml

from fab_pipeline.asset_url import AbsAssetUrl
from fab_pipeline.download import BytesFromUrl
from fab_pipeline.errors import AssetError
from fab_pipeline.importers.base import ImportedModel, ModelImporterBackend
from fab_pipeline.importers.geometry import MODEL_EXTENSIONS, import_model_file
from fab_pipeline.importers.regular import RegularImporter
from fab_pipeline.model.crate import ModelCrate
from fab_pipeline.model.gltf import node_matrix

if TYPE_CHECKING:
    from fab_pipeline.pipeline.context import PipelineCtx
    from fab_pipeline.pipeline.models import ModelsPipeline

logger = structlog.get_logger()

_DOCUMENT_HEADER = re.compile(r"^--- !u!(\d+) &(-?\d+)(?: stripped)?\s*$")
_GUID = re.compile(r"^guid:\s*([0-9a-fA-F]+)\s*$", re.M)

CLASS_GAME_OBJECT = 1
CLASS_TRANSFORM = 4
CLASS_MESH_FILTER = 33


@dataclass
class UnityObject:
    class_id: int
    file_id: int
    type_name: str
    data: dict[str, Any] = field(default_factory=dict)


def parse_unity_yaml(text: str) -> list[UnityObject]:
    """
    Parse a Unity YAML file into its objects.

    Raises:
        AssetError: If a document is not valid YAML
    """
    objects: list[UnityObject] = []
    header: tuple[int, int] | None = None
    body: list[str] = []

    def flush() -> None:
        if header is None:
            return
        try:
            document = yaml.safe_load("\n".join(body)) or {}
        except yaml.YAMLError as e:
            raise AssetError(f"Invalid Unity YAML document &{header[1]}: {e}") from e
        if isinstance(document, dict) and document:
            type_name, data = next(iter(document.items()))
            objects.append(UnityObject(header[0], header[1], type_name, data or {}))

    for line in text.splitlines():
        if line.startswith("%"):
            continue
        match = _DOCUMENT_HEADER.match(line)
        if match:
            flush()
            header = (int(match.group(1)), int(match.group(2)))
            body = []
        else:
            body.append(line)
    flush()
    return objects


def parse_meta_guid(text: str) -> str | None:
    match = _GUID.search(text)
    return match.group(1).lower() if match else None


def _vector(data: Any, keys: str, default: float) -> list[float]:
    data = data if isinstance(data, dict) else {}
    return [float(data.get(k, default)) for k in keys]


def transform_matrix(transform: dict[str, Any]) -> np.ndarray:
    return node_matrix(
        {
            "translation": _vector(transform.get("m_LocalPosition"), "xyz", 0.0),
            "rotation": _vector(transform.get("m_LocalRotation"), "xyz", 0.0)
            + _vector(transform.get("m_LocalRotation"), "w", 1.0),
            "scale": _vector(transform.get("m_LocalScale"), "xyz", 1.0),
        }
    )


class Prefab:
    """Objects of one prefab file indexed by file id."""

    def __init__(self, objects: list[UnityObject]) -> None:
        self.objects = {o.file_id: o for o in objects}
        self.transforms_by_game_object = {
            self._ref(o.data.get("m_GameObject")): o
            for o in objects
            if o.class_id == CLASS_TRANSFORM
        }

    @staticmethod
    def _ref(value: Any) -> int | None:
        if isinstance(value, dict) and value.get("fileID"):
            return int(value["fileID"])
        return None

    def root_name(self) -> str | None:
        for transform in self.transforms_by_game_object.values():
            if not self._ref(transform.data.get("m_Father")):
                game_object = self.objects.get(self._ref(transform.data.get("m_GameObject")))
                if game_object is not None:
                    return game_object.data.get("m_Name")
        return None

    def world_matrix(self, game_object_id: int) -> np.ndarray:
        matrix = np.eye(4)
        transform = self.transforms_by_game_object.get(game_object_id)
        seen = set()
        while transform is not None and transform.file_id not in seen:
            seen.add(transform.file_id)
            matrix = transform_matrix(transform.data) @ matrix
            father = self.objects.get(self._ref(transform.data.get("m_Father")))
            transform = father if father is not None and father.class_id == CLASS_TRANSFORM else None
        return matrix

    def mesh_references(self) -> list[tuple[str, str, np.ndarray]]:
        """(game object name, mesh guid, world matrix) for every MeshFilter."""
        references = []
        for obj in self.objects.values():
            if obj.class_id != CLASS_MESH_FILTER:
                continue
            mesh = obj.data.get("m_Mesh") or {}
            guid = mesh.get("guid")
            if not guid:
                continue
            game_object_id = self._ref(obj.data.get("m_GameObject"))
            game_object = self.objects.get(game_object_id)
            name = game_object.data.get("m_Name", "mesh") if game_object else "mesh"
            references.append((name, str(guid).lower(), self.world_matrix(game_object_id)))
        return references


class UnityImporter(ModelImporterBackend):
    name = "unity_models"

    def __init__(self, use_prefabs: bool = False) -> None:
        self.use_prefabs = use_prefabs

    async def _guid_map(self, ctx: PipelineCtx) -> dict[str, AbsAssetUrl]:
        guids: dict[str, AbsAssetUrl] = {}
        files = set(ctx.files)
        for meta in ctx.files_with_extension("meta"):
            asset = AbsAssetUrl(meta.url[: -len(".meta")])
            if asset not in files:
                continue
            text = (await BytesFromUrl(meta).get(ctx.assets)).decode("utf-8", errors="replace")
            guid = parse_meta_guid(text)
            if guid:
                guids[guid] = asset
        return guids

    async def import_models(self, ctx: PipelineCtx, config: ModelsPipeline) -> list[ImportedModel]:
        if not self.use_prefabs:
            return await RegularImporter().import_models(ctx, config)

        guids = await self._guid_map(ctx)
        models = []
        for prefab_url in ctx.files_with_extension("prefab"):
            text = (await BytesFromUrl(prefab_url).get(ctx.assets)).decode("utf-8", errors="replace")
            prefab = Prefab(parse_unity_yaml(text))
            name = prefab.root_name() or prefab_url.stem

            crate = ModelCrate(name=name)
            for part_name, guid, matrix in prefab.mesh_references():
                model_url = guids.get(guid)
                if model_url is None or model_url.extension not in MODEL_EXTENSIONS:
                    logger.warning(
                        "Prefab references a mesh that is not in the bundle",
                        prefab=prefab_url.url,
                        part=part_name,
                        guid=guid,
                    )
                    continue
                part = await import_model_file(ctx, config, model_url)
                crate.merge(part, prefix=part_name, matrix=matrix)

            crate.create_object(name)
            models.append(
                ImportedModel(
                    crate=crate,
                    model_path=ctx.relative_path(prefab_url),
                    name=name,
                    source=prefab_url,
                )
            )
        return models
