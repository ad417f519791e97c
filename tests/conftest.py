from __future__ import annotations

import copy
from typing import Any, Optional, Sequence

import numpy as np
import pytest
from loguru import logger

from avatar_build.gltf.document import COMPONENT_DTYPES, Document
from avatar_build.gltf.glb import encode_glb
from avatar_build.gltf.math3d import compose_trs, to_gltf_matrix

FLOAT = 5126
UNSIGNED_BYTE = 5121

ROT_Z_90 = [0.0, 0.0, float(np.sqrt(0.5)), float(np.sqrt(0.5))]


class GltfBuilder:
    """Assembles small glTF documents for tests."""

    def __init__(self) -> None:
        self.gltf: dict[str, Any] = {
            "asset": {"version": "2.0"},
            "nodes": [],
            "meshes": [],
            "accessors": [],
            "bufferViews": [],
            "buffers": [{"byteLength": 0}],
        }
        self.data = bytearray()

    def add_accessor(
        self,
        values: Any,
        type_: str = "VEC3",
        component_type: int = FLOAT,
        bounds: bool = True,
    ) -> int:
        array = np.ascontiguousarray(np.asarray(values), dtype=COMPONENT_DTYPES[component_type])
        self.data += b"\x00" * ((4 - len(self.data) % 4) % 4)
        offset = len(self.data)
        self.data += array.tobytes()

        self.gltf["bufferViews"].append({"buffer": 0, "byteOffset": offset, "byteLength": array.nbytes})
        accessor: dict[str, Any] = {
            "bufferView": len(self.gltf["bufferViews"]) - 1,
            "componentType": component_type,
            "count": int(array.shape[0]),
            "type": type_,
        }
        if bounds:
            flat = array.reshape(array.shape[0], -1)
            accessor["min"] = [float(v) for v in flat.min(axis=0)]
            accessor["max"] = [float(v) for v in flat.max(axis=0)]
        self.gltf["accessors"].append(accessor)
        return len(self.gltf["accessors"]) - 1

    def add_node(
        self,
        name: Optional[str] = None,
        translation: Sequence[float] = (0.0, 0.0, 0.0),
        rotation: Sequence[float] = (0.0, 0.0, 0.0, 1.0),
        scale: Sequence[float] = (1.0, 1.0, 1.0),
        children: Sequence[int] = (),
        mesh: Optional[int] = None,
        skin: Optional[int] = None,
    ) -> int:
        node: dict[str, Any] = {
            "translation": list(translation),
            "rotation": list(rotation),
            "scale": list(scale),
        }
        if name is not None:
            node["name"] = name
        if children:
            node["children"] = list(children)
        if mesh is not None:
            node["mesh"] = mesh
        if skin is not None:
            node["skin"] = skin
        self.gltf["nodes"].append(node)
        return len(self.gltf["nodes"]) - 1

    def add_mesh(self, primitives: list[dict[str, Any]], target_names: Optional[list[str]] = None) -> int:
        mesh: dict[str, Any] = {"primitives": primitives}
        if target_names is not None:
            mesh["extras"] = {"targetNames": target_names}
        self.gltf["meshes"].append(mesh)
        return len(self.gltf["meshes"]) - 1

    def add_skin(self, joints: list[int], inverse_bind_matrices: Optional[list[np.ndarray]] = None) -> int:
        skin: dict[str, Any] = {"joints": list(joints)}
        if inverse_bind_matrices is not None:
            flat = np.array([to_gltf_matrix(m) for m in inverse_bind_matrices])
            skin["inverseBindMatrices"] = self.add_accessor(flat, type_="MAT4")
        self.gltf.setdefault("skins", []).append(skin)
        return len(self.gltf["skins"]) - 1

    def set_scene(self, roots: list[int]) -> None:
        self.gltf["scenes"] = [{"nodes": list(roots)}]
        self.gltf["scene"] = 0

    def gltf_json(self) -> dict[str, Any]:
        gltf = copy.deepcopy(self.gltf)
        gltf["buffers"][0]["byteLength"] = len(self.data)
        return gltf

    def build(self) -> Document:
        return Document(self.gltf_json(), [bytes(self.data)])

    def to_glb(self) -> bytes:
        return encode_glb(self.gltf_json(), [bytes(self.data)])


@pytest.fixture
def builder() -> GltfBuilder:
    return GltfBuilder()


def build_hips_spine(builder: GltfBuilder) -> GltfBuilder:
    """
    Hips at (0, 1, 0) with child Spine 0.5 above it, and a mesh skinned to both.

    Vertex 0 follows Hips, vertex 1 follows Spine, vertex 2 is split evenly.
    """
    hips_global = compose_trs([0, 1, 0], [0, 0, 0, 1], [1, 1, 1])
    spine_global = compose_trs([0, 1.5, 0], [0, 0, 0, 1], [1, 1, 1])

    positions = builder.add_accessor([[0, 1, 0], [0, 2.5, 0], [0, 2.5, 0]])
    normals = builder.add_accessor([[0, 1, 0], [0, 1, 0], [0, 1, 0]])
    joints = builder.add_accessor(
        [[0, 0, 0, 0], [1, 0, 0, 0], [0, 1, 0, 0]],
        type_="VEC4",
        component_type=UNSIGNED_BYTE,
        bounds=False,
    )
    weights = builder.add_accessor(
        [[1, 0, 0, 0], [1, 0, 0, 0], [0.5, 0.5, 0, 0]],
        type_="VEC4",
        bounds=False,
    )
    mesh = builder.add_mesh([{
        "attributes": {
            "POSITION": positions,
            "NORMAL": normals,
            "JOINTS_0": joints,
            "WEIGHTS_0": weights,
        },
    }])

    hips = builder.add_node("Hips", translation=[0, 1, 0], children=[1])
    builder.add_node("Spine", translation=[0, 0.5, 0])
    skin = builder.add_skin([hips, 1], [np.linalg.inv(hips_global), np.linalg.inv(spine_global)])
    body = builder.add_node("Body", mesh=mesh, skin=skin)
    builder.set_scene([hips, body])
    return builder


@pytest.fixture
def hips_spine_document(builder: GltfBuilder) -> Document:
    return build_hips_spine(builder).build()


@pytest.fixture
def log_messages():
    """Collect loguru messages emitted during a test."""
    messages: list[str] = []
    sink_id = logger.add(lambda message: messages.append(message.record["message"]), level="DEBUG")
    yield messages
    logger.remove(sink_id)
