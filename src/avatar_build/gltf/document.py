"""
Scene Document

In-memory glTF scene for one asset. Nodes, accessors, buffer views and skins
are held as typed records in index-addressed lists (the arena); everything
else (meshes, materials, images, extensions, ...) stays in the raw glTF JSON
object. Node parents are indices derived from the children lists.

Accessor data is exposed as writable numpy views sharing memory with the
binary buffer, so transform stages mutate vertex data in place.
"""

import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import numpy as np
from loguru import logger

from avatar_build.errors import GlbFormatError, GltfValidationError
from avatar_build.gltf import glb
from avatar_build.gltf.math3d import IDENTITY_QUAT, decompose_trs, from_gltf_matrix

# Upper bound for any walk up or down the node hierarchy.
MAX_HIERARCHY_DEPTH = 256

FLOAT = 5126

COMPONENT_DTYPES: Dict[int, np.dtype] = {
    5120: np.dtype("i1"),
    5121: np.dtype("u1"),
    5122: np.dtype("<i2"),
    5123: np.dtype("<u2"),
    5125: np.dtype("<u4"),
    5126: np.dtype("<f4"),
}

TYPE_COMPONENTS: Dict[str, int] = {
    "SCALAR": 1,
    "VEC2": 2,
    "VEC3": 3,
    "VEC4": 4,
    "MAT2": 4,
    "MAT3": 9,
    "MAT4": 16,
}


def _floats(values: Any) -> List[float]:
    return [float(v) for v in values]


@dataclass
class Node:
    """A transform in the scene hierarchy."""

    name: Optional[str] = None
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    rotation: np.ndarray = field(default_factory=lambda: IDENTITY_QUAT.copy())
    scale: np.ndarray = field(default_factory=lambda: np.ones(3))
    children: List[int] = field(default_factory=list)
    parent: Optional[int] = None
    mesh: Optional[int] = None
    skin: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Node":
        data = dict(data)
        node = cls(
            name=data.pop("name", None),
            children=[int(c) for c in data.pop("children", [])],
            mesh=data.pop("mesh", None),
            skin=data.pop("skin", None),
        )
        matrix = data.pop("matrix", None)
        if matrix is not None:
            node.translation, node.rotation, node.scale = decompose_trs(from_gltf_matrix(matrix))
        if "translation" in data:
            node.translation = np.array(data.pop("translation"), dtype=np.float64)
        if "rotation" in data:
            node.rotation = np.array(data.pop("rotation"), dtype=np.float64)
        if "scale" in data:
            node.scale = np.array(data.pop("scale"), dtype=np.float64)
        node.extra = data
        return node

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        out: Dict[str, Any] = {}
        if self.name is not None:
            out["name"] = self.name
        if self.children:
            out["children"] = list(self.children)
        if self.mesh is not None:
            out["mesh"] = self.mesh
        if self.skin is not None:
            out["skin"] = self.skin
        out["translation"] = _floats(self.translation)
        out["rotation"] = _floats(self.rotation)
        out["scale"] = _floats(self.scale)
        out.update(self.extra)
        return out


@dataclass
class BufferView:
    """A byte range of a buffer. ``data`` holds replacement bytes until the next repack."""

    buffer: int = 0
    byte_offset: int = 0
    byte_length: int = 0
    byte_stride: Optional[int] = None
    target: Optional[int] = None
    name: Optional[str] = None
    data: Optional[bytearray] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BufferView":
        data = dict(data)
        return cls(
            buffer=int(data.pop("buffer", 0)),
            byte_offset=int(data.pop("byteOffset", 0)),
            byte_length=int(data.pop("byteLength", 0)),
            byte_stride=data.pop("byteStride", None),
            target=data.pop("target", None),
            name=data.pop("name", None),
            extra=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "buffer": self.buffer,
            "byteOffset": self.byte_offset,
            "byteLength": self.byte_length,
        }
        if self.byte_stride is not None:
            out["byteStride"] = self.byte_stride
        if self.target is not None:
            out["target"] = self.target
        if self.name is not None:
            out["name"] = self.name
        out.update(self.extra)
        return out


@dataclass
class Accessor:
    """Typed, strided view into a buffer view with cached bounds."""

    buffer_view: Optional[int] = None
    byte_offset: int = 0
    component_type: int = FLOAT
    normalized: bool = False
    count: int = 0
    type: str = "SCALAR"
    min: Optional[List[float]] = None
    max: Optional[List[float]] = None
    name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def components(self) -> int:
        return TYPE_COMPONENTS[self.type]

    @property
    def dtype(self) -> np.dtype:
        return COMPONENT_DTYPES[self.component_type]

    @property
    def element_size(self) -> int:
        return self.dtype.itemsize * self.components

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Accessor":
        data = dict(data)
        return cls(
            buffer_view=data.pop("bufferView", None),
            byte_offset=int(data.pop("byteOffset", 0)),
            component_type=int(data.pop("componentType")),
            normalized=bool(data.pop("normalized", False)),
            count=int(data.pop("count")),
            type=data.pop("type"),
            min=data.pop("min", None),
            max=data.pop("max", None),
            name=data.pop("name", None),
            extra=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.buffer_view is not None:
            out["bufferView"] = self.buffer_view
            out["byteOffset"] = self.byte_offset
        out["componentType"] = self.component_type
        if self.normalized:
            out["normalized"] = True
        out["count"] = self.count
        out["type"] = self.type
        if self.min is not None:
            out["min"] = _floats(self.min)
        if self.max is not None:
            out["max"] = _floats(self.max)
        if self.name is not None:
            out["name"] = self.name
        out.update(self.extra)
        return out


@dataclass
class Skin:
    """Joint list plus inverse-bind-matrix accessor."""

    joints: List[int] = field(default_factory=list)
    inverse_bind_matrices: Optional[int] = None
    skeleton: Optional[int] = None
    name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Skin":
        data = dict(data)
        return cls(
            joints=[int(j) for j in data.pop("joints", [])],
            inverse_bind_matrices=data.pop("inverseBindMatrices", None),
            skeleton=data.pop("skeleton", None),
            name=data.pop("name", None),
            extra=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"joints": list(self.joints)}
        if self.inverse_bind_matrices is not None:
            out["inverseBindMatrices"] = self.inverse_bind_matrices
        if self.skeleton is not None:
            out["skeleton"] = self.skeleton
        if self.name is not None:
            out["name"] = self.name
        out.update(self.extra)
        return out


class Document:
    """
    One asset's scene graph and binary data.

    The document is the unit of ownership of a pipeline run: stages receive it,
    mutate it in place and hand it on.
    """

    def __init__(self, gltf: Dict[str, Any], buffers: Optional[List[bytes]] = None):
        gltf = dict(gltf)
        self.nodes: List[Node] = [Node.from_dict(n) for n in gltf.pop("nodes", [])]
        self.accessors: List[Accessor] = [Accessor.from_dict(a) for a in gltf.pop("accessors", [])]
        self.buffer_views: List[BufferView] = [
            BufferView.from_dict(v) for v in gltf.pop("bufferViews", [])
        ]
        self.skins: List[Skin] = [Skin.from_dict(s) for s in gltf.pop("skins", [])]
        self._buffer_meta: List[Dict[str, Any]] = gltf.pop("buffers", [])
        self.json: Dict[str, Any] = gltf
        self.buffers: List[bytearray] = [bytearray(b) for b in (buffers or [])]

        if len(self.buffers) > 1:
            self.repack()
        self.link_parents()

    # Loading and saving ----------------------------------------------

    @classmethod
    def from_glb_bytes(cls, raw: bytes) -> "Document":
        gltf, bin_chunk = glb.decode_glb(raw)
        buffers = [bin_chunk] if gltf.get("buffers") else []
        return cls(gltf, buffers)

    @classmethod
    def load(cls, path: Path) -> "Document":
        """Load a ``.glb`` file, or a ``.gltf`` file with external or data-URI buffers."""
        path = Path(path)
        raw = path.read_bytes()
        if raw[:4] == b"glTF":
            return cls.from_glb_bytes(raw)

        try:
            gltf = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise GlbFormatError(f"{path} is neither GLB nor glTF JSON: {exc}") from exc

        buffers = [cls._read_buffer_uri(path.parent, meta) for meta in gltf.get("buffers", [])]
        return cls(gltf, buffers)

    @staticmethod
    def _read_buffer_uri(base_dir: Path, meta: Dict[str, Any]) -> bytes:
        uri = meta.get("uri")
        if uri is None:
            raise GlbFormatError("glTF buffer without uri outside of a GLB container")
        if uri.startswith("data:"):
            _, _, encoded = uri.partition(",")
            return base64.b64decode(encoded)
        return (base_dir / uri).read_bytes()

    def to_gltf(self) -> Dict[str, Any]:
        """Assemble the glTF JSON object for serialization."""
        out = dict(self.json)
        out["nodes"] = [n.to_dict() for n in self.nodes]
        out["accessors"] = [a.to_dict() for a in self.accessors]
        out["bufferViews"] = [v.to_dict() for v in self.buffer_views]
        if self.skins:
            out["skins"] = [s.to_dict() for s in self.skins]
        else:
            out.pop("skins", None)
        if self.buffers:
            out["buffers"] = [{"byteLength": len(self.buffers[0])}]
        else:
            out.pop("buffers", None)
        for key in ("accessors", "bufferViews", "nodes"):
            if not out[key]:
                del out[key]
        return out

    def to_glb_bytes(self) -> bytes:
        if any(view.data is not None for view in self.buffer_views):
            self.repack()
        return glb.encode_glb(self.to_gltf(), [bytes(b) for b in self.buffers])

    def save(self, path: Path) -> int:
        """Write the document as GLB and return the size in bytes."""
        data = self.to_glb_bytes()
        Path(path).write_bytes(data)
        return len(data)

    # Scene structure -------------------------------------------------

    @property
    def meshes(self) -> List[Dict[str, Any]]:
        return self.json.get("meshes", [])

    @property
    def materials(self) -> List[Dict[str, Any]]:
        return self.json.get("materials", [])

    @property
    def images(self) -> List[Dict[str, Any]]:
        return self.json.get("images", [])

    @property
    def scenes(self) -> List[Dict[str, Any]]:
        return self.json.get("scenes", [])

    def link_parents(self) -> None:
        """Rebuild every node's parent index from the children lists."""
        for node in self.nodes:
            node.parent = None
        for index, node in enumerate(self.nodes):
            for child in node.children:
                if not 0 <= child < len(self.nodes):
                    continue
                child_node = self.nodes[child]
                if child_node.parent is not None and child_node.parent != index:
                    logger.warning(
                        "Node {} is a child of both node {} and node {}",
                        child, child_node.parent, index,
                    )
                child_node.parent = index

    def scene_roots(self) -> List[int]:
        """Root nodes of every scene, or of the parentless nodes when no scene is declared."""
        if self.scenes:
            roots: List[int] = []
            for scene in self.scenes:
                roots.extend(int(n) for n in scene.get("nodes", []))
            return roots
        return [i for i, node in enumerate(self.nodes) if node.parent is None]

    def ancestors(self, index: int) -> Iterator[int]:
        """Yield the parent chain of a node, giving up after ``MAX_HIERARCHY_DEPTH`` hops."""
        parent = self.nodes[index].parent
        hops = 0
        while parent is not None:
            hops += 1
            if hops > MAX_HIERARCHY_DEPTH:
                logger.warning("Infinite loop detected at parent loop of node {}", index)
                return
            yield parent
            parent = self.nodes[parent].parent

    def is_ancestor_or_self(self, candidate: int, index: int) -> bool:
        return candidate == index or candidate in self.ancestors(index)

    def mesh_attribute_accessors(
        self,
        semantics: Tuple[str, ...] = ("POSITION", "NORMAL"),
    ) -> Iterator[Tuple[int, str, int, bool]]:
        """
        Walk the vertex attributes of every mesh node.

        Yields ``(node index, semantic, accessor index, is_morph_target)`` for
        base attributes and morph targets. Shared accessors are yielded once
        per reference; callers dedupe.
        """
        for node_index, node in enumerate(self.nodes):
            if node.mesh is None:
                continue
            mesh = self.meshes[node.mesh]
            for primitive in mesh.get("primitives", []):
                for semantic, accessor_index in primitive.get("attributes", {}).items():
                    if semantic in semantics:
                        yield node_index, semantic, accessor_index, False
                for target in primitive.get("targets", []):
                    for semantic, accessor_index in target.items():
                        if semantic in semantics:
                            yield node_index, semantic, accessor_index, True

    # Accessor data ---------------------------------------------------

    def accessor_view(self, index: int) -> np.ndarray:
        """
        Writable ``(count, components)`` view into the accessor's bytes.

        Raises:
            GltfValidationError: if the accessor has no buffer view or is out of range
        """
        accessor = self.accessors[index]
        if accessor.buffer_view is None:
            raise GltfValidationError(f"Accessor {index} has no buffer view")
        if accessor.count == 0:
            return np.zeros((0, accessor.components), dtype=accessor.dtype)

        view = self.buffer_views[accessor.buffer_view]
        if view.data is not None:
            storage = view.data
            base = 0
        else:
            storage = self.buffers[view.buffer]
            base = view.byte_offset

        itemsize = accessor.dtype.itemsize
        stride = view.byte_stride or accessor.element_size
        start = base + accessor.byte_offset
        end = start + stride * max(accessor.count - 1, 0) + accessor.element_size
        if accessor.count and end > len(storage):
            raise GltfValidationError(f"Accessor {index} reads past the end of its buffer")

        return np.ndarray(
            shape=(accessor.count, accessor.components),
            dtype=accessor.dtype,
            buffer=storage,
            offset=start,
            strides=(stride, itemsize),
        )

    def read_floats(self, index: int) -> np.ndarray:
        """Accessor data as float64, normalizing integer data when flagged."""
        accessor = self.accessors[index]
        raw = self.accessor_view(index)
        values = raw.astype(np.float64)
        if accessor.component_type != FLOAT and accessor.normalized:
            info = np.iinfo(raw.dtype)
            values = values / info.max
            if info.min < 0:
                values = np.maximum(values, -1.0)
        return values

    def read_uints(self, index: int) -> np.ndarray:
        return self.accessor_view(index).astype(np.int64)

    def update_bounds(self, index: int) -> None:
        """Recompute the accessor's min/max from its current data."""
        accessor = self.accessors[index]
        view = self.accessor_view(index)
        if accessor.count == 0:
            return
        accessor.min = _floats(view.min(axis=0))
        accessor.max = _floats(view.max(axis=0))

    # Buffer management -----------------------------------------------

    def view_bytes(self, view_index: int) -> bytes:
        view = self.buffer_views[view_index]
        if view.data is not None:
            return bytes(view.data)
        source = self.buffers[view.buffer]
        return bytes(source[view.byte_offset:view.byte_offset + view.byte_length])

    def set_view_data(self, view_index: int, data: bytes) -> None:
        """Replace a buffer view's bytes; takes effect in the buffer on ``repack``."""
        view = self.buffer_views[view_index]
        view.data = bytearray(data)
        view.byte_length = len(data)

    def add_buffer_view(self, data: bytes, name: Optional[str] = None) -> int:
        self.buffer_views.append(
            BufferView(buffer=0, byte_length=len(data), name=name, data=bytearray(data))
        )
        return len(self.buffer_views) - 1

    def repack(self) -> None:
        """Rebuild a single buffer from every buffer view, each aligned to 4 bytes."""
        packed = bytearray()
        for index, view in enumerate(self.buffer_views):
            chunk = self.view_bytes(index)
            view.buffer = 0
            view.byte_offset = len(packed)
            view.byte_length = len(chunk)
            view.data = None
            packed += chunk
            packed += b"\x00" * (glb.aligned_size(len(chunk)) - len(chunk))
        self.buffers = [packed]

    # Validation ------------------------------------------------------

    def validate(self) -> None:
        """
        Check the references and byte ranges a writer relies on.

        Raises:
            GltfValidationError: on the first violation found
        """
        node_count = len(self.nodes)
        seen_children: Set[int] = set()
        for index, node in enumerate(self.nodes):
            for child in node.children:
                if not 0 <= child < node_count:
                    raise GltfValidationError(f"Node {index} has invalid child {child}")
                if child in seen_children:
                    raise GltfValidationError(f"Node {child} has more than one parent")
                seen_children.add(child)
            if node.mesh is not None and not 0 <= node.mesh < len(self.meshes):
                raise GltfValidationError(f"Node {index} references missing mesh {node.mesh}")
            if node.skin is not None and not 0 <= node.skin < len(self.skins):
                raise GltfValidationError(f"Node {index} references missing skin {node.skin}")

        for index, skin in enumerate(self.skins):
            for joint in skin.joints:
                if not 0 <= joint < node_count:
                    raise GltfValidationError(f"Skin {index} has invalid joint {joint}")
            if skin.inverse_bind_matrices is not None:
                accessor = self.accessors[skin.inverse_bind_matrices]
                if accessor.count < len(skin.joints):
                    raise GltfValidationError(
                        f"Skin {index} has fewer inverse bind matrices than joints"
                    )

        for index, view in enumerate(self.buffer_views):
            if view.data is None:
                if not 0 <= view.buffer < len(self.buffers):
                    raise GltfValidationError(f"Buffer view {index} references missing buffer")
                if view.byte_offset + view.byte_length > len(self.buffers[view.buffer]):
                    raise GltfValidationError(f"Buffer view {index} exceeds its buffer")

        for index, accessor in enumerate(self.accessors):
            if accessor.buffer_view is None:
                continue
            if not 0 <= accessor.buffer_view < len(self.buffer_views):
                raise GltfValidationError(f"Accessor {index} references missing buffer view")
            view = self.buffer_views[accessor.buffer_view]
            stride = view.byte_stride or accessor.element_size
            needed = accessor.byte_offset + stride * max(accessor.count - 1, 0) + accessor.element_size
            if accessor.count and needed > view.byte_length:
                raise GltfValidationError(f"Accessor {index} exceeds buffer view {accessor.buffer_view}")

        for mesh_index, mesh in enumerate(self.meshes):
            for primitive in mesh.get("primitives", []):
                references = list(primitive.get("attributes", {}).values())
                for target in primitive.get("targets", []):
                    references.extend(target.values())
                if "indices" in primitive:
                    references.append(primitive["indices"])
                for accessor_index in references:
                    if not 0 <= accessor_index < len(self.accessors):
                        raise GltfValidationError(
                            f"Mesh {mesh_index} references missing accessor {accessor_index}"
                        )


__all__ = [
    "Accessor",
    "BufferView",
    "Document",
    "MAX_HIERARCHY_DEPTH",
    "Node",
    "Skin",
]
