"""
glTF scene document and binary container support.
"""

from avatar_build.gltf.document import Accessor, BufferView, Document, Node, Skin, MAX_HIERARCHY_DEPTH
from avatar_build.gltf.glb import decode_glb, encode_glb, read_glb, write_glb

__all__ = [
    "Accessor",
    "BufferView",
    "Document",
    "MAX_HIERARCHY_DEPTH",
    "Node",
    "Skin",
    "decode_glb",
    "encode_glb",
    "read_glb",
    "write_glb",
]
