"""
Joint buffer fixes.

VRM 0.0 consumers expect ``JOINTS_0`` stored as unsigned shorts; FBX
converters often emit unsigned bytes.
"""

from typing import Set

import numpy as np
from loguru import logger

from avatar_build.gltf.document import Document

UNSIGNED_SHORT = 5123
ARRAY_BUFFER = 34962


def upcast_joints(document: Document) -> int:
    """
    Rewrite every ``JOINTS_0`` accessor that is not uint16 as a uint16 VEC4.

    Each accessor is converted once even when shared by several primitives.
    The binary buffer is repacked when anything changed.

    Returns:
        Number of accessors converted
    """
    done: Set[int] = set()
    updated = 0

    for node in document.nodes:
        if node.mesh is None:
            continue
        for primitive in document.meshes[node.mesh].get("primitives", []):
            accessor_index = primitive.get("attributes", {}).get("JOINTS_0")
            if accessor_index is None or accessor_index in done:
                continue
            done.add(accessor_index)

            accessor = document.accessors[accessor_index]
            if accessor.component_type == UNSIGNED_SHORT:
                continue
            if accessor.buffer_view is None:
                logger.warning("JOINTS_0 accessor {} has no buffer view, skipped", accessor_index)
                continue

            joints = document.read_uints(accessor_index)
            upcast = np.zeros((accessor.count, 4), dtype="<u2")
            width = min(joints.shape[1], 4) if joints.ndim == 2 else 0
            upcast[:, :width] = joints[:, :width]

            _store_accessor_data(document, accessor_index, upcast.tobytes())
            accessor.component_type = UNSIGNED_SHORT
            accessor.type = "VEC4"
            accessor.normalized = False
            accessor.min = None
            accessor.max = None
            updated += 1

    if updated:
        document.repack()
        logger.info("Upcast {} joint accessors to uint16", updated)
    return updated


def _store_accessor_data(document: Document, accessor_index: int, data: bytes) -> None:
    accessor = document.accessors[accessor_index]
    view_index = accessor.buffer_view
    shared = view_index is None or any(
        other.buffer_view == view_index
        for index, other in enumerate(document.accessors)
        if index != accessor_index
    )

    if shared:
        view_index = document.add_buffer_view(data)
        document.buffer_views[view_index].target = ARRAY_BUFFER
        accessor.buffer_view = view_index
    else:
        document.set_view_data(view_index, data)
        document.buffer_views[view_index].byte_stride = None
    accessor.byte_offset = 0
