"""
Transform Baker Module

Bakes hierarchical node transforms into vertex data and joint offsets:

1. Mesh bake: each mesh node's own local TRS is applied to its vertices
2. Hierarchy bake: intermediate rotations/scales are folded into the child
   translations, leaving a translation-only hierarchy with unchanged world
   placement
3. Hips fix: translation accumulated on the ancestors of the hips bone is
   moved onto the hips node
4. Inverse bind matrices are recomputed from the new joint globals

Also hosts the handedness flip (``reverse_z``) used for coordinate-convention
conversion.
"""

from typing import Optional, Set

import numpy as np
from loguru import logger

from avatar_build.bridge.types import BoneMap
from avatar_build.gltf.document import FLOAT, MAX_HIERARCHY_DEPTH, Document, Node
from avatar_build.gltf.math3d import (
    IDENTITY_QUAT,
    compose_trs,
    decompose_trs,
    normalize_rows,
    rotate_vectors,
    to_gltf_matrix,
)


def node_local_matrix(node: Node) -> np.ndarray:
    return compose_trs(node.translation, node.rotation, node.scale)


def global_transform(document: Document, index: int) -> np.ndarray:
    """
    Compose a node's local transform with every ancestor's.

    The walk is bounded; on a cyclic parent chain it logs a warning and
    returns the transform accumulated so far.
    """
    matrix = node_local_matrix(document.nodes[index])
    for parent in document.ancestors(index):
        matrix = node_local_matrix(document.nodes[parent]) @ matrix
    return matrix


def invert(matrix: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError:
        logger.warning("Singular transform found, using pseudo-inverse")
        return np.linalg.pinv(matrix)


class TransformBaker:
    """Flattens node transforms and keeps skin data consistent with them."""

    def bake_transforms(self, document: Document, bone_map: Optional[BoneMap] = None) -> None:
        """
        Run the full bake: meshes, hierarchy, hips offset, inverse bind matrices.

        Args:
            document: Document to mutate in place
            bone_map: Resolved bones; the "hips" entry receives its ancestors' offset
        """
        baked = self.bake_mesh_transforms(document)
        logger.debug("Baked mesh transforms into {} accessors", baked)

        visited: Set[int] = set()
        for root in document.scene_roots():
            self.bake_hierarchy_transforms(document, root, np.eye(4), visited=visited)

        if bone_map is not None and "hips" in bone_map:
            self.move_offset_to_hips(document, bone_map.bones["hips"])

        self.recompute_inverse_bind_matrices(document)

    def bake_mesh_transforms(self, document: Document) -> int:
        """
        Apply each mesh node's local scale, translation and rotation to its vertices.

        Every POSITION/NORMAL accessor reachable from a primitive or morph
        target is visited once. Directions (normals, morph deltas) get no
        translation; normals are scaled by the inverse scale and renormalised.

        Returns:
            Number of accessors rewritten
        """
        done: Set[int] = set()
        for node_index, semantic, accessor_index, is_target in document.mesh_attribute_accessors():
            if accessor_index in done:
                continue
            done.add(accessor_index)

            accessor = document.accessors[accessor_index]
            if not self._is_float_vec3(document, accessor_index):
                continue

            node = document.nodes[node_index]
            view = document.accessor_view(accessor_index)
            values = view.astype(np.float64)

            if semantic == "POSITION":
                values = values * node.scale
                if not is_target:
                    values = values + node.translation
                values = rotate_vectors(node.rotation, values)
            else:
                scale = np.where(np.abs(node.scale) < 1e-12, 1.0, node.scale)
                values = rotate_vectors(node.rotation, values / scale)
                if not is_target:
                    values = normalize_rows(values)

            view[:] = values.astype(np.float32)
            document.update_bounds(accessor_index)
            logger.trace("Baked node {} into accessor {} ({})", node_index, accessor_index, accessor.name)

        return len(done)

    def bake_hierarchy_transforms(
        self,
        document: Document,
        index: int,
        parent_matrix: np.ndarray,
        depth: int = 0,
        visited: Optional[Set[int]] = None,
    ) -> None:
        """
        Fold a node's rotation/scale into its children's translations.

        ``bind = parent_matrix * local``; the node's translation becomes
        ``rotation(parent) * translation * scale(parent)``, its rotation and
        scale are reset, and children recurse with ``bind``.

        Args:
            document: Document to mutate
            index: Node to flatten
            parent_matrix: Global matrix of the node's parent before flattening
            depth: Current recursion depth
            visited: Nodes already flattened in this pass
        """
        if visited is None:
            visited = set()
        if index in visited or depth > MAX_HIERARCHY_DEPTH:
            logger.warning("Infinite loop detected at node {} while baking hierarchy", index)
            return
        visited.add(index)

        node = document.nodes[index]
        bind_matrix = parent_matrix @ node_local_matrix(node)

        _, parent_rotation, parent_scale = decompose_trs(parent_matrix)
        node.translation = rotate_vectors(parent_rotation, node.translation[np.newaxis, :])[0] * parent_scale
        node.rotation = IDENTITY_QUAT.copy()
        node.scale = np.ones(3)

        for child in node.children:
            self.bake_hierarchy_transforms(document, child, bind_matrix, depth + 1, visited)

    def move_offset_to_hips(self, document: Document, hips: int) -> None:
        """Clear the translation of the hips' ancestors and add it to the hips."""
        offset = np.zeros(3)
        for ancestor in document.ancestors(hips):
            node = document.nodes[ancestor]
            offset += node.translation
            node.translation = np.zeros(3)
        document.nodes[hips].translation = document.nodes[hips].translation + offset

    def reverse_z(self, document: Document) -> int:
        """
        Flip handedness: negate X and Z of vertex positions/normals and node translations.

        Returns:
            Number of accessors rewritten
        """
        done: Set[int] = set()
        for _, _, accessor_index, _ in document.mesh_attribute_accessors():
            if accessor_index in done:
                continue
            done.add(accessor_index)
            if not self._is_float_vec3(document, accessor_index):
                continue

            view = document.accessor_view(accessor_index)
            view[:, 0] *= -1
            view[:, 2] *= -1
            document.update_bounds(accessor_index)

        for node in document.nodes:
            node.translation = node.translation * np.array([-1.0, 1.0, -1.0])

        return len(done)

    def recompute_inverse_bind_matrices(self, document: Document) -> int:
        """
        Store ``inverse(global(joint))`` for every joint of every skin.

        Skins sharing an inverse-bind accessor are written once. Bounds are
        refreshed over all 16 elements when the accessor declares them and
        stay absent otherwise.

        Returns:
            Number of accessors rewritten
        """
        done: Set[int] = set()
        for skin_index, skin in enumerate(document.skins):
            accessor_index = skin.inverse_bind_matrices
            if accessor_index is None or accessor_index in done:
                continue
            done.add(accessor_index)

            accessor = document.accessors[accessor_index]
            if accessor.type != "MAT4" or accessor.component_type != FLOAT:
                logger.warning("Skin {} inverse bind matrices are not float MAT4", skin_index)
                continue

            view = document.accessor_view(accessor_index)
            for joint_slot, joint in enumerate(skin.joints[:accessor.count]):
                inverse = invert(global_transform(document, joint))
                view[joint_slot] = to_gltf_matrix(inverse).astype(np.float32)

            if accessor.min is not None and accessor.max is not None:
                document.update_bounds(accessor_index)

        return len(done)

    def _is_float_vec3(self, document: Document, accessor_index: int) -> bool:
        accessor = document.accessors[accessor_index]
        if accessor.buffer_view is None:
            logger.warning("Accessor {} has no buffer view, skipped", accessor_index)
            return False
        if accessor.component_type != FLOAT or accessor.type != "VEC3":
            logger.warning("Accessor {} is not float VEC3, skipped", accessor_index)
            return False
        return True
