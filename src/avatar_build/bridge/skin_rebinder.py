"""
Skin Rebinder Module

Re-bakes skinned vertex data into the current pose: every vertex is moved by
the weighted blend of its joints' current transforms, so the posed shape
becomes the new rest shape. Run after a pose is applied and before the
inverse bind matrices are recomputed.
"""

from typing import Dict, List, Optional, Set

import numpy as np
from loguru import logger

from avatar_build.bridge.transform_baker import global_transform, invert, node_local_matrix
from avatar_build.gltf.document import FLOAT, Document, Skin
from avatar_build.gltf.math3d import IDENTITY_QUAT, from_gltf_matrix, normalize_rows

MAX_INFLUENCES = 4


def joint_chain_transform(document: Document, joint: int, joint_set: Set[int]) -> np.ndarray:
    """
    Global transform of a joint restricted to its joint ancestors.

    The ascent stops at the first ancestor that carries a mesh or is not a
    joint of the skin, so non-joint parent offsets are ignored.
    """
    matrix = node_local_matrix(document.nodes[joint])
    for parent in document.ancestors(joint):
        parent_node = document.nodes[parent]
        if parent_node.mesh is not None or parent not in joint_set:
            break
        matrix = node_local_matrix(parent_node) @ matrix
    return matrix


def capture_joint_only_binds(document: Document) -> Dict[int, np.ndarray]:
    """
    Snapshot joint-only inverse bind matrices for every skin.

    Must be taken before a pose is applied; the rebind then measures the pose
    change against this snapshot.

    Returns:
        Mapping of skin index -> ``(joints, 4, 4)`` inverse bind matrices
    """
    binds: Dict[int, np.ndarray] = {}
    for skin_index, skin in enumerate(document.skins):
        joint_set = set(skin.joints)
        matrices = [invert(joint_chain_transform(document, joint, joint_set)) for joint in skin.joints]
        binds[skin_index] = np.array(matrices).reshape(-1, 4, 4)
    return binds


class SkinRebinder:
    """
    Moves skinned vertices into the pose currently held by the joints.

    Key operations:
    1. For each skinned mesh node, build one skinning matrix per joint:
       ``inverse(meshGlobal) * jointGlobal * inverseBind``
    2. Blend up to four of them per vertex and place the vertex with
       ``meshGlobal * blended``
    3. Transform normals by the inverse-transpose and renormalise
    4. Reset the mesh node's rotation/scale
    """

    def rebind(
        self,
        document: Document,
        joint_only: bool = False,
        inverse_binds: Optional[Dict[int, np.ndarray]] = None,
    ) -> int:
        """
        Rebind every skinned primitive of the document.

        Args:
            document: Document to mutate in place
            joint_only: Use joint-only chains instead of the stored inverse binds
            inverse_binds: Joint-only binds captured before the pose was applied

        Returns:
            Number of primitives rebound
        """
        done: Set[int] = set()
        rebound = 0

        for node_index, node in enumerate(document.nodes):
            if node.mesh is None:
                continue
            primitives = [
                primitive
                for primitive in document.meshes[node.mesh].get("primitives", [])
                if {"POSITION", "JOINTS_0", "WEIGHTS_0"} <= set(primitive.get("attributes", {}))
            ]
            if not primitives:
                continue
            if node.skin is None:
                logger.warning("Mesh node {} has skinning attributes but no skin", node_index)
                continue

            skin = document.skins[node.skin]
            bind_inverses = self._bind_inverses(document, node.skin, skin, joint_only, inverse_binds)
            mesh_global = global_transform(document, node_index)
            skin_matrices = invert(mesh_global) @ self._joint_globals(document, skin) @ bind_inverses

            for primitive in primitives:
                position_index = primitive["attributes"]["POSITION"]
                if position_index in done:
                    continue
                done.add(position_index)
                if self._rebind_primitive(document, node_index, primitive, skin_matrices, mesh_global, done):
                    rebound += 1

            node.rotation = IDENTITY_QUAT.copy()
            node.scale = np.ones(3)

        logger.debug("Rebound {} skinned primitives", rebound)
        return rebound

    def _joint_globals(self, document: Document, skin: Skin) -> np.ndarray:
        matrices = [global_transform(document, joint) for joint in skin.joints]
        return np.array(matrices).reshape(-1, 4, 4)

    def _bind_inverses(
        self,
        document: Document,
        skin_index: int,
        skin: Skin,
        joint_only: bool,
        inverse_binds: Optional[Dict[int, np.ndarray]],
    ) -> np.ndarray:
        if inverse_binds is not None and skin_index in inverse_binds:
            return inverse_binds[skin_index]
        if joint_only:
            return capture_joint_only_binds(document)[skin_index]

        joint_count = len(skin.joints)
        if skin.inverse_bind_matrices is None:
            return np.tile(np.eye(4), (joint_count, 1, 1))

        flat = document.read_floats(skin.inverse_bind_matrices)[:joint_count]
        matrices: List[np.ndarray] = [from_gltf_matrix(values) for values in flat]
        matrices.extend(np.eye(4) for _ in range(joint_count - len(matrices)))
        return np.array(matrices).reshape(-1, 4, 4)

    def _rebind_primitive(
        self,
        document: Document,
        node_index: int,
        primitive: dict,
        skin_matrices: np.ndarray,
        mesh_global: np.ndarray,
        done: Set[int],
    ) -> bool:
        attributes = primitive["attributes"]
        position_index = attributes["POSITION"]
        accessor = document.accessors[position_index]
        if accessor.component_type != FLOAT or accessor.type != "VEC3":
            logger.warning("Node {} POSITION accessor {} is not float VEC3, skipped", node_index, position_index)
            return False

        positions_view = document.accessor_view(position_index)
        joints = document.read_uints(attributes["JOINTS_0"])[:, :MAX_INFLUENCES]
        weights = document.read_floats(attributes["WEIGHTS_0"])[:, :MAX_INFLUENCES]

        count = min(len(positions_view), len(joints), len(weights))
        if count < len(positions_view):
            logger.warning("Node {} has fewer joint/weight entries than vertices", node_index)
        joints = joints[:count]
        weights = weights[:count]

        joint_count = len(skin_matrices)
        in_range = joints < joint_count
        valid = (weights > 0.0) & in_range
        skipped = int(np.count_nonzero((weights > 0.0) & ~in_range))
        if skipped:
            logger.warning("Node {}: skipped {} influences with out-of-range joints", node_index, skipped)

        if joint_count == 0:
            return False

        blend_weights = np.where(valid, weights, 0.0)
        blend_joints = np.where(valid, joints, 0)
        blended = np.einsum("nk,nkij->nij", blend_weights, skin_matrices[blend_joints])
        world = np.matmul(mesh_global, blended)
        # vertices without a valid influence keep their data
        world[~valid.any(axis=1)] = np.eye(4)

        positions = positions_view[:count].astype(np.float64)
        moved = np.einsum("nij,nj->ni", world[:, :3, :3], positions) + world[:, :3, 3]
        positions_view[:count] = moved.astype(np.float32)
        document.update_bounds(position_index)

        normal_index = attributes.get("NORMAL")
        if normal_index is not None and normal_index not in done:
            done.add(normal_index)
            self._rebind_normals(document, normal_index, world, count)

        return True

    def _rebind_normals(self, document: Document, normal_index: int, world: np.ndarray, count: int) -> None:
        accessor = document.accessors[normal_index]
        if accessor.component_type != FLOAT or accessor.type != "VEC3":
            logger.warning("NORMAL accessor {} is not float VEC3, skipped", normal_index)
            return

        normals_view = document.accessor_view(normal_index)
        count = min(count, len(normals_view))
        linear = world[:count, :3, :3].copy()
        singular = np.abs(np.linalg.det(linear)) < 1e-12
        linear[singular] = np.eye(3)
        normal_matrices = np.transpose(np.linalg.inv(linear), (0, 2, 1))

        normals = normals_view[:count].astype(np.float64)
        rotated = normalize_rows(np.einsum("nij,nj->ni", normal_matrices, normals))
        normals_view[:count] = rotated.astype(np.float32)
        if accessor.min is not None:
            document.update_bounds(normal_index)


def rebind_skins(
    document: Document,
    joint_only: bool = False,
    inverse_binds: Optional[Dict[int, np.ndarray]] = None,
) -> int:
    return SkinRebinder().rebind(document, joint_only=joint_only, inverse_binds=inverse_binds)
