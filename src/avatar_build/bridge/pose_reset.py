"""
Pose Application Module

Forces a canonical stance (typically the T-pose) onto the resolved bones
before the skin is rebound, and corrects bone roll without moving the rest of
the skeleton.
"""

from typing import Optional

import numpy as np
from loguru import logger

from avatar_build.bridge.types import BoneMap, Pose
from avatar_build.gltf.document import Document
from avatar_build.gltf.math3d import quat_inverse, quat_multiply, quat_normalize, rotate_vectors


class PoseReset:
    """
    Applies named poses to a resolved skeleton.

    Each pose bone's rotation is composed onto the bone's current local
    rotation (``normalize(current * target)``). Pose bones whose key is not
    in the bone map are ignored.
    """

    def apply_pose(self, document: Document, bone_map: BoneMap, pose: Optional[Pose]) -> int:
        """
        Compose the pose rotations onto the mapped bones.

        Args:
            document: Document whose nodes are rotated in place
            bone_map: Resolved bones
            pose: Pose to apply; None is a logged no-op

        Returns:
            Number of bones rotated
        """
        if pose is None:
            logger.warning("Pose is not defined in the input config, skipped")
            return 0

        applied = 0
        for pose_bone in pose.bones:
            index = bone_map.get(pose_bone.key)
            if index is None:
                continue
            node = document.nodes[index]
            node.rotation = quat_normalize(quat_multiply(node.rotation, pose_bone.rotation))
            applied += 1

        if applied == 0:
            logger.warning("Pose '{}' matched no bones", pose.name)
        else:
            logger.debug("Pose '{}' applied to {} bones", pose.name, applied)
        return applied

    def fix_roll(self, document: Document, bone_map: BoneMap, pose: Optional[Pose]) -> int:
        """
        Rotate bones in place while keeping their descendants where they are.

        The inverse of each applied rotation is premultiplied onto the bone's
        direct children and also rotates their translations, so only the rolled
        bone changes orientation. Converters that only post-multiply the child
        rotation by ``inverse(roll)`` and leave its translation alone produce
        different output for "roll" poses.

        Returns:
            Number of bones rolled
        """
        if pose is None:
            logger.warning("Roll pose is not defined in the input config, skipped")
            return 0

        rolled = 0
        for pose_bone in pose.bones:
            index = bone_map.get(pose_bone.key)
            if index is None:
                continue

            node = document.nodes[index]
            roll = quat_normalize(pose_bone.rotation)
            node.rotation = quat_normalize(quat_multiply(node.rotation, roll))

            unroll = quat_inverse(roll)
            for child in node.children:
                child_node = document.nodes[child]
                child_node.rotation = quat_normalize(quat_multiply(unroll, child_node.rotation))
                child_node.translation = rotate_vectors(unroll, child_node.translation[np.newaxis, :])[0]
            rolled += 1

        if rolled == 0:
            logger.warning("Roll pose '{}' matched no bones", pose.name)
        return rolled


def apply_pose(document: Document, bone_map: BoneMap, pose: Optional[Pose]) -> int:
    return PoseReset().apply_pose(document, bone_map, pose)


def fix_roll(document: Document, bone_map: BoneMap, pose: Optional[Pose]) -> int:
    return PoseReset().fix_roll(document, bone_map, pose)
