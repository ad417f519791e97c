"""
Avatar Bridge

Document-level stages of the avatar build: bone resolution, transform
baking, skin rebinding, pose application, VRM metadata and validation.
"""

from avatar_build.bridge.bone_resolver import BoneResolver, resolve_bones
from avatar_build.bridge.humanoid import build_vrm_extension, remove_vrm_extension
from avatar_build.bridge.skin_rebinder import SkinRebinder, capture_joint_only_binds, rebind_skins
from avatar_build.bridge.transform_baker import TransformBaker, global_transform
from avatar_build.bridge.types import BoneMap, InputConfig, OutputConfig, Pose
from avatar_build.bridge.validator import ValidationReport, validate_humanoid

__all__ = [
    "BoneMap",
    "BoneResolver",
    "InputConfig",
    "OutputConfig",
    "Pose",
    "SkinRebinder",
    "TransformBaker",
    "ValidationReport",
    "build_vrm_extension",
    "capture_joint_only_binds",
    "global_transform",
    "rebind_skins",
    "remove_vrm_extension",
    "resolve_bones",
    "validate_humanoid",
]
