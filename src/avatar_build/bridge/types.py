"""
Data models and types for the avatar bridge stages.

Configuration files are parsed once into pydantic models; the stages consume
typed values only.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from avatar_build.errors import ConfigError


class HumanoidBone(str, Enum):
    """Humanoid bone roles defined by VRM 0.0."""

    HIPS = "hips"
    LEFT_UPPER_LEG = "leftUpperLeg"
    RIGHT_UPPER_LEG = "rightUpperLeg"
    LEFT_LOWER_LEG = "leftLowerLeg"
    RIGHT_LOWER_LEG = "rightLowerLeg"
    LEFT_FOOT = "leftFoot"
    RIGHT_FOOT = "rightFoot"
    SPINE = "spine"
    CHEST = "chest"
    NECK = "neck"
    HEAD = "head"
    LEFT_SHOULDER = "leftShoulder"
    RIGHT_SHOULDER = "rightShoulder"
    LEFT_UPPER_ARM = "leftUpperArm"
    RIGHT_UPPER_ARM = "rightUpperArm"
    LEFT_LOWER_ARM = "leftLowerArm"
    RIGHT_LOWER_ARM = "rightLowerArm"
    LEFT_HAND = "leftHand"
    RIGHT_HAND = "rightHand"
    LEFT_TOES = "leftToes"
    RIGHT_TOES = "rightToes"
    LEFT_EYE = "leftEye"
    RIGHT_EYE = "rightEye"
    JAW = "jaw"
    LEFT_THUMB_PROXIMAL = "leftThumbProximal"
    LEFT_THUMB_INTERMEDIATE = "leftThumbIntermediate"
    LEFT_THUMB_DISTAL = "leftThumbDistal"
    LEFT_INDEX_PROXIMAL = "leftIndexProximal"
    LEFT_INDEX_INTERMEDIATE = "leftIndexIntermediate"
    LEFT_INDEX_DISTAL = "leftIndexDistal"
    LEFT_MIDDLE_PROXIMAL = "leftMiddleProximal"
    LEFT_MIDDLE_INTERMEDIATE = "leftMiddleIntermediate"
    LEFT_MIDDLE_DISTAL = "leftMiddleDistal"
    LEFT_RING_PROXIMAL = "leftRingProximal"
    LEFT_RING_INTERMEDIATE = "leftRingIntermediate"
    LEFT_RING_DISTAL = "leftRingDistal"
    LEFT_LITTLE_PROXIMAL = "leftLittleProximal"
    LEFT_LITTLE_INTERMEDIATE = "leftLittleIntermediate"
    LEFT_LITTLE_DISTAL = "leftLittleDistal"
    RIGHT_THUMB_PROXIMAL = "rightThumbProximal"
    RIGHT_THUMB_INTERMEDIATE = "rightThumbIntermediate"
    RIGHT_THUMB_DISTAL = "rightThumbDistal"
    RIGHT_INDEX_PROXIMAL = "rightIndexProximal"
    RIGHT_INDEX_INTERMEDIATE = "rightIndexIntermediate"
    RIGHT_INDEX_DISTAL = "rightIndexDistal"
    RIGHT_MIDDLE_PROXIMAL = "rightMiddleProximal"
    RIGHT_MIDDLE_INTERMEDIATE = "rightMiddleIntermediate"
    RIGHT_MIDDLE_DISTAL = "rightMiddleDistal"
    RIGHT_RING_PROXIMAL = "rightRingProximal"
    RIGHT_RING_INTERMEDIATE = "rightRingIntermediate"
    RIGHT_RING_DISTAL = "rightRingDistal"
    RIGHT_LITTLE_PROXIMAL = "rightLittleProximal"
    RIGHT_LITTLE_INTERMEDIATE = "rightLittleIntermediate"
    RIGHT_LITTLE_DISTAL = "rightLittleDistal"
    UPPER_CHEST = "upperChest"


class ExpressionPreset(str, Enum):
    """Blend shape presets defined by VRM 0.0."""

    NEUTRAL = "neutral"
    A = "a"
    I = "i"  # noqa: E741
    U = "u"
    E = "e"
    O = "o"  # noqa: E741
    BLINK = "blink"
    JOY = "joy"
    ANGRY = "angry"
    SORROW = "sorrow"
    FUN = "fun"
    LOOKUP = "lookup"
    LOOKDOWN = "lookdown"
    LOOKLEFT = "lookleft"
    LOOKRIGHT = "lookright"
    BLINK_L = "blink_l"
    BLINK_R = "blink_r"

    @property
    def group_name(self) -> str:
        """Display name used for the blend shape group ("Joy", "Blink_L", ...)."""
        names = {
            ExpressionPreset.LOOKUP: "LookUp",
            ExpressionPreset.LOOKDOWN: "LookDown",
            ExpressionPreset.LOOKLEFT: "LookLeft",
            ExpressionPreset.LOOKRIGHT: "LookRight",
            ExpressionPreset.BLINK_L: "Blink_L",
            ExpressionPreset.BLINK_R: "Blink_R",
        }
        return names.get(self, self.value.capitalize())


# Input (bone) configuration ------------------------------------------


class SearchConfig(BaseModel):
    """Bone search switches. Keys missing from an explicit ``config`` section are off."""

    pattern_match: bool = False
    with_any_case: bool = False
    t_pose: str = "T"
    roll_pose: str = "roll"
    joint_only: bool = False


class PoseBoneConfig(BaseModel):
    rotation: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 1.0)


class InputConfig(BaseModel):
    """Bone-name configuration: search switches, bone keys and named poses."""

    config: SearchConfig = Field(
        default_factory=lambda: SearchConfig(pattern_match=True, with_any_case=True)
    )
    bones: Dict[str, str] = Field(default_factory=dict)
    poses: Dict[str, Dict[str, PoseBoneConfig]] = Field(default_factory=dict)

    @field_validator("bones", "poses", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return {} if value is None else value

    def pose(self, name: str) -> Optional["Pose"]:
        bones = self.poses.get(name)
        if bones is None:
            return None
        return Pose(
            name=name,
            bones=[PoseBone(key=key, rotation=props.rotation) for key, props in bones.items()],
        )


@dataclass
class PoseBone:
    """Target local rotation for one bone key."""

    key: str
    rotation: Tuple[float, float, float, float]


@dataclass
class Pose:
    """Named set of bone rotations used to force a canonical stance."""

    name: str
    bones: List[PoseBone] = field(default_factory=list)


@dataclass
class BoneMap:
    """
    Result of bone resolution.

    ``bones`` maps a semantic bone key to a node index and never maps two keys
    to the same node.
    """

    bones: Dict[str, int] = field(default_factory=dict)
    unmatched: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.bones)

    def __contains__(self, key: str) -> bool:
        return key in self.bones

    def get(self, key: str) -> Optional[int]:
        return self.bones.get(key)

    def items(self) -> Iterator[Tuple[str, int]]:
        return iter(self.bones.items())


# Output configuration ------------------------------------------------


class MaterialDefaults(BaseModel):
    """Default VRM material property record applied to every material."""

    shader: str = "VRM_USE_GLTFSHADER"
    render_queue: int = Field(default=2000, alias="renderQueue")
    float_properties: Dict[str, float] = Field(default_factory=dict, alias="floatProperties")
    vector_properties: Dict[str, List[float]] = Field(default_factory=dict, alias="vectorProperties")
    texture_properties: Dict[str, Union[int, str]] = Field(
        default_factory=dict, alias="textureProperties"
    )
    keyword_map: Dict[str, bool] = Field(default_factory=dict, alias="keywordMap")
    tag_map: Dict[str, str] = Field(default_factory=dict, alias="tagMap")

    model_config = {"populate_by_name": True}


class OutputDefaults(BaseModel):
    material_properties: Optional[MaterialDefaults] = Field(default=None, alias="materialProperties")

    model_config = {"populate_by_name": True}


class MaterialOverride(BaseModel):
    """Rules select materials (regex on ``name``); values are applied to the matches."""

    rules: Dict[str, str] = Field(default_factory=dict)
    values: Dict[str, Any] = Field(default_factory=dict)


class Overrides(BaseModel):
    materials: List[MaterialOverride] = Field(default_factory=list)


class OutputConfig(BaseModel):
    """Output configuration: VRM meta, material defaults and overrides."""

    meta: Dict[str, str] = Field(default_factory=dict)
    defaults: OutputDefaults = Field(default_factory=OutputDefaults)
    overrides: Overrides = Field(default_factory=Overrides)
    base_dir: Optional[Path] = Field(default=None, exclude=True)


def load_json_file(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except OSError as exc:
        raise ConfigError(f"Unable to read {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse JSON file {path}: {exc}") from exc


def load_input_config(path: Path) -> InputConfig:
    try:
        return InputConfig.model_validate(load_json_file(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid input config {path}: {exc}") from exc


def load_output_config(path: Path) -> OutputConfig:
    try:
        config = OutputConfig.model_validate(load_json_file(path))
    except ValidationError as exc:
        raise ConfigError(f"Invalid output config {path}: {exc}") from exc
    config.base_dir = Path(path).parent
    return config
