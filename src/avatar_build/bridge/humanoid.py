"""
Humanoid Metadata Module

Synthesizes the VRM 0.0 extension for a retargeted avatar:

- humanoid bone records from the resolved bone map
- first-person defaults (mesh annotations, look-at degree maps)
- material property records from the output configuration
- blend shape groups classified from morph target names
- meta information, with enum-valued keys checked against VRM's vocabularies

VRM forbids animations, so they are stripped, and skin skeleton roots that do
not contain every joint are cleared.
"""

from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from avatar_build import __version__
from avatar_build.bridge.types import (
    BoneMap,
    ExpressionPreset,
    HumanoidBone,
    MaterialDefaults,
    OutputConfig,
)
from avatar_build.gltf.document import Document

VRM_EXTENSION = "VRM"
SPEC_VERSION = "0.0"
EXPORTER_VERSION = f"avatar-build {__version__}"

DEGREE_MAP_CURVE = [0.0, 0.0, 0.0, 1.0, 1.0, 1.0, 1.0, 0.0]
DEGREE_MAP_X_RANGE = 90.0
DEGREE_MAP_Y_RANGE = 10.0
BLEND_SHAPE_WEIGHT = 100

_USAGE = ("Disallow", "Allow")

META_TEXT_KEYS = (
    "title",
    "version",
    "author",
    "contactInformation",
    "reference",
    "otherPermissionUrl",
    "otherLicenseUrl",
)

META_ENUM_KEYS: Dict[str, Tuple[str, ...]] = {
    "allowedUserName": ("OnlyAuthor", "ExplicitlyLicensedPerson", "Everyone"),
    "violentUssageName": _USAGE,
    "sexualUssageName": _USAGE,
    "commercialUssageName": _USAGE,
    "licenseName": (
        "Redistribution_Prohibited",
        "CC0",
        "CC_BY",
        "CC_BY_NC",
        "CC_BY_SA",
        "CC_BY_NC_SA",
        "CC_BY_ND",
        "CC_BY_NC_ND",
        "Other",
    ),
}

P = ExpressionPreset

# Morph target name (lowercase) -> presets it drives
BLEND_SHAPE_TABLE: Dict[str, Tuple[ExpressionPreset, ...]] = {
    "browinnerup": (P.JOY, P.SORROW),
    "browdownleft": (P.ANGRY,),
    "browdownright": (P.ANGRY,),
    "eyeblinkleft": (P.BLINK_L, P.BLINK),
    "eyeblinkright": (P.BLINK_R, P.BLINK),
    "eyesquintleft": (P.JOY, P.FUN),
    "eyesquintright": (P.JOY, P.FUN),
    "eyelookupleft": (P.LOOKUP,),
    "eyelookupright": (P.LOOKUP,),
    "eyelookdownleft": (P.LOOKDOWN,),
    "eyelookdownright": (P.LOOKDOWN,),
    "eyelookoutleft": (P.LOOKLEFT,),
    "eyelookinright": (P.LOOKLEFT,),
    "eyelookinleft": (P.LOOKRIGHT,),
    "eyelookoutright": (P.LOOKRIGHT,),
    "jawopen": (P.A,),
    "mouthfunnel": (P.O,),
    "mouthpucker": (P.U,),
    "mouthstretchleft": (P.I,),
    "mouthstretchright": (P.I,),
    "mouthlowerdownleft": (P.E,),
    "mouthlowerdownright": (P.E,),
    "mouthsmileleft": (P.JOY, P.FUN),
    "mouthsmileright": (P.JOY, P.FUN),
    "mouthfrownleft": (P.SORROW, P.ANGRY),
    "mouthfrownright": (P.SORROW, P.ANGRY),
}


def classify_morph_target(name: str) -> Tuple[ExpressionPreset, ...]:
    """Presets driven by a morph target; preset names themselves map directly."""
    key = name.lower()
    if key in BLEND_SHAPE_TABLE:
        return BLEND_SHAPE_TABLE[key]
    try:
        return (ExpressionPreset(key),)
    except ValueError:
        return ()


def _degree_map() -> Dict[str, Any]:
    return {
        "curve": list(DEGREE_MAP_CURVE),
        "xRange": DEGREE_MAP_X_RANGE,
        "yRange": DEGREE_MAP_Y_RANGE,
    }


def _zero_vec3() -> Dict[str, float]:
    return {"x": 0.0, "y": 0.0, "z": 0.0}


class HumanoidSynthesizer:
    """
    Builds the VRM 0.0 extension object of a document.

    Key operations:
    1. Strip animations and repair skin skeleton roots
    2. Build humanoid bones and first-person settings from the bone map
    3. Build material properties, blend shape groups and meta
    4. Store the result under ``extensions.VRM`` and declare it in
       ``extensionsUsed``
    """

    def build(
        self,
        document: Document,
        bone_map: BoneMap,
        output_config: Optional[OutputConfig] = None,
    ) -> Dict[str, Any]:
        output_config = output_config or OutputConfig()

        strip_animations(document)
        repair_skeleton_roots(document)

        first_person = self._first_person(document)
        vrm = {
            "exporterVersion": EXPORTER_VERSION,
            "specVersion": SPEC_VERSION,
            "meta": self._meta(output_config.meta),
            "humanoid": self._humanoid(bone_map, first_person),
            "firstPerson": first_person,
            "blendShapeMaster": {"blendShapeGroups": self._blend_shape_groups(document)},
            "secondaryAnimation": {"boneGroups": [], "colliderGroups": []},
            "materialProperties": self._material_properties(document, output_config),
        }

        extensions = document.json.setdefault("extensions", {})
        extensions[VRM_EXTENSION] = vrm
        used = document.json.setdefault("extensionsUsed", [])
        if VRM_EXTENSION not in used:
            used.append(VRM_EXTENSION)

        logger.info(
            "VRM extension built: {} human bones, {} blend shape groups",
            len(vrm["humanoid"]["humanBones"]),
            len(vrm["blendShapeMaster"]["blendShapeGroups"]),
        )
        return vrm

    def _humanoid(self, bone_map: BoneMap, first_person: Dict[str, Any]) -> Dict[str, Any]:
        human_bones: List[Dict[str, Any]] = []
        for bone_key, node_index in bone_map.items():
            try:
                bone = HumanoidBone(bone_key)
            except ValueError:
                logger.warning("'{}' is not a humanoid bone, skipped", bone_key)
                continue

            human_bones.append({
                "bone": bone.value,
                "node": node_index,
                "useDefaultValues": True,
                "min": _zero_vec3(),
                "max": _zero_vec3(),
                "center": _zero_vec3(),
                "axisLength": 0.0,
            })
            if bone is HumanoidBone.HEAD:
                first_person["firstPersonBone"] = node_index

        return {
            "humanBones": human_bones,
            "armStretch": 0.05,
            "legStretch": 0.05,
            "upperArmTwist": 0.5,
            "lowerArmTwist": 0.5,
            "upperLegTwist": 0.5,
            "lowerLegTwist": 0.5,
            "feetSpacing": 0.0,
            "hasTranslationDoF": False,
        }

    def _first_person(self, document: Document) -> Dict[str, Any]:
        return {
            "firstPersonBone": -1,
            "firstPersonBoneOffset": _zero_vec3(),
            "meshAnnotations": [
                {"mesh": index, "firstPersonFlag": "Auto"} for index in range(len(document.meshes))
            ],
            "lookAtTypeName": "Bone",
            "lookAtHorizontalInner": _degree_map(),
            "lookAtHorizontalOuter": _degree_map(),
            "lookAtVerticalDown": _degree_map(),
            "lookAtVerticalUp": _degree_map(),
        }

    def _material_properties(self, document: Document, output_config: OutputConfig) -> List[Dict[str, Any]]:
        defaults = output_config.defaults.material_properties or MaterialDefaults()
        properties = []
        for index, material in enumerate(document.materials):
            properties.append({
                "name": material.get("name", f"material_{index}"),
                "shader": defaults.shader,
                "renderQueue": defaults.render_queue,
                "floatProperties": dict(defaults.float_properties),
                "vectorProperties": {k: list(v) for k, v in defaults.vector_properties.items()},
                "textureProperties": self._texture_properties(material, defaults),
                "keywordMap": dict(defaults.keyword_map),
                "tagMap": dict(defaults.tag_map),
            })
        return properties

    def _texture_properties(self, material: Dict[str, Any], defaults: MaterialDefaults) -> Dict[str, int]:
        resolved: Dict[str, int] = {}
        for key, value in defaults.texture_properties.items():
            if isinstance(value, int):
                resolved[key] = value
                continue
            texture = material.get("pbrMetallicRoughness", {}).get(value)
            if texture is not None and "index" in texture:
                resolved[key] = texture["index"]
        return resolved

    def _blend_shape_groups(self, document: Document) -> List[Dict[str, Any]]:
        binds: Dict[ExpressionPreset, List[Dict[str, int]]] = {}
        for mesh_index, mesh in enumerate(document.meshes):
            target_names = mesh.get("extras", {}).get("targetNames", [])
            for target_index, target_name in enumerate(target_names):
                for preset in classify_morph_target(target_name):
                    binds.setdefault(preset, []).append({
                        "mesh": mesh_index,
                        "index": target_index,
                        "weight": BLEND_SHAPE_WEIGHT,
                    })

        return [
            {
                "name": preset.group_name,
                "presetName": preset.value,
                "binds": binds[preset],
                "materialValues": [],
                "isBinary": False,
            }
            for preset in ExpressionPreset
            if preset in binds
        ]

    def _meta(self, values: Dict[str, str]) -> Dict[str, Any]:
        meta: Dict[str, Any] = {}
        for key, value in values.items():
            if key in META_TEXT_KEYS:
                meta[key] = value
            elif key in META_ENUM_KEYS:
                if value in META_ENUM_KEYS[key]:
                    meta[key] = value
                else:
                    logger.error("Unknown {}: {}", key, value)
            else:
                logger.debug("Ignoring unknown meta key '{}'", key)
        return meta


def build_vrm_extension(
    document: Document,
    bone_map: BoneMap,
    output_config: Optional[OutputConfig] = None,
) -> Dict[str, Any]:
    return HumanoidSynthesizer().build(document, bone_map, output_config)


def strip_animations(document: Document) -> int:
    """Drop every animation; returns how many were removed."""
    animations = document.json.pop("animations", [])
    if animations:
        logger.info("Removed {} animations", len(animations))
    return len(animations)


def repair_skeleton_roots(document: Document) -> int:
    """
    Clear skin skeleton roots that are not an ancestor-or-self of every joint.

    Returns:
        Number of skins repaired
    """
    repaired = 0
    for skin_index, skin in enumerate(document.skins):
        root = skin.skeleton
        if root is None:
            continue
        if all(document.is_ancestor_or_self(root, joint) for joint in skin.joints):
            continue
        logger.warning("Skin {} skeleton root {} does not contain all joints, cleared", skin_index, root)
        skin.skeleton = None
        repaired += 1
    return repaired


def remove_vrm_extension(document: Document) -> bool:
    """Remove the VRM extension and its declarations; returns whether one was present."""
    extensions = document.json.get("extensions", {})
    found = extensions.pop(VRM_EXTENSION, None) is not None
    if "extensions" in document.json and not extensions:
        del document.json["extensions"]

    for key in ("extensionsUsed", "extensionsRequired"):
        declared = document.json.get(key)
        if declared is None:
            continue
        declared = [name for name in declared if name != VRM_EXTENSION]
        if declared:
            document.json[key] = declared
        else:
            del document.json[key]
    return found
