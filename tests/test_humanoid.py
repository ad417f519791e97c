from __future__ import annotations

import pytest

from avatar_build.bridge.humanoid import (
    EXPORTER_VERSION,
    build_vrm_extension,
    classify_morph_target,
    remove_vrm_extension,
    repair_skeleton_roots,
)
from avatar_build.bridge.types import BoneMap, ExpressionPreset, OutputConfig
from avatar_build.gltf.document import Document

from conftest import GltfBuilder, build_hips_spine


@pytest.fixture
def avatar(builder: GltfBuilder) -> Document:
    build_hips_spine(builder)
    face_positions = builder.add_accessor([[0, 0, 0]])
    builder.add_mesh(
        [{"attributes": {"POSITION": face_positions}}],
        target_names=["browInnerUp", "jawOpen", "Blink", "unknownShape"],
    )
    builder.gltf["materials"] = [
        {"name": "Skin", "pbrMetallicRoughness": {"baseColorTexture": {"index": 2}}},
        {"pbrMetallicRoughness": {}},
    ]
    builder.gltf["animations"] = [{"channels": [], "samplers": []}]
    return builder.build()


def test_classify_morph_target():
    assert classify_morph_target("browInnerUp") == (ExpressionPreset.JOY, ExpressionPreset.SORROW)
    assert classify_morph_target("EyeBlinkLeft") == (ExpressionPreset.BLINK_L, ExpressionPreset.BLINK)
    assert classify_morph_target("fun") == (ExpressionPreset.FUN,)
    assert classify_morph_target("tongueOut") == ()


def test_vrm_extension_structure(avatar: Document):
    bone_map = BoneMap(bones={"hips": 0, "spine": 1, "tail": 2})

    vrm = build_vrm_extension(avatar, bone_map)

    assert avatar.json["extensions"]["VRM"] is vrm
    assert avatar.json["extensionsUsed"] == ["VRM"]
    assert "animations" not in avatar.json
    assert vrm["exporterVersion"] == EXPORTER_VERSION
    assert vrm["specVersion"] == "0.0"
    assert [bone["bone"] for bone in vrm["humanoid"]["humanBones"]] == ["hips", "spine"]
    assert vrm["humanoid"]["humanBones"][0]["node"] == 0
    assert vrm["firstPerson"]["firstPersonBone"] == -1
    assert vrm["firstPerson"]["meshAnnotations"] == [
        {"mesh": 0, "firstPersonFlag": "Auto"},
        {"mesh": 1, "firstPersonFlag": "Auto"},
    ]
    assert vrm["firstPerson"]["lookAtHorizontalInner"]["curve"] == [0, 0, 0, 1, 1, 1, 1, 0]
    assert vrm["secondaryAnimation"] == {"boneGroups": [], "colliderGroups": []}


def test_head_sets_first_person_bone(avatar: Document):
    vrm = build_vrm_extension(avatar, BoneMap(bones={"hips": 0, "head": 1}))

    assert vrm["firstPerson"]["firstPersonBone"] == 1


def test_blend_shape_groups_from_target_names(avatar: Document):
    vrm = build_vrm_extension(avatar, BoneMap())

    groups = {group["presetName"]: group for group in vrm["blendShapeMaster"]["blendShapeGroups"]}
    assert list(groups) == ["a", "blink", "joy", "sorrow"]
    assert groups["joy"]["name"] == "Joy"
    assert groups["joy"]["binds"] == [{"mesh": 1, "index": 0, "weight": 100}]
    assert groups["sorrow"]["binds"] == [{"mesh": 1, "index": 0, "weight": 100}]
    assert groups["a"]["binds"] == [{"mesh": 1, "index": 1, "weight": 100}]
    assert groups["blink"]["binds"] == [{"mesh": 1, "index": 2, "weight": 100}]


def test_meta_and_material_properties(avatar: Document, log_messages):
    output_config = OutputConfig.model_validate({
        "meta": {
            "title": "Avatar",
            "licenseName": "CC0",
            "allowedUserName": "Nobody",
            "favouriteColour": "blue",
        },
        "defaults": {
            "materialProperties": {
                "shader": "VRM/MToon",
                "textureProperties": {"_MainTex": "baseColorTexture", "_ShadeTexture": 3},
            },
        },
    })

    vrm = build_vrm_extension(avatar, BoneMap(), output_config)

    assert vrm["meta"] == {"title": "Avatar", "licenseName": "CC0"}
    assert any("Unknown allowedUserName: Nobody" in message for message in log_messages)

    skin, unnamed = vrm["materialProperties"]
    assert skin["name"] == "Skin"
    assert skin["shader"] == "VRM/MToon"
    assert skin["textureProperties"] == {"_MainTex": 2, "_ShadeTexture": 3}
    assert unnamed["name"] == "material_1"
    assert unnamed["textureProperties"] == {"_ShadeTexture": 3}


def test_skeleton_root_not_containing_joints_is_cleared(builder: GltfBuilder):
    build_hips_spine(builder)
    builder.gltf["skins"][0]["skeleton"] = 1
    document = builder.build()

    assert repair_skeleton_roots(document) == 1
    assert document.skins[0].skeleton is None


def test_skeleton_root_containing_joints_is_kept(builder: GltfBuilder):
    build_hips_spine(builder)
    builder.gltf["skins"][0]["skeleton"] = 0
    document = builder.build()

    assert repair_skeleton_roots(document) == 0
    assert document.skins[0].skeleton == 0


def test_remove_vrm_extension(avatar: Document):
    avatar.json["extensions"] = {"KHR_materials_unlit": {}}
    build_vrm_extension(avatar, BoneMap())

    assert remove_vrm_extension(avatar)
    assert avatar.json["extensions"] == {"KHR_materials_unlit": {}}
    assert "extensionsUsed" not in avatar.json
    assert not remove_vrm_extension(avatar)
