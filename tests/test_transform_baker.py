from __future__ import annotations

import numpy as np

from avatar_build.bridge.bone_resolver import resolve_bones
from avatar_build.bridge.transform_baker import TransformBaker, global_transform
from avatar_build.bridge.types import BoneMap, InputConfig, SearchConfig
from avatar_build.gltf.document import Document
from avatar_build.gltf.math3d import from_gltf_matrix

from conftest import ROT_Z_90, GltfBuilder


def _rotated_chain(builder: GltfBuilder) -> Document:
    builder.add_node("Root", translation=[0, 0, 0], rotation=ROT_Z_90, scale=[2, 2, 2], children=[1])
    builder.add_node("Hips", translation=[0, 1, 0], children=[2])
    builder.add_node("Spine", translation=[0, 1, 0])
    builder.set_scene([0])
    return builder.build()


def test_hierarchy_bake_keeps_world_positions(builder: GltfBuilder):
    document = _rotated_chain(builder)
    before = [global_transform(document, index)[:3, 3] for index in range(3)]

    TransformBaker().bake_transforms(document)

    after = [global_transform(document, index)[:3, 3] for index in range(3)]
    np.testing.assert_allclose(after, before, atol=1e-9)
    for node in document.nodes:
        np.testing.assert_allclose(node.rotation, [0, 0, 0, 1])
        np.testing.assert_allclose(node.scale, [1, 1, 1])


def test_hierarchy_bake_is_idempotent(builder: GltfBuilder):
    document = _rotated_chain(builder)
    baker = TransformBaker()

    baker.bake_transforms(document)
    first = [node.translation.copy() for node in document.nodes]
    baker.bake_transforms(document)

    np.testing.assert_allclose([node.translation for node in document.nodes], first, atol=1e-12)


def test_hierarchy_bake_stops_on_cycle(builder: GltfBuilder, log_messages):
    builder.add_node("A", children=[1])
    builder.add_node("B", children=[0])
    builder.set_scene([0])
    document = builder.build()

    TransformBaker().bake_transforms(document)

    assert any("Infinite loop" in message for message in log_messages)


def test_mesh_bake_applies_node_transform(builder: GltfBuilder):
    positions = builder.add_accessor([[1, 0, 0], [0, 1, 0]])
    normals = builder.add_accessor([[1, 0, 0], [0, 1, 0]])
    mesh = builder.add_mesh([{"attributes": {"POSITION": positions, "NORMAL": normals}}])
    builder.add_node("Body", translation=[0, 0, 1], rotation=ROT_Z_90, scale=[2, 2, 2], mesh=mesh)
    document = builder.build()

    baked = TransformBaker().bake_mesh_transforms(document)

    assert baked == 2
    # scale, then translate, then rotate 90 degrees about Z
    np.testing.assert_allclose(document.read_floats(positions), [[0, 2, 1], [-2, 0, 1]], atol=1e-6)
    np.testing.assert_allclose(document.read_floats(normals), [[0, 1, 0], [-1, 0, 0]], atol=1e-6)
    np.testing.assert_allclose(document.accessors[positions].min, [-2, 0, 1], atol=1e-6)
    np.testing.assert_allclose(document.accessors[positions].max, [0, 2, 1], atol=1e-6)


def test_mesh_bake_skips_translation_for_morph_targets(builder: GltfBuilder):
    positions = builder.add_accessor([[0, 0, 0]])
    delta = builder.add_accessor([[1, 0, 0]])
    mesh = builder.add_mesh([{"attributes": {"POSITION": positions}, "targets": [{"POSITION": delta}]}])
    builder.add_node("Face", translation=[5, 5, 5], mesh=mesh)
    document = builder.build()

    TransformBaker().bake_mesh_transforms(document)

    np.testing.assert_allclose(document.read_floats(positions), [[5, 5, 5]])
    np.testing.assert_allclose(document.read_floats(delta), [[1, 0, 0]])


def test_shared_accessor_is_baked_once(builder: GltfBuilder):
    positions = builder.add_accessor([[1, 1, 1]])
    mesh = builder.add_mesh([{"attributes": {"POSITION": positions}}])
    builder.add_node("A", translation=[1, 0, 0], mesh=mesh)
    builder.add_node("B", translation=[1, 0, 0], mesh=mesh)
    document = builder.build()

    TransformBaker().bake_mesh_transforms(document)

    np.testing.assert_allclose(document.read_floats(positions), [[2, 1, 1]])


def test_hips_receive_ancestor_offset(builder: GltfBuilder):
    builder.add_node("Armature", translation=[0, 0, 3], children=[1])
    builder.add_node("Hips", translation=[0, 1, 0])
    builder.set_scene([0])
    document = builder.build()
    bone_map = BoneMap(bones={"hips": 1})

    TransformBaker().bake_transforms(document, bone_map)

    np.testing.assert_allclose(document.nodes[0].translation, [0, 0, 0])
    np.testing.assert_allclose(document.nodes[1].translation, [0, 1, 3])


def test_reverse_z_twice_restores_data(hips_spine_document: Document):
    document = hips_spine_document
    positions = document.read_floats(0)
    normals = document.read_floats(1)
    bounds = [(list(document.accessors[i].min), list(document.accessors[i].max)) for i in (0, 1)]
    translations = [node.translation.copy() for node in document.nodes]
    baker = TransformBaker()

    baker.reverse_z(document)
    np.testing.assert_allclose(document.nodes[0].translation, [-0.0, 1, -0.0])
    baker.reverse_z(document)

    assert np.array_equal(document.read_floats(0), positions)
    assert np.array_equal(document.read_floats(1), normals)
    assert [(document.accessors[i].min, document.accessors[i].max) for i in (0, 1)] == bounds
    for node, translation in zip(document.nodes, translations):
        assert np.array_equal(node.translation, translation)


def test_reverse_z_negates_x_and_z(builder: GltfBuilder):
    positions = builder.add_accessor([[1, 2, 3]])
    mesh = builder.add_mesh([{"attributes": {"POSITION": positions}}])
    builder.add_node("Body", translation=[1, 2, 3], mesh=mesh)
    document = builder.build()

    TransformBaker().reverse_z(document)

    np.testing.assert_allclose(document.read_floats(positions), [[-1, 2, -3]])
    np.testing.assert_allclose(document.nodes[0].translation, [-1, 2, -3])
    assert document.accessors[positions].min == [-1.0, 2.0, -3.0]


def test_inverse_bind_matrices_follow_joint_globals(hips_spine_document: Document):
    document = hips_spine_document
    document.nodes[0].translation = np.array([0.0, 2.0, 0.0])

    rewritten = TransformBaker().recompute_inverse_bind_matrices(document)

    assert rewritten == 1
    ibm_accessor = document.skins[0].inverse_bind_matrices
    matrices = [from_gltf_matrix(values) for values in document.read_floats(ibm_accessor)]
    for slot, joint in enumerate(document.skins[0].joints):
        np.testing.assert_allclose(matrices[slot] @ global_transform(document, joint), np.eye(4), atol=1e-6)

    accessor = document.accessors[ibm_accessor]
    np.testing.assert_allclose(accessor.min[12:15], [0, -2.5, 0], atol=1e-6)
    np.testing.assert_allclose(accessor.max[12:15], [0, -2, 0], atol=1e-6)


def test_inverse_bind_bounds_are_fully_refreshed(hips_spine_document: Document):
    document = hips_spine_document
    accessor = document.accessors[document.skins[0].inverse_bind_matrices]
    accessor.min = [-9.0] * 16
    accessor.max = [9.0] * 16

    TransformBaker().recompute_inverse_bind_matrices(document)

    expected_min = [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, -1.5, 0.0, 1.0]
    expected_max = [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, -1.0, 0.0, 1.0]
    np.testing.assert_allclose(accessor.min, expected_min, atol=1e-6)
    np.testing.assert_allclose(accessor.max, expected_max, atol=1e-6)


def test_inverse_bind_without_bounds_stays_without(hips_spine_document: Document):
    document = hips_spine_document
    accessor = document.accessors[document.skins[0].inverse_bind_matrices]
    accessor.min = None
    accessor.max = None

    TransformBaker().recompute_inverse_bind_matrices(document)

    assert accessor.min is None
    assert accessor.max is None


def test_full_bake_of_skinned_avatar(hips_spine_document: Document):
    document = hips_spine_document
    config = InputConfig(config=SearchConfig(), bones={"hips": "Hips", "spine": "Spine"})
    bone_map = resolve_bones(document, config)

    TransformBaker().bake_transforms(document, bone_map)

    ibm = document.read_floats(document.skins[0].inverse_bind_matrices)
    np.testing.assert_allclose(ibm[0][12:15], [0, -1, 0], atol=1e-6)
    np.testing.assert_allclose(ibm[1][12:15], [0, -1.5, 0], atol=1e-6)
