from __future__ import annotations

import base64
import json
from pathlib import Path

import numpy as np
import pytest

from avatar_build.errors import GltfValidationError
from avatar_build.gltf.document import Document
from avatar_build.gltf.glb import decode_glb

from conftest import GltfBuilder, build_hips_spine


def test_save_and_load_preserves_scene(tmp_path: Path, builder: GltfBuilder):
    document = build_hips_spine(builder).build()
    path = tmp_path / "avatar.glb"

    size = document.save(path)
    reloaded = Document.load(path)

    assert size == path.stat().st_size
    assert [node.name for node in reloaded.nodes] == ["Hips", "Spine", "Body"]
    assert reloaded.nodes[1].parent == 0
    assert reloaded.skins[0].joints == [0, 1]
    np.testing.assert_allclose(reloaded.read_floats(0), document.read_floats(0))
    assert reloaded.to_gltf()["nodes"] == document.to_gltf()["nodes"]


def test_load_gltf_json_with_data_uri(tmp_path: Path):
    data = np.array([[1, 2, 3]], dtype="<f4").tobytes()
    gltf = {
        "asset": {"version": "2.0"},
        "buffers": [{
            "byteLength": len(data),
            "uri": "data:application/octet-stream;base64," + base64.b64encode(data).decode("ascii"),
        }],
        "bufferViews": [{"buffer": 0, "byteLength": len(data)}],
        "accessors": [{"bufferView": 0, "componentType": 5126, "count": 1, "type": "VEC3"}],
    }
    path = tmp_path / "scene.gltf"
    path.write_text(json.dumps(gltf), encoding="utf-8")

    document = Document.load(path)

    np.testing.assert_allclose(document.read_floats(0), [[1, 2, 3]])


def test_accessor_view_writes_through_to_buffer(builder: GltfBuilder):
    document = build_hips_spine(builder).build()

    view = document.accessor_view(0)
    view[0] = [5.0, 6.0, 7.0]

    np.testing.assert_allclose(document.read_floats(0)[0], [5.0, 6.0, 7.0])


def test_update_bounds_tracks_current_data(builder: GltfBuilder):
    document = build_hips_spine(builder).build()

    document.accessor_view(0)[1] = [-2.0, 9.0, 0.5]
    document.update_bounds(0)

    assert document.accessors[0].min == [-2.0, 1.0, 0.0]
    assert document.accessors[0].max == [0.0, 9.0, 0.5]


def test_repack_aligns_views_and_applies_pending_data(builder: GltfBuilder):
    document = build_hips_spine(builder).build()

    new_view = document.add_buffer_view(b"\x01\x02\x03", name="odd")
    document.set_view_data(0, document.view_bytes(0))
    document.repack()

    assert all(view.byte_offset % 4 == 0 for view in document.buffer_views)
    assert all(view.data is None for view in document.buffer_views)
    assert document.view_bytes(new_view) == b"\x01\x02\x03"
    assert len(document.buffers) == 1


def test_saved_glb_buffer_length_matches_binary_chunk(builder: GltfBuilder):
    document = build_hips_spine(builder).build()
    document.add_buffer_view(b"\x01\x02\x03\x04\x05")

    gltf, bin_chunk = decode_glb(document.to_glb_bytes())

    assert gltf["buffers"][0]["byteLength"] <= len(bin_chunk)
    assert len(bin_chunk) % 4 == 0


def test_link_parents_and_ancestors(builder: GltfBuilder):
    document = build_hips_spine(builder).build()

    assert document.nodes[0].parent is None
    assert list(document.ancestors(1)) == [0]
    assert document.is_ancestor_or_self(0, 1)
    assert not document.is_ancestor_or_self(1, 0)
    assert document.scene_roots() == [0, 2]


def test_ancestors_stop_on_parent_loop(builder: GltfBuilder):
    builder.add_node("A", children=[1])
    builder.add_node("B", children=[0])
    document = builder.build()

    assert len(list(document.ancestors(0))) == 256


def test_validate_accepts_well_formed_document(hips_spine_document: Document):
    hips_spine_document.validate()


def test_validate_rejects_invalid_child(builder: GltfBuilder):
    builder.add_node("Root", children=[7])
    document = builder.build()

    with pytest.raises(GltfValidationError, match="invalid child"):
        document.validate()


def test_validate_rejects_accessor_past_view(hips_spine_document: Document):
    hips_spine_document.accessors[0].count = 100

    with pytest.raises(GltfValidationError, match="exceeds buffer view"):
        hips_spine_document.validate()


def test_node_matrix_is_decomposed():
    matrix = [
        1, 0, 0, 0,
        0, 1, 0, 0,
        0, 0, 1, 0,
        3, 4, 5, 1,
    ]
    document = Document({"nodes": [{"name": "M", "matrix": matrix}]})

    np.testing.assert_allclose(document.nodes[0].translation, [3, 4, 5])
    assert "matrix" not in document.to_gltf()["nodes"][0]
