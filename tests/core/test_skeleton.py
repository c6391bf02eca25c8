"""Tests for skeleton module."""

import numpy as np
import pytest

from armorfit.core.math_utils import mat4_translation, quat_from_axis_angle, vec3
from armorfit.core.skeleton import Bone, Skeleton


def _arm():
    return Skeleton.build([
        ("Shoulder", None, (0, 1, 0)),
        ("UpperArm", "Shoulder", (1, 1, 0)),
        ("Forearm", "UpperArm", (2, 1, 0)),
    ])


def test_build_world_positions():
    skel = _arm()
    np.testing.assert_allclose(skel.world_positions(), [[0, 1, 0], [1, 1, 0], [2, 1, 0]])
    assert len(skel) == 3
    assert skel.names == ["Shoulder", "UpperArm", "Forearm"]


def test_local_positions_relative_to_parent():
    skel = _arm()
    np.testing.assert_allclose(skel.bones[2].position, [1, 0, 0])


def test_lookup():
    skel = _arm()
    assert skel.index_of("Forearm") == 2
    assert "UpperArm" in skel
    assert skel.get("Missing") is None
    with pytest.raises(KeyError):
        skel.index_of("Missing")


def test_root_index():
    assert _arm().root_index == 0


def test_duplicate_names_rejected():
    with pytest.raises(ValueError):
        Skeleton([Bone("A"), Bone("A", parent=0)])


def test_parent_must_precede_child():
    with pytest.raises(ValueError):
        Skeleton([Bone("A", parent=1), Bone("B")])


def test_unknown_parent_rejected():
    with pytest.raises(ValueError):
        Skeleton.build([("A", "Nope", (0, 0, 0))])


def test_rotation_propagates_to_children():
    skel = _arm()
    skel.bones[1].set_quaternion(quat_from_axis_angle(vec3(0, 0, 1), np.pi / 2))
    skel.update_world_matrices()
    np.testing.assert_allclose(skel.bones[2].get_world_position(), [1, 2, 0], atol=1e-12)


def test_root_matrix():
    skel = _arm()
    skel.set_root_matrix(mat4_translation(0, 0, 3))
    np.testing.assert_allclose(skel.world_positions()[:, 2], [3, 3, 3])


def test_bind_inverses():
    skel = _arm()
    np.testing.assert_allclose(
        skel.world_matrices() @ skel.bone_inverses, np.tile(np.eye(4), (3, 1, 1)), atol=1e-12,
    )
    skel.bones[0].set_position(0, 2, 0)
    skel.update_world_matrices()
    # Inverses stay at the bind pose until recaptured
    assert not np.allclose(skel.world_matrices() @ skel.bone_inverses, np.eye(4))
    skel.calculate_inverses()
    np.testing.assert_allclose(skel.world_matrices() @ skel.bone_inverses, np.tile(np.eye(4), (3, 1, 1)), atol=1e-12)


class TestMatch:
    def test_case_insensitive_substring(self):
        skel = Skeleton.build([
            ("Hips", None, (0, 1, 0)),
            ("Spine", "Hips", (0, 1.2, 0)),
            ("LeftShoulder", "Spine", (0.2, 1.4, 0)),
            ("LeftUpperArm", "LeftShoulder", (0.4, 1.4, 0)),
        ])
        assert skel.match(["spine"]) == [1]
        assert skel.match(["left"]) == [2, 3]
        assert skel.match(["left"], exclude=["arm"]) == [2]
        assert skel.match([]) == []
