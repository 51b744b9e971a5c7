"""Tests for the rigid Pose type and transform helpers."""

import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.append(str(Path(__file__).parent.parent / "src"))

from scan_registration.utils.transforms import (
    Pose,
    normalize_vector,
    rotation_about_axis,
    small_angle_update,
)


def test_identity_leaves_points_unchanged():
    pts = np.array([[1.0, 2.0, 3.0], [-0.5, 0.0, 4.0]])
    np.testing.assert_array_equal(Pose.identity().apply(pts), pts)


def test_rotation_about_z_maps_x_to_y():
    pose = Pose.from_axis_angle([0.0, 0.0, 1.0], 90.0, translation=[1.0, 0.0, 0.0])
    out = pose.apply(np.array([1.0, 0.0, 0.0]))
    np.testing.assert_allclose(out, [1.0, 1.0, 0.0], atol=1e-12)


def test_compose_applies_right_operand_first():
    rot = Pose.from_axis_angle([0.0, 0.0, 1.0], 90.0)
    shift = Pose.from_translation([1.0, 0.0, 0.0])
    p = np.array([[0.0, 0.0, 0.0]])

    np.testing.assert_allclose(rot.compose(shift).apply(p), [[0.0, 1.0, 0.0]], atol=1e-12)
    np.testing.assert_allclose((shift @ rot).apply(p), [[1.0, 0.0, 0.0]], atol=1e-12)


def test_inverse_round_trip():
    pose = Pose.from_axis_angle([1.0, 2.0, 0.5], 33.0, translation=[0.2, -1.0, 3.0])
    pts = np.random.default_rng(0).normal(size=(20, 3))
    np.testing.assert_allclose(pose.inverse().apply(pose.apply(pts)), pts, atol=1e-12)
    np.testing.assert_allclose(pose.compose(pose.inverse()).matrix, np.eye(4), atol=1e-12)


def test_apply_to_normals_ignores_translation():
    pose = Pose.from_axis_angle([0.0, 0.0, 1.0], 90.0, translation=[5.0, 5.0, 5.0])
    np.testing.assert_allclose(pose.apply_to_normals(np.array([[1.0, 0.0, 0.0]])), [[0.0, 1.0, 0.0]], atol=1e-12)


def test_apply_empty():
    assert Pose.identity().apply(np.zeros((0, 3))).shape == (0, 3)


def test_small_angle_update_and_orthonormalize():
    T = small_angle_update([0.0, 0.0, 0.1, 0.5, 0.0, 0.0])
    np.testing.assert_allclose(T[:3, 3], [0.5, 0.0, 0.0])
    assert T[1, 0] == pytest.approx(0.1)
    assert T[0, 1] == pytest.approx(-0.1)

    pose = Pose(T)
    assert not pose.is_orthonormal()
    fixed = pose.orthonormalized()
    assert fixed.is_orthonormal()
    np.testing.assert_allclose(fixed.translation, [0.5, 0.0, 0.0])
    assert fixed.yaw_degrees([0.0, 0.0, 1.0]) == pytest.approx(np.rad2deg(np.arctan(0.1)), abs=1e-9)


@pytest.mark.parametrize("angle, expected", [(30.0, 30.0), (-45.0, -45.0), (270.0, -90.0)])
def test_yaw_degrees_about_z(angle, expected):
    pose = Pose.from_axis_angle([0.0, 0.0, 1.0], angle)
    assert pose.yaw_degrees([0.0, 0.0, 1.0]) == pytest.approx(expected, abs=1e-9)


def test_yaw_degrees_about_y_up():
    up = np.array([0.0, 1.0, 0.0])
    pose = Pose.from_axis_angle(up, 15.0, translation=[0.3, 0.0, 0.1])
    assert pose.yaw_degrees(up) == pytest.approx(15.0, abs=1e-9)


def test_rotation_angle_degrees():
    assert Pose.from_axis_angle([1.0, 1.0, 0.0], 12.5).rotation_angle_degrees() == pytest.approx(12.5)
    assert Pose.identity().rotation_angle_degrees() == pytest.approx(0.0)


def test_matrix_is_read_only_copy():
    m = np.eye(4)
    pose = Pose(m)
    m[0, 3] = 9.0
    assert pose.translation[0] == 0.0
    with pytest.raises(ValueError):
        pose.matrix[0, 3] = 1.0


def test_invalid_matrices_rejected():
    with pytest.raises(ValueError):
        Pose(np.eye(3))
    bad = np.eye(4)
    bad[0, 0] = np.nan
    with pytest.raises(ValueError):
        Pose(bad)


def test_save_and_load(tmp_path):
    pose = Pose.from_axis_angle([0.0, 0.0, 1.0], 17.0, translation=[0.1, 0.2, 0.3])
    path = tmp_path / "pose.txt"
    pose.save(path)
    loaded = Pose.load(path)
    np.testing.assert_allclose(loaded.matrix, pose.matrix)

    bad = tmp_path / "bad.txt"
    np.savetxt(bad, np.eye(3))
    with pytest.raises(ValueError):
        Pose.load(bad)


def test_normalize_vector():
    np.testing.assert_allclose(normalize_vector([0.0, 0.0, 2.0]), [0.0, 0.0, 1.0])
    with pytest.raises(ValueError):
        normalize_vector([0.0, 0.0, 0.0])
    with pytest.raises(ValueError):
        normalize_vector([1.0, 0.0])


def test_rotation_about_axis_is_proper_rotation():
    R = rotation_about_axis([0.3, -0.2, 0.9], 1.1)
    np.testing.assert_allclose(R.T @ R, np.eye(3), atol=1e-12)
    assert np.linalg.det(R) == pytest.approx(1.0)
