import numpy as np
import pytest

from slamtools.icp import pose_estimation_3d3d, refine_pose_3d3d
from slamtools.lie import so3_exp

R_TRUE = so3_exp([0.1, -0.2, 0.15])
T_TRUE = np.array([0.3, -0.1, 0.5])


def _clouds(n=30, seed=2):
    rng = np.random.default_rng(seed)
    pts2 = rng.uniform(-2.0, 2.0, size=(n, 3)) + np.array([0.0, 0.0, 5.0])
    pts1 = pts2 @ R_TRUE.T + T_TRUE
    return pts1, pts2


def test_svd_alignment_recovers_pose():
    pts1, pts2 = _clouds()
    r, t = pose_estimation_3d3d(pts1, pts2)
    np.testing.assert_allclose(r, R_TRUE, atol=1e-10)
    np.testing.assert_allclose(t, T_TRUE, atol=1e-10)


def test_svd_alignment_gives_rotation():
    rng = np.random.default_rng(5)
    pts1 = rng.normal(size=(20, 3))
    pts2 = rng.normal(size=(20, 3))
    r, _ = pose_estimation_3d3d(pts1, pts2)
    np.testing.assert_allclose(r @ r.T, np.eye(3), atol=1e-10)
    assert abs(np.linalg.det(r)) == pytest.approx(1.0)


def test_svd_alignment_maps_points():
    pts1, pts2 = _clouds(n=10, seed=9)
    r, t = pose_estimation_3d3d(pts1, pts2)
    np.testing.assert_allclose(pts2 @ r.T + t, pts1, atol=1e-10)


def test_empty_input_rejected():
    with pytest.raises(ValueError):
        pose_estimation_3d3d(np.empty((0, 3)), np.empty((0, 3)))


def test_mismatched_input_rejected():
    pts1, pts2 = _clouds()
    with pytest.raises(ValueError):
        pose_estimation_3d3d(pts1, pts2[:-1])
    with pytest.raises(ValueError):
        refine_pose_3d3d(pts1[:, :2], pts2[:, :2])


def test_refinement_recovers_pose():
    pts1, pts2 = _clouds()
    pose = refine_pose_3d3d(pts1, pts2, 20)
    np.testing.assert_allclose(pose.rotation, R_TRUE, atol=1e-8)
    np.testing.assert_allclose(pose.translation, T_TRUE, atol=1e-8)
    np.testing.assert_allclose(pose.act(pts2), pts1, atol=1e-7)


def test_refinement_agrees_with_svd():
    pts1, pts2 = _clouds(n=15, seed=4)
    r, t = pose_estimation_3d3d(pts1, pts2)
    pose = refine_pose_3d3d(pts1, pts2, 20)
    np.testing.assert_allclose(pose.rotation, r, atol=1e-8)
    np.testing.assert_allclose(pose.translation, t, atol=1e-8)


def test_refinement_without_iterations_is_identity():
    pts1, pts2 = _clouds()
    pose = refine_pose_3d3d(pts1, pts2, 0)
    np.testing.assert_allclose(pose.matrix(), np.eye(4))