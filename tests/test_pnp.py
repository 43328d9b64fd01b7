import numpy as np
import pytest

from slamtools.lie import SE3
from slamtools.orb import KeyPoint, Match
from slamtools.pnp import (
    EdgeProjection,
    build_3d2d_pairs,
    solve_pnp_gauss_newton,
    solve_pnp_graph,
)
from slamtools.twoview import TUM_K


def _project(pose, points, K=TUM_K):
    pc = pose.act(points)
    return np.column_stack(
        [
            K[0, 0] * pc[:, 0] / pc[:, 2] + K[0, 2],
            K[1, 1] * pc[:, 1] / pc[:, 2] + K[1, 2],
        ]
    )


@pytest.fixture
def scene():
    rng = np.random.default_rng(7)
    points = np.column_stack(
        [
            rng.uniform(-1.0, 1.0, 30),
            rng.uniform(-1.0, 1.0, 30),
            rng.uniform(4.0, 8.0, 30),
        ]
    )
    true_pose = SE3.exp([0.05, -0.02, 0.1, 0.02, -0.03, 0.01])
    return points, _project(true_pose, points), true_pose


def test_build_pairs_skips_zero_depth():
    kps1 = [KeyPoint(100.0, 50.0), KeyPoint(200.0, 80.0)]
    kps2 = [KeyPoint(101.0, 51.0), KeyPoint(202.0, 82.0)]
    depth = np.zeros((120, 240), dtype=np.uint16)
    depth[50, 100] = 7000
    matches = [Match(0, 0, 10.0), Match(1, 1, 12.0)]
    p3, p2 = build_3d2d_pairs(kps1, kps2, matches, depth, TUM_K)
    assert p3.shape == (1, 3)
    assert p2.tolist() == [[101.0, 51.0]]


def test_build_pairs_depth_scale_and_truncated_index():
    kps1 = [KeyPoint(100.7, 50.2)]
    kps2 = [KeyPoint(10.0, 20.0)]
    depth = np.zeros((120, 240), dtype=np.uint16)
    depth[50, 100] = 5000
    p3, _ = build_3d2d_pairs(kps1, kps2, [Match(0, 0, 1.0)], depth, TUM_K)
    assert p3[0, 2] == pytest.approx(1.0)


def test_build_pairs_back_projects_to_pixel():
    kps1 = [KeyPoint(150.0, 90.0)]
    kps2 = [KeyPoint(155.0, 95.0)]
    depth = np.zeros((120, 240), dtype=np.uint16)
    depth[90, 150] = 12345
    p3, _ = build_3d2d_pairs(kps1, kps2, [Match(0, 0, 1.0)], depth, TUM_K)
    pixel = _project(SE3(), p3)
    assert pixel[0] == pytest.approx([150.0, 90.0])


def test_build_pairs_rejects_colour_depth():
    with pytest.raises(ValueError):
        build_3d2d_pairs([], [], [], np.zeros((4, 4, 3)), TUM_K)


def test_gauss_newton_recovers_pose(scene):
    points, pixels, true_pose = scene
    pose = solve_pnp_gauss_newton(points, pixels, TUM_K, SE3(), 10)
    assert np.allclose(pose.matrix(), true_pose.matrix(), atol=1e-5)


def test_gauss_newton_stays_at_true_pose(scene):
    points, pixels, true_pose = scene
    pose = solve_pnp_gauss_newton(points, pixels, TUM_K, true_pose, 10)
    assert np.allclose(pose.matrix(), true_pose.matrix(), atol=1e-8)


def test_graph_recovers_pose(scene):
    points, pixels, true_pose = scene
    pose = solve_pnp_graph(points, pixels, TUM_K, SE3(), 10)
    assert np.allclose(pose.matrix(), true_pose.matrix(), atol=1e-5)


def test_zero_iterations_returns_initial_pose(scene):
    points, pixels, _ = scene
    start = SE3.exp([0.1, 0.0, 0.0, 0.0, 0.0, 0.0])
    pose = solve_pnp_graph(points, pixels, TUM_K, start, 0)
    assert np.array_equal(pose.matrix(), start.matrix())


@pytest.mark.parametrize("solver", [solve_pnp_gauss_newton, solve_pnp_graph])
def test_mismatched_lengths_raise(solver, scene):
    points, pixels, _ = scene
    with pytest.raises(ValueError):
        solver(points, pixels[:-1], TUM_K, SE3(), 10)


def test_edge_error_zero_at_true_pose(scene):
    points, pixels, true_pose = scene
    edge = EdgeProjection(points[0], TUM_K, pixels[0])
    assert np.allclose(edge.compute_error(true_pose), 0.0, atol=1e-9)


def test_edge_error_nonzero_elsewhere(scene):
    points, pixels, _ = scene
    edge = EdgeProjection(points[0], TUM_K, pixels[0])
    assert np.linalg.norm(edge.compute_error(SE3())) > 1.0


def test_edge_jacobian_matches_numeric(scene):
    points, pixels, true_pose = scene
    pose = SE3.exp([0.01, 0.02, -0.01, 0.03, 0.01, -0.02]) * true_pose
    edge = EdgeProjection(points[3], TUM_K, pixels[3])
    jac = edge.jacobian(pose)
    h = 1e-6
    numeric = np.empty((2, 6))
    for i in range(6):
        step = np.zeros(6)
        step[i] = h
        plus = edge.compute_error(SE3.exp(step) * pose)
        minus = edge.compute_error(SE3.exp(-step) * pose)
        numeric[:, i] = (plus - minus) / (2 * h)
    assert np.allclose(jac, numeric, rtol=1e-4, atol=1e-3)