import random

import numpy as np
import pytest

from slamtools.bal import BALProblem, median, perturb_point3
from slamtools.reprojection import cam_projection_with_distortion

CAMERAS = [
    [0.1, -0.2, 0.3, 1.0, 2.0, 3.0, 500.0, 0.01, -0.001],
    [-0.05, 0.02, 0.1, -1.0, 0.5, 2.0, 480.0, 0.0, 0.0],
]
POINTS = [[1.0, 2.0, 3.0], [4.0, -1.0, 0.5], [-2.0, 3.0, 7.0]]
OBSERVATIONS = [
    (0, 0, -1.5, 2.5),
    (0, 1, 3.0, -4.0),
    (1, 1, 0.5, 0.25),
    (1, 2, -2.0, 1.0),
]


def _write_sample(path):
    lines = ["2 3 4"]
    lines += [f"{c} {p} {x} {y}" for c, p, x, y in OBSERVATIONS]
    lines += [repr(v) for cam in CAMERAS for v in cam]
    lines += [repr(v) for pt in POINTS for v in pt]
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def sample(tmp_path):
    return _write_sample(tmp_path / "problem.txt")


def test_load_counts_and_data(sample):
    problem = BALProblem(sample)
    assert problem.num_cameras == 2
    assert problem.num_points == 3
    assert problem.num_observations == 4
    assert problem.num_parameters == 9 * 2 + 3 * 3
    assert problem.camera_block_size == 9
    assert problem.point_block_size == 3
    assert list(problem.camera_index) == [0, 0, 1, 1]
    assert list(problem.point_index) == [0, 1, 1, 2]
    assert np.allclose(problem.observations[1], [3.0, -4.0])
    assert np.allclose(problem.cameras, CAMERAS)
    assert np.allclose(problem.points, POINTS)


def test_observation_accessors(sample):
    problem = BALProblem(sample)
    assert np.allclose(problem.camera_for_observation(2), CAMERAS[1])
    assert np.allclose(problem.point_for_observation(3), POINTS[2])


def test_quaternion_layout(sample):
    problem = BALProblem(sample, use_quaternions=True)
    assert problem.camera_block_size == 10
    assert problem.num_parameters == 10 * 2 + 3 * 3
    assert np.linalg.norm(problem.cameras[0][:4]) == pytest.approx(1.0)
    assert np.allclose(problem.cameras[0][4:], CAMERAS[0][3:])
    assert np.allclose(problem.points, POINTS)


def test_write_to_file(sample, tmp_path):
    problem = BALProblem(sample)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "2 2 3 4"
    assert lines[1].split() == ["0", "0", "-1.5", "2.5"]
    assert len(lines) == 1 + 4 + 27
    values = [float(v) for v in lines[5:]]
    assert np.allclose(values, [v for cam in CAMERAS for v in cam] + [v for p in POINTS for v in p])


def test_quaternion_write_matches_angle_axis(sample, tmp_path):
    plain = tmp_path / "plain.txt"
    quat = tmp_path / "quat.txt"
    BALProblem(sample).write_to_file(plain)
    BALProblem(sample, use_quaternions=True).write_to_file(quat)
    a = [float(v) for v in plain.read_text().split()]
    b = [float(v) for v in quat.read_text().split()]
    assert np.allclose(a, b)


def test_write_to_ply_file(sample, tmp_path):
    problem = BALProblem(sample)
    out = tmp_path / "cloud.ply"
    problem.write_to_ply_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "ply"
    assert lines[2] == "element vertex 5"
    assert lines[9] == "end_header"
    assert len(lines) == 10 + 5
    assert lines[10].endswith(" 0 255 0")
    assert lines[12].endswith(" 255 255 255")
    assert np.allclose([float(v) for v in lines[12].split()[:3]], POINTS[0])


def test_normalize_median_and_scale(sample):
    problem = BALProblem(sample)
    problem.normalize()
    points = problem.points
    for axis in range(3):
        assert median(points[:, axis]) == pytest.approx(0.0, abs=1e-9)
    assert median(np.abs(points).sum(axis=1)) == pytest.approx(100.0)


def test_normalize_preserves_projections(sample):
    before = BALProblem(sample)
    after = BALProblem(sample)
    after.normalize()
    for i in range(before.num_observations):
        p0 = cam_projection_with_distortion(
            before.camera_for_observation(i), before.point_for_observation(i)
        )
        p1 = cam_projection_with_distortion(
            after.camera_for_observation(i), after.point_for_observation(i)
        )
        assert np.allclose(p0, p1)
    assert np.allclose(after.cameras[:, :3], before.cameras[:, :3])


def test_perturb_with_zero_sigma_is_identity(sample):
    problem = BALProblem(sample)
    original = problem.parameters.copy()
    problem.perturb(0.0, 0.0, 0.0, random.Random(3))
    assert np.allclose(problem.parameters, original)


def test_perturb_points_only(sample):
    problem = BALProblem(sample)
    original_cameras = problem.cameras.copy()
    problem.perturb(0.0, 0.0, 0.5, random.Random(3))
    assert not np.allclose(problem.points, POINTS)
    assert np.allclose(problem.cameras, original_cameras)


def test_perturb_is_reproducible(sample):
    a = BALProblem(sample)
    b = BALProblem(sample)
    a.perturb(0.1, 0.5, 0.5, random.Random(11))
    b.perturb(0.1, 0.5, 0.5, random.Random(11))
    assert np.array_equal(a.parameters, b.parameters)


def test_perturb_rejects_negative_sigma(sample):
    problem = BALProblem(sample)
    with pytest.raises(ValueError):
        problem.perturb(-0.1, 0.0, 0.0)


def test_invalid_file_raises(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("2 3\n")
    with pytest.raises(ValueError):
        BALProblem(path)


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        BALProblem(tmp_path / "missing.txt")


def test_median_odd_and_even():
    assert median([3.0, 1.0, 2.0]) == 2.0
    assert median([4.0, 1.0, 3.0, 2.0]) == 3.0


def test_median_empty_raises():
    with pytest.raises(ValueError):
        median([])


def test_perturb_point3_reproducible_and_zero_sigma():
    point = [1.0, 2.0, 3.0]
    assert np.allclose(perturb_point3(0.0, point, random.Random(1)), point)
    a = perturb_point3(0.3, point, random.Random(5))
    b = perturb_point3(0.3, point, random.Random(5))
    assert np.array_equal(a, b)