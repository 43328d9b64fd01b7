import numpy as np
import pytest

from slamtools.direct_method import (
    CameraIntrinsics,
    JacobianAccumulator,
    direct_pose_estimation_multi_layer,
    direct_pose_estimation_single_layer,
)
from slamtools.lie import SE3

DEPTH = 5.0


def _texture(width, height, sx=0.0):
    ys, xs = np.mgrid[0:height, 0:width].astype(float)
    x = xs - sx
    return (
        128.0
        + 60.0 * np.sin(x / 12.0)
        + 60.0 * np.cos(ys / 10.0)
        + 30.0 * np.sin((x - ys) / 15.0)
    )


def _camera(width, height):
    return CameraIntrinsics(200.0, 200.0, width / 2.0, height / 2.0)


def _pixels(width, height, n=300, border=20):
    rng = np.random.default_rng(0)
    return np.column_stack(
        [rng.uniform(border, width - border, n), rng.uniform(border, height - border, n)]
    )


def _projected_shift(pose, px, camera):
    ref = DEPTH * np.column_stack(
        [(px[:, 0] - camera.cx) / camera.fx, (px[:, 1] - camera.cy) / camera.fy, np.ones(len(px))]
    )
    cur = pose.act(ref)
    u = camera.fx * cur[:, 0] / cur[:, 2] + camera.cx
    v = camera.fy * cur[:, 1] / cur[:, 2] + camera.cy
    return u - px[:, 0], v - px[:, 1]


def test_scaled_intrinsics():
    cam = CameraIntrinsics()
    half = cam.scaled(0.5)
    assert half.fx == pytest.approx(718.856 * 0.5)
    assert half.fy == pytest.approx(718.856 * 0.5)
    assert half.cx == pytest.approx(607.1928 * 0.5)
    assert half.cy == pytest.approx(185.2157 * 0.5)


def test_accumulator_on_identical_images():
    img = _texture(200, 160)
    cam = _camera(200, 160)
    px = _pixels(200, 160, 50)
    acc = JacobianAccumulator(img, img, px, [DEPTH] * len(px), SE3(), cam)
    acc.accumulate_jacobian()
    assert acc.cost == pytest.approx(0.0, abs=1e-12)
    assert np.allclose(acc.bias, 0.0)
    assert np.allclose(acc.projection, px)
    assert np.allclose(acc.hessian, acc.hessian.T)
    assert np.linalg.eigvalsh(acc.hessian).min() > -1e-6


def test_accumulator_skips_points_behind_camera_and_resets():
    img = _texture(100, 80)
    cam = _camera(100, 80)
    px = np.array([[50.0, 40.0], [30.0, 30.0]])
    acc = JacobianAccumulator(img, _texture(100, 80, 1.0), px, [-1.0, DEPTH], None, cam)
    acc.accumulate_jacobian()
    assert np.array_equal(acc.projection[0], [0.0, 0.0])
    assert np.allclose(acc.projection[1], px[1])
    assert acc.cost > 0
    acc.reset()
    assert acc.cost == 0.0
    assert np.array_equal(acc.hessian, np.zeros((6, 6)))
    assert np.array_equal(acc.bias, np.zeros(6))


def test_accumulator_rejects_bad_input():
    img = _texture(40, 40)
    with pytest.raises(ValueError):
        JacobianAccumulator(img, img, [[1.0, 2.0]], [1.0, 2.0])
    acc = JacobianAccumulator(img, img, [[10.0, 10.0]], [DEPTH])
    with pytest.raises(ValueError):
        acc.accumulate_jacobian(1, 0)


def test_identical_images_keep_identity_pose():
    img = _texture(200, 160)
    cam = _camera(200, 160)
    px = _pixels(200, 160)
    pose = direct_pose_estimation_single_layer(img, img, px, [DEPTH] * len(px), SE3(), cam)
    assert np.allclose(pose.matrix(), np.eye(4), atol=1e-9)


def test_single_layer_recovers_image_shift():
    shift = 1.5
    img1 = _texture(200, 160)
    img2 = _texture(200, 160, shift)
    cam = _camera(200, 160)
    px = _pixels(200, 160)
    pose = direct_pose_estimation_single_layer(img1, img2, px, [DEPTH] * len(px), SE3(), cam)
    du, dv = _projected_shift(pose, px, cam)
    assert np.median(np.abs(du - shift)) < 0.2
    assert np.median(np.abs(dv)) < 0.2


def test_multi_layer_recovers_larger_shift():
    shift = 6.0
    img1 = _texture(320, 240)
    img2 = _texture(320, 240, shift)
    cam = _camera(320, 240)
    px = _pixels(320, 240)
    pose = direct_pose_estimation_multi_layer(img1, img2, px, [DEPTH] * len(px), SE3(), cam)
    du, dv = _projected_shift(pose, px, cam)
    assert np.median(np.abs(du - shift)) < 0.5
    assert np.median(np.abs(dv)) < 0.5