import numpy as np
import pytest

from slamtools.reprojection import SnavelyReprojectionError, cam_projection_with_distortion
from slamtools.rotation import angle_axis_rotate_point


def _camera(aa=(0.0, 0.0, 0.0), t=(0.0, 0.0, 0.0), f=100.0, k1=0.0, k2=0.0):
    return np.array([*aa, *t, f, k1, k2], dtype=float)


def test_identity_camera_projection():
    pred = cam_projection_with_distortion(_camera(), [1.0, 2.0, -4.0])
    assert np.allclose(pred, [25.0, 50.0])


def test_projection_linear_in_focal():
    point = [0.3, -0.7, -2.0]
    a = cam_projection_with_distortion(_camera(f=100.0, k1=0.1), point)
    b = cam_projection_with_distortion(_camera(f=300.0, k1=0.1), point)
    assert np.allclose(b, 3.0 * a)


def test_translation_equivalent_to_moving_point():
    point = np.array([0.3, -0.7, -2.0])
    t = np.array([0.1, 0.2, -0.5])
    a = cam_projection_with_distortion(_camera(t=t, k1=0.05, k2=0.01), point)
    b = cam_projection_with_distortion(_camera(k1=0.05, k2=0.01), point + t)
    assert np.allclose(a, b)


def test_rotation_equivalent_to_rotating_point():
    aa = np.array([0.2, -0.1, 0.3])
    point = np.array([0.5, 0.4, -3.0])
    a = cam_projection_with_distortion(_camera(aa=aa), point)
    b = cam_projection_with_distortion(_camera(), angle_axis_rotate_point(aa, point))
    assert np.allclose(a, b)


def test_distortion_scales_radially():
    point = [0.3, -0.7, -2.0]
    plain = cam_projection_with_distortion(_camera(), point)
    distorted = cam_projection_with_distortion(_camera(k1=0.2), point)
    assert distorted[0] * plain[1] == pytest.approx(distorted[1] * plain[0])
    assert np.linalg.norm(distorted) > np.linalg.norm(plain)


def test_residual_zero_at_prediction():
    camera = _camera(aa=(0.1, 0.0, -0.2), t=(0.0, 0.1, 0.0), k1=0.01)
    point = [0.2, 0.1, -5.0]
    pred = cam_projection_with_distortion(camera, point)
    cost = SnavelyReprojectionError(pred[0], pred[1])
    assert np.allclose(cost(camera, point), [0.0, 0.0])


def test_residual_is_prediction_minus_observation():
    camera = _camera()
    point = [1.0, 2.0, -4.0]
    pred = cam_projection_with_distortion(camera, point)
    cost = SnavelyReprojectionError(observed_x=20.0, observed_y=40.0)
    assert np.allclose(cost(camera, point), pred - np.array([20.0, 40.0]))