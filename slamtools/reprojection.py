"""Reprojection model of the BAL camera: angle-axis pose, focal length, radial distortion."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .rotation import angle_axis_rotate_point


def cam_projection_with_distortion(camera, point) -> np.ndarray:
    """Project a 3D point with a 9-parameter camera.

    camera[0:3] is the angle-axis rotation, camera[3:6] the translation,
    camera[6] the focal length and camera[7:9] the radial distortion terms.
    """
    p = angle_axis_rotate_point(camera[:3], point)
    p = p + np.asarray(camera[3:6])
    xp = -p[0] / p[2]
    yp = -p[1] / p[2]
    l1, l2 = camera[7], camera[8]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (l1 + l2 * r2)
    focal = camera[6]
    return np.array([focal * distortion * xp, focal * distortion * yp])


@dataclass(frozen=True)
class SnavelyReprojectionError:
    """Residual between a predicted projection and an observed pixel."""

    observed_x: float
    observed_y: float

    def __call__(self, camera, point) -> np.ndarray:
        predictions = cam_projection_with_distortion(camera, point)
        return np.array(
            [predictions[0] - self.observed_x, predictions[1] - self.observed_y]
        )