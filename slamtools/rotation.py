"""Angle-axis and quaternion rotation helpers for 3-vectors."""

from __future__ import annotations

import sys

import numpy as np

_EPS = sys.float_info.epsilon


def dot_product(x, y):
    """Dot product of two 3-vectors."""
    return x[0] * y[0] + x[1] * y[1] + x[2] * y[2]


def cross_product(x, y) -> np.ndarray:
    """Cross product of two 3-vectors."""
    return np.array(
        [
            x[1] * y[2] - x[2] * y[1],
            x[2] * y[0] - x[0] * y[2],
            x[0] * y[1] - x[1] * y[0],
        ]
    )


def angle_axis_to_quaternion(angle_axis) -> np.ndarray:
    """Convert an angle-axis vector to a quaternion (w, x, y, z)."""
    a0, a1, a2 = angle_axis[0], angle_axis[1], angle_axis[2]
    theta_squared = a0 * a0 + a1 * a1 + a2 * a2
    if theta_squared > _EPS:
        theta = np.sqrt(theta_squared)
        half_theta = theta * 0.5
        k = np.sin(half_theta) / theta
        w = np.cos(half_theta)
    else:
        k = 0.5
        w = 1.0
    return np.array([w, a0 * k, a1 * k, a2 * k])


def quaternion_to_angle_axis(quaternion) -> np.ndarray:
    """Convert a quaternion (w, x, y, z) to an angle-axis vector."""
    q1, q2, q3 = quaternion[1], quaternion[2], quaternion[3]
    sin_squared_theta = q1 * q1 + q2 * q2 + q3 * q3
    if sin_squared_theta > _EPS:
        sin_theta = np.sqrt(sin_squared_theta)
        cos_theta = quaternion[0]
        if cos_theta < 0.0:
            two_theta = 2.0 * np.arctan2(-sin_theta, -cos_theta)
        else:
            two_theta = 2.0 * np.arctan2(sin_theta, cos_theta)
        k = two_theta / sin_theta
    else:
        # First-order Taylor approximation near the zero rotation.
        k = 2.0
    return np.array([q1 * k, q2 * k, q3 * k])


def angle_axis_rotate_point(angle_axis, pt) -> np.ndarray:
    """Rotate a point by an angle-axis rotation using Rodrigues' formula."""
    theta2 = dot_product(angle_axis, angle_axis)
    if theta2 > _EPS:
        theta = np.sqrt(theta2)
        costheta = np.cos(theta)
        sintheta = np.sin(theta)
        theta_inverse = 1.0 / theta
        w = [angle_axis[i] * theta_inverse for i in range(3)]
        w_cross_pt = cross_product(w, pt)
        tmp = dot_product(w, pt) * (1.0 - costheta)
        return np.array(
            [pt[i] * costheta + w_cross_pt[i] * sintheta + w[i] * tmp for i in range(3)]
        )
    # Near zero: R * pt ~ pt + w x pt.
    w_cross_pt = cross_product(angle_axis, pt)
    return np.array([pt[i] + w_cross_pt[i] for i in range(3)])