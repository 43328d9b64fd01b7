"""Rotation group SO(3) and rigid-motion group SE(3) helpers."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-10


def so3_hat(v) -> np.ndarray:
    """Return the skew-symmetric matrix of a 3-vector."""
    x, y, z = (float(c) for c in v)
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def so3_exp(omega) -> np.ndarray:
    """Map a rotation vector to a rotation matrix (Rodrigues' formula)."""
    omega = np.asarray(omega, dtype=float)
    theta = float(np.linalg.norm(omega))
    k = so3_hat(omega)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + k + 0.5 * (k @ k)
    return (
        np.eye(3)
        + (np.sin(theta) / theta) * k
        + ((1.0 - np.cos(theta)) / (theta * theta)) * (k @ k)
    )


def so3_log(rotation) -> np.ndarray:
    """Map a rotation matrix to its rotation vector."""
    return Rotation.from_matrix(np.asarray(rotation, dtype=float)).as_rotvec()


def _left_jacobian(phi: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(phi))
    k = so3_hat(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * k
    theta2 = theta * theta
    return (
        np.eye(3)
        + ((1.0 - np.cos(theta)) / theta2) * k
        + ((theta - np.sin(theta)) / (theta2 * theta)) * (k @ k)
    )


@dataclass(frozen=True)
class SE3:
    """A rigid motion: rotation matrix and translation vector."""

    rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        object.__setattr__(self, "rotation", np.array(self.rotation, dtype=float).reshape(3, 3))
        object.__setattr__(self, "translation", np.array(self.translation, dtype=float).reshape(3))

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Exponential of a twist ordered (translation part, rotation part)."""
        xi = np.asarray(xi, dtype=float).reshape(6)
        rho, phi = xi[:3], xi[3:]
        return cls(so3_exp(phi), _left_jacobian(phi) @ rho)

    def __mul__(self, other):
        if not isinstance(other, SE3):
            return NotImplemented
        return SE3(
            self.rotation @ other.rotation,
            self.rotation @ other.translation + self.translation,
        )

    def act(self, point) -> np.ndarray:
        """Transform a point, or an (N, 3) array of points."""
        return np.asarray(point, dtype=float) @ self.rotation.T + self.translation

    def inverse(self) -> "SE3":
        rt = self.rotation.T
        return SE3(rt, -rt @ self.translation)

    def matrix(self) -> np.ndarray:
        """Return the 4x4 homogeneous matrix."""
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m