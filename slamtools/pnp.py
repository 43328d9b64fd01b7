"""Camera pose from 3D-2D correspondences by Gauss-Newton and by a pose graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .lie import SE3
from .twoview import TUM_K, pixel2cam

_DEPTH_SCALE = 5000.0
_CONVERGED_NORM = 1e-6


def _intrinsics(K) -> np.ndarray:
    return TUM_K if K is None else np.asarray(K, dtype=float).reshape(3, 3)


def _pair(points_3d, points_2d):
    p3 = np.asarray(points_3d, dtype=float).reshape(-1, 3)
    p2 = np.asarray(points_2d, dtype=float).reshape(-1, 2)
    if len(p3) != len(p2):
        raise ValueError("3D and 2D point sets differ in length")
    return p3, p2


def build_3d2d_pairs(keypoints_1: Sequence, keypoints_2: Sequence, matches: Sequence, depth, K=None):
    """Lift matched keypoints of the first image to 3D with a 16-bit depth image.

    Depth values are in units of 1/5000 metre; matches on a zero depth are
    dropped. Returns an (N, 3) array of points and an (N, 2) array of the
    matching pixels of the second image.
    """
    depth_img = np.asarray(depth)
    if depth_img.ndim != 2:
        raise ValueError("expected a single-channel depth image")
    k = _intrinsics(K)
    points_3d = []
    points_2d = []
    for m in matches:
        kp1 = keypoints_1[m.query_idx]
        kp2 = keypoints_2[m.train_idx]
        d = int(depth_img[int(kp1.y), int(kp1.x)])
        if d == 0:
            continue
        dd = d / _DEPTH_SCALE
        p1 = pixel2cam(kp1.pt, k)
        points_3d.append((p1[0] * dd, p1[1] * dd, dd))
        points_2d.append((kp2.x, kp2.y))
    return (
        np.array(points_3d, dtype=float).reshape(-1, 3),
        np.array(points_2d, dtype=float).reshape(-1, 2),
    )


def _projection_jacobian(pc: np.ndarray, fx: float, fy: float) -> np.ndarray:
    """Jacobian of (observed - projected) w.r.t. a left twist, shape (N, 2, 6)."""
    x, y, z = pc[:, 0], pc[:, 1], pc[:, 2]
    inv_z = 1.0 / z
    inv_z2 = inv_z * inv_z
    jac = np.zeros((len(pc), 2, 6))
    jac[:, 0, 0] = -fx * inv_z
    jac[:, 0, 2] = fx * x * inv_z2
    jac[:, 0, 3] = fx * x * y * inv_z2
    jac[:, 0, 4] = -fx - fx * x * x * inv_z2
    jac[:, 0, 5] = fx * y * inv_z
    jac[:, 1, 1] = -fy * inv_z
    jac[:, 1, 2] = fy * y * inv_z2
    jac[:, 1, 3] = fy + fy * y * y * inv_z2
    jac[:, 1, 4] = -fy * x * y * inv_z2
    jac[:, 1, 5] = -fy * x * inv_z
    return jac


def _solve(h: np.ndarray, b: np.ndarray):
    try:
        dx = np.linalg.solve(h, b)
    except np.linalg.LinAlgError:
        return None
    return dx if np.all(np.isfinite(dx)) else None


def solve_pnp_gauss_newton(points_3d, points_2d, K=None, pose: SE3 | None = None, iterations: int = 10) -> SE3:
    """Refine the pose mapping 3D points to their pixels by minimising reprojection error.

    Stops on a singular system, when the cost stops decreasing, or when the
    update norm falls below 1e-6.
    """
    p3, p2 = _pair(points_3d, points_2d)
    k = _intrinsics(K)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]
    pose = SE3() if pose is None else pose
    last_cost = 0.0
    for it in range(iterations):
        pc = pose.act(p3)
        proj = np.column_stack(
            [fx * pc[:, 0] / pc[:, 2] + cx, fy * pc[:, 1] / pc[:, 2] + cy]
        )
        e = p2 - proj
        cost = float(np.einsum("ni,ni->", e, e))
        jac = _projection_jacobian(pc, fx, fy)
        h = np.einsum("nki,nkj->ij", jac, jac)
        b = -np.einsum("nki,nk->i", jac, e)

        dx = _solve(h, b)
        if dx is None:
            break
        if it > 0 and cost >= last_cost:
            break
        pose = SE3.exp(dx) * pose
        last_cost = cost
        if np.linalg.norm(dx) < _CONVERGED_NORM:
            break
    return pose


@dataclass
class EdgeProjection:
    """Reprojection constraint of one 3D point on the camera pose."""

    pos3d: np.ndarray
    K: np.ndarray
    measurement: np.ndarray
    information: np.ndarray = field(default_factory=lambda: np.eye(2))

    def __post_init__(self):
        self.pos3d = np.asarray(self.pos3d, dtype=float).reshape(3)
        self.K = np.asarray(self.K, dtype=float).reshape(3, 3)
        self.measurement = np.asarray(self.measurement, dtype=float).reshape(2)
        self.information = np.asarray(self.information, dtype=float).reshape(2, 2)

    def compute_error(self, pose: SE3) -> np.ndarray:
        """Observed pixel minus the projection of the point under the pose."""
        pixel = self.K @ pose.act(self.pos3d)
        pixel = pixel / pixel[2]
        return self.measurement - pixel[:2]

    def jacobian(self, pose: SE3) -> np.ndarray:
        """Derivative of the error w.r.t. a left twist of the pose, shape (2, 6)."""
        pc = pose.act(self.pos3d)[None, :]
        return _projection_jacobian(pc, self.K[0, 0], self.K[1, 1])[0]


def solve_pnp_graph(points_3d, points_2d, K=None, pose: SE3 | None = None, iterations: int = 10) -> SE3:
    """Optimise a single pose vertex with one projection edge per point (Gauss-Newton)."""
    p3, p2 = _pair(points_3d, points_2d)
    k = _intrinsics(K)
    pose = SE3() if pose is None else pose
    edges = [EdgeProjection(a, k, b) for a, b in zip(p3, p2)]
    for _ in range(iterations):
        h = np.zeros((6, 6))
        b = np.zeros(6)
        for edge in edges:
            e = edge.compute_error(pose)
            jac = edge.jacobian(pose)
            h += jac.T @ edge.information @ jac
            b -= jac.T @ edge.information @ e
        dx = _solve(h, b)
        if dx is None:
            break
        pose = SE3.exp(dx) * pose
    return pose