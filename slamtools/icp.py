"""Rigid alignment of matched 3D point sets."""

from __future__ import annotations

import numpy as np

from .lie import SE3, so3_hat

_LM_TAU = 1e-5
_LM_MAX_TRIALS = 10


def _as_cloud(points) -> np.ndarray:
    cloud = np.asarray(points, dtype=float)
    if cloud.ndim != 2 or cloud.shape[1] != 3:
        raise ValueError("expected an (N, 3) array of points")
    return cloud


def _pair(pts1, pts2):
    p1, p2 = _as_cloud(pts1), _as_cloud(pts2)
    if len(p1) != len(p2):
        raise ValueError("point sets differ in length")
    if len(p1) == 0:
        raise ValueError("no point pairs given")
    return p1, p2


def pose_estimation_3d3d(pts1, pts2):
    """Find R, t with pts1 ~ R pts2 + t by SVD of the centred cross-covariance."""
    p1, p2 = _pair(pts1, pts2)
    c1 = p1.mean(axis=0)
    c2 = p2.mean(axis=0)
    w = (p1 - c1).T @ (p2 - c2)
    u, _, vt = np.linalg.svd(w)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation = -rotation
    translation = c1 - rotation @ c2
    return rotation, translation


def _cost(pose: SE3, p1: np.ndarray, p2: np.ndarray) -> float:
    e = p1 - pose.act(p2)
    return float(np.einsum("ni,ni->", e, e))


def refine_pose_3d3d(pts1, pts2, iterations: int = 10) -> SE3:
    """Refine the pose mapping pts2 onto pts1 with Levenberg-Marquardt from identity."""
    p1, p2 = _pair(pts1, pts2)
    pose = SE3()
    cost = _cost(pose, p1, p2)
    lam = None
    nu = 2.0
    for _ in range(iterations):
        moved = pose.act(p2)
        e = p1 - moved
        jac = np.empty((len(p1), 3, 6))
        jac[:, :, :3] = -np.eye(3)
        jac[:, :, 3:] = np.array([so3_hat(p) for p in moved])
        h = np.einsum("nki,nkj->ij", jac, jac)
        b = -np.einsum("nki,nk->i", jac, e)
        if lam is None:
            lam = _LM_TAU * float(np.diag(h).max())
        accepted = False
        for _ in range(_LM_MAX_TRIALS):
            try:
                dx = np.linalg.solve(h + lam * np.eye(6), b)
            except np.linalg.LinAlgError:
                dx = None
            if dx is not None and np.all(np.isfinite(dx)):
                candidate = SE3.exp(dx) * pose
                new_cost = _cost(candidate, p1, p2)
                if new_cost < cost:
                    pose, cost = candidate, new_cost
                    lam /= 3.0
                    accepted = True
                    break
            lam *= nu
            nu *= 2.0
        if not accepted:
            break
        nu = 2.0
    return pose