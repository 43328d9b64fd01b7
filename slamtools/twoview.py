"""Two-view geometry: epipolar matrices, relative pose recovery and triangulation."""

from __future__ import annotations

import math
import random
from typing import Sequence

import numpy as np

from .lie import so3_hat

# Camera intrinsics of the TUM Freiburg2 sequence.
TUM_K = np.array([[520.9, 0.0, 325.1], [0.0, 521.0, 249.7], [0.0, 0.0, 1.0]])

_MIN_POINTS = 8
_RANSAC_THRESHOLD = 1.0
_RANSAC_CONFIDENCE = 0.999
_RANSAC_MAX_ITERS = 1000
_DISTANCE_THRESHOLD = 50.0
_COLOR_UPPER = 50.0
_COLOR_LOWER = 10.0


def _intrinsics(K) -> np.ndarray:
    return TUM_K if K is None else np.asarray(K, dtype=float).reshape(3, 3)


def pixel2cam(p, K=None) -> np.ndarray:
    """Convert a pixel coordinate to normalised camera coordinates."""
    k = _intrinsics(K)
    return np.array([(p[0] - k[0, 2]) / k[0, 0], (p[1] - k[1, 2]) / k[1, 1]])


def skew(t) -> np.ndarray:
    """Return the cross-product matrix of a 3-vector."""
    return so3_hat(np.asarray(t, dtype=float).reshape(3))


def _as_points(points) -> np.ndarray:
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        return pts.reshape(0, 2)
    if pts.ndim != 2 or pts.shape[1] != 2:
        raise ValueError("expected an (N, 2) array of points")
    return pts


def _pair(points1, points2):
    p1, p2 = _as_points(points1), _as_points(points2)
    if len(p1) != len(p2):
        raise ValueError("point sets differ in length")
    return p1, p2


def _hartley(pts: np.ndarray):
    centroid = pts.mean(axis=0)
    dist = float(np.linalg.norm(pts - centroid, axis=1).mean())
    scale = math.sqrt(2.0) / dist if dist > 0 else 1.0
    transform = np.array(
        [
            [scale, 0.0, -scale * centroid[0]],
            [0.0, scale, -scale * centroid[1]],
            [0.0, 0.0, 1.0],
        ]
    )
    return (pts - centroid) * scale, transform


def _linear_epipolar(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    """Normalised linear estimate of a rank-2 matrix M with x2^T M x1 = 0."""
    n1, t1 = _hartley(x1)
    n2, t2 = _hartley(x2)
    a = np.column_stack(
        [
            n2[:, 0] * n1[:, 0],
            n2[:, 0] * n1[:, 1],
            n2[:, 0],
            n2[:, 1] * n1[:, 0],
            n2[:, 1] * n1[:, 1],
            n2[:, 1],
            n1[:, 0],
            n1[:, 1],
            np.ones(len(n1)),
        ]
    )
    _, _, vt = np.linalg.svd(a)
    m = vt[-1].reshape(3, 3)
    u, s, vt = np.linalg.svd(m)
    m = u @ np.diag([s[0], s[1], 0.0]) @ vt
    return t2.T @ m @ t1


def find_fundamental_eight_point(points1, points2) -> np.ndarray:
    """Estimate the fundamental matrix from all point pairs with the 8-point method."""
    p1, p2 = _pair(points1, points2)
    if len(p1) < _MIN_POINTS:
        raise ValueError("at least 8 point pairs are needed")
    f = _linear_epipolar(p1, p2)
    if abs(f[2, 2]) > np.finfo(float).eps:
        return f / f[2, 2]
    return f / np.linalg.norm(f)


def _essential_from(x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    u, _, vt = np.linalg.svd(_linear_epipolar(x1, x2))
    return u @ np.diag([1.0, 1.0, 0.0]) @ vt


def _sampson(e: np.ndarray, x1: np.ndarray, x2: np.ndarray) -> np.ndarray:
    ones = np.ones((len(x1), 1))
    h1 = np.hstack([x1, ones])
    h2 = np.hstack([x2, ones])
    ex1 = h1 @ e.T
    etx2 = h2 @ e
    num = np.einsum("ni,ni->n", h2, ex1) ** 2
    den = ex1[:, 0] ** 2 + ex1[:, 1] ** 2 + etx2[:, 0] ** 2 + etx2[:, 1] ** 2
    return num / np.maximum(den, 1e-300)


def _normalise(points, focal_length, principal_point) -> np.ndarray:
    return (points - np.asarray(principal_point, dtype=float)) / float(focal_length)


def find_essential(points1, points2, focal_length=521.0, principal_point=(325.1, 249.7)):
    """Estimate the essential matrix with RANSAC over 8-point samples.

    The result has singular values (1, 1, 0) and satisfies y2^T E y1 = 0
    for normalised coordinates of inlying pairs.
    """
    p1, p2 = _pair(points1, points2)
    n = len(p1)
    if n < _MIN_POINTS:
        raise ValueError("at least 8 point pairs are needed")
    x1 = _normalise(p1, focal_length, principal_point)
    x2 = _normalise(p2, focal_length, principal_point)
    if n == _MIN_POINTS:
        return _essential_from(x1, x2)

    threshold = (_RANSAC_THRESHOLD / float(focal_length)) ** 2
    rng = random.Random(0)
    best_inliers = None
    best_count = 0
    max_iters = _RANSAC_MAX_ITERS
    done = 0
    while done < max_iters:
        done += 1
        sample = rng.sample(range(n), _MIN_POINTS)
        try:
            candidate = _essential_from(x1[sample], x2[sample])
        except np.linalg.LinAlgError:
            continue
        inliers = _sampson(candidate, x1, x2) < threshold
        count = int(inliers.sum())
        if count > best_count:
            best_count, best_inliers = count, inliers
            clean = (count / n) ** _MIN_POINTS
            if clean >= 1.0:
                break
            denom = math.log(1.0 - clean)
            if denom < 0:
                needed = math.ceil(math.log(1.0 - _RANSAC_CONFIDENCE) / denom)
                max_iters = min(max_iters, needed)

    if best_inliers is None or best_count < _MIN_POINTS:
        return _essential_from(x1, x2)
    return _essential_from(x1[best_inliers], x2[best_inliers])


def _decompose_essential(e: np.ndarray):
    u, _, vt = np.linalg.svd(e)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, 1.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    return u @ w @ vt, u @ w.T @ vt, u[:, 2].copy()


def _cheirality_count(rotation, translation, x1, x2) -> int:
    t1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    t2 = np.hstack([rotation, translation[:, None]])
    homogeneous = triangulate_points(t1, t2, x1, x2)
    w = homogeneous[:, 3]
    valid = np.abs(w) > 0
    safe_w = np.where(valid, w, 1.0)
    points = homogeneous[:, :3] / safe_w[:, None]
    z1 = points[:, 2]
    z2 = (points @ rotation.T + translation)[:, 2]
    good = (
        valid
        & (z1 > 0) & (z1 < _DISTANCE_THRESHOLD)
        & (z2 > 0) & (z2 < _DISTANCE_THRESHOLD)
    )
    return int(good.sum())


def recover_pose(essential, points1, points2, focal_length=521.0, principal_point=(325.1, 249.7)):
    """Pick the (R, t) of an essential matrix that puts most points in front of both cameras.

    The translation has unit length; a point X of the first camera maps to
    R X + t in the second.
    """
    p1, p2 = _pair(points1, points2)
    e = np.asarray(essential, dtype=float).reshape(3, 3)
    x1 = _normalise(p1, focal_length, principal_point)
    x2 = _normalise(p2, focal_length, principal_point)
    r1, r2, t = _decompose_essential(e)
    candidates = ((r1, t), (r1, -t), (r2, t), (r2, -t))
    best = max(candidates, key=lambda c: _cheirality_count(c[0], c[1], x1, x2))
    return best[0], best[1]


def epipolar_constraint(pt1, pt2, R, t, K=None) -> float:
    """Return y2^T t^ R y1 for a pixel pair, zero for a perfect correspondence."""
    y1 = np.append(pixel2cam(pt1, K), 1.0)
    y2 = np.append(pixel2cam(pt2, K), 1.0)
    rotation = np.asarray(R, dtype=float).reshape(3, 3)
    return float(y2 @ skew(t) @ rotation @ y1)


def _dlt(p1: np.ndarray, p2: np.ndarray, a: np.ndarray, b: np.ndarray) -> np.ndarray:
    system = np.stack(
        [
            a[0] * p1[2] - p1[0],
            a[1] * p1[2] - p1[1],
            b[0] * p2[2] - p2[0],
            b[1] * p2[2] - p2[1],
        ]
    )
    return np.linalg.svd(system)[2][-1]


def triangulate_points(T1, T2, pts1, pts2) -> np.ndarray:
    """Triangulate point pairs with two 3x4 projections; returns (N, 4) homogeneous rows."""
    proj1 = np.asarray(T1, dtype=float).reshape(3, 4)
    proj2 = np.asarray(T2, dtype=float).reshape(3, 4)
    a, b = _pair(pts1, pts2)
    return np.array([_dlt(proj1, proj2, u, v) for u, v in zip(a, b)]).reshape(-1, 4)


def triangulation(keypoints_1: Sequence, keypoints_2: Sequence, matches: Sequence, R, t, K=None):
    """Triangulate matched keypoints given the relative pose; returns (N, 3) points."""
    if not matches:
        return np.empty((0, 3))
    rotation = np.asarray(R, dtype=float).reshape(3, 3)
    translation = np.asarray(t, dtype=float).reshape(3)
    t1 = np.hstack([np.eye(3), np.zeros((3, 1))])
    t2 = np.hstack([rotation, translation[:, None]])
    pts1 = [pixel2cam(keypoints_1[m.query_idx].pt, K) for m in matches]
    pts2 = [pixel2cam(keypoints_2[m.train_idx].pt, K) for m in matches]
    homogeneous = triangulate_points(t1, t2, pts1, pts2)
    return homogeneous[:, :3] / homogeneous[:, 3:4]


def get_color(depth: float) -> tuple[float, float, float]:
    """Map a depth to a (blue, green, red) colour for plotting."""
    depth_range = _COLOR_UPPER - _COLOR_LOWER
    d = min(max(float(depth), _COLOR_LOWER), _COLOR_UPPER)
    return (255.0 * d / depth_range, 0.0, 255.0 * (1.0 - d / depth_range))