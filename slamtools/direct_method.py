"""Sparse direct method: camera pose from photometric error of reference pixels."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .imageops import build_pyramid, get_pixel_value_clamped
from .lie import SE3

_HALF_PATCH_SIZE = 1
_ITERATIONS = 10
_CONVERGED_NORM = 1e-3
_PYRAMIDS = 4
_PYRAMID_SCALE = 0.5
_SCALES = (1.0, 0.5, 0.25, 0.125)

_offsets = np.arange(-_HALF_PATCH_SIZE, _HALF_PATCH_SIZE + 1, dtype=float)
_OX, _OY = (g.ravel() for g in np.meshgrid(_offsets, _offsets, indexing="ij"))


def _solve(h: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve h x = b; singular directions get zero, non-finite input gives NaN."""
    if not (np.all(np.isfinite(h)) and np.all(np.isfinite(b))):
        return np.full(len(b), np.nan)
    return np.linalg.lstsq(h, b, rcond=None)[0]


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics; the defaults are those of the KITTI stereo example."""

    fx: float = 718.856
    fy: float = 718.856
    cx: float = 607.1928
    cy: float = 185.2157

    def scaled(self, factor: float) -> "CameraIntrinsics":
        """Intrinsics of the image resized by the given factor."""
        return CameraIntrinsics(
            self.fx * factor, self.fy * factor, self.cx * factor, self.cy * factor
        )


class JacobianAccumulator:
    """Accumulates the Gauss-Newton system of the photometric error over reference pixels."""

    def __init__(self, img1, img2, px_ref, depth_ref, T21: SE3 | None = None,
                 camera: CameraIntrinsics | None = None):
        self.img1 = np.asarray(img1)
        self.img2 = np.asarray(img2)
        if self.img1.ndim != 2 or self.img2.ndim != 2:
            raise ValueError("expected single-channel 2D images")
        self.px_ref = np.asarray(px_ref, dtype=float).reshape(-1, 2)
        self.depth_ref = np.asarray(depth_ref, dtype=float).reshape(-1)
        if len(self.px_ref) != len(self.depth_ref):
            raise ValueError("pixels and depths differ in length")
        self.T21 = SE3() if T21 is None else T21
        self.camera = CameraIntrinsics() if camera is None else camera
        self.projection = np.zeros((len(self.px_ref), 2))
        self.reset()

    def reset(self) -> None:
        """Zero the hessian, bias and cost."""
        self.hessian = np.zeros((6, 6))
        self.bias = np.zeros(6)
        self.cost = 0.0

    def accumulate_jacobian(self, start: int = 0, end: int | None = None) -> None:
        """Add the contributions of reference pixels start..end-1."""
        n = len(self.px_ref)
        end = n if end is None else end
        if not 0 <= start <= end <= n:
            raise ValueError("invalid pixel range")
        cam = self.camera
        px = self.px_ref[start:end]
        depth = self.depth_ref[start:end]
        ref = depth[:, None] * np.column_stack(
            [(px[:, 0] - cam.cx) / cam.fx, (px[:, 1] - cam.cy) / cam.fy, np.ones(len(px))]
        )
        cur = self.T21.act(ref).reshape(-1, 3)
        with np.errstate(divide="ignore", invalid="ignore"):
            u = cam.fx * cur[:, 0] / cur[:, 2] + cam.cx
            v = cam.fy * cur[:, 1] / cur[:, 2] + cam.cy
        rows, cols = self.img2.shape
        h = _HALF_PATCH_SIZE
        good = (
            (cur[:, 2] >= 0)
            & np.isfinite(u) & np.isfinite(v)
            & (u >= h) & (u <= cols - h)
            & (v >= h) & (v <= rows - h)
        )
        idx = np.nonzero(good)[0]
        if idx.size == 0:
            return
        u, v = u[idx], v[idx]
        self.projection[start + idx] = np.column_stack([u, v])

        x, y, z = cur[idx].T
        z_inv = 1.0 / z
        z2_inv = z_inv * z_inv
        j_pixel = np.zeros((idx.size, 2, 6))
        j_pixel[:, 0, 0] = cam.fx * z_inv
        j_pixel[:, 0, 2] = -cam.fx * x * z2_inv
        j_pixel[:, 0, 3] = -cam.fx * x * y * z2_inv
        j_pixel[:, 0, 4] = cam.fx + cam.fx * x * x * z2_inv
        j_pixel[:, 0, 5] = -cam.fx * y * z_inv
        j_pixel[:, 1, 1] = cam.fy * z_inv
        j_pixel[:, 1, 2] = -cam.fy * y * z2_inv
        j_pixel[:, 1, 3] = -cam.fy - cam.fy * y * y * z2_inv
        j_pixel[:, 1, 4] = cam.fy * x * y * z2_inv
        j_pixel[:, 1, 5] = cam.fy * x * z_inv

        g = get_pixel_value_clamped
        rx = px[idx, 0][:, None] + _OX
        ry = px[idx, 1][:, None] + _OY
        cu = u[:, None] + _OX
        cv = v[:, None] + _OY
        error = g(self.img1, rx, ry) - g(self.img2, cu, cv)
        gx = 0.5 * (g(self.img2, cu + 1, cv) - g(self.img2, cu - 1, cv))
        gy = 0.5 * (g(self.img2, cu, cv + 1) - g(self.img2, cu, cv - 1))
        jac = -(gx[:, :, None] * j_pixel[:, None, 0, :] + gy[:, :, None] * j_pixel[:, None, 1, :])

        self.hessian += np.einsum("nki,nkj->ij", jac, jac)
        self.bias += -np.einsum("nk,nki->i", error, jac)
        self.cost += float((error * error).sum()) / idx.size


def direct_pose_estimation_single_layer(img1, img2, px_ref, depth_ref,
                                        T21: SE3 | None = None,
                                        camera: CameraIntrinsics | None = None) -> SE3:
    """Estimate the pose of img2 relative to img1 on one image level."""
    accumulator = JacobianAccumulator(img1, img2, px_ref, depth_ref, T21, camera)
    pose = accumulator.T21
    last_cost = 0.0
    for it in range(_ITERATIONS):
        accumulator.reset()
        accumulator.accumulate_jacobian()
        update = _solve(accumulator.hessian, accumulator.bias)
        if np.isnan(update[0]):
            break
        pose = SE3.exp(update) * pose
        accumulator.T21 = pose
        cost = accumulator.cost
        if it > 0 and cost > last_cost:
            break
        if np.linalg.norm(update) < _CONVERGED_NORM:
            break
        last_cost = cost
    return pose


def direct_pose_estimation_multi_layer(img1, img2, px_ref, depth_ref,
                                       T21: SE3 | None = None,
                                       camera: CameraIntrinsics | None = None) -> SE3:
    """Estimate the pose coarse to fine over a four-level pyramid of scale 0.5."""
    pyr1 = build_pyramid(img1, _PYRAMIDS, _PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, _PYRAMIDS, _PYRAMID_SCALE)
    cam = CameraIntrinsics() if camera is None else camera
    px = np.asarray(px_ref, dtype=float).reshape(-1, 2)
    pose = SE3() if T21 is None else T21
    for level in range(_PYRAMIDS - 1, -1, -1):
        scale = _SCALES[level]
        pose = direct_pose_estimation_single_layer(
            pyr1[level], pyr2[level], px * scale, depth_ref, pose, cam.scaled(scale)
        )
    return pose