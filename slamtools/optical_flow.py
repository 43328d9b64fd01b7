"""Lucas-Kanade optical flow by Gauss-Newton, single level and coarse to fine."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from .imageops import build_pyramid, get_pixel_value
from .orb import KeyPoint

_HALF_PATCH_SIZE = 4
_ITERATIONS = 10
_CONVERGED_NORM = 1e-2
_PYRAMIDS = 4
_PYRAMID_SCALE = 0.5
_SCALES = (1.0, 0.5, 0.25, 0.125)

_offsets = np.arange(-_HALF_PATCH_SIZE, _HALF_PATCH_SIZE, dtype=float)
_OX, _OY = (g.ravel() for g in np.meshgrid(_offsets, _offsets, indexing="ij"))


def _solve(h: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Solve h x = b; singular directions get zero, non-finite input gives NaN."""
    if not (np.all(np.isfinite(h)) and np.all(np.isfinite(b))):
        return np.full(len(b), np.nan)
    return np.linalg.lstsq(h, b, rcond=None)[0]


def _gradient(img, xs, ys) -> np.ndarray:
    return -0.5 * np.stack(
        [
            get_pixel_value(img, xs + 1, ys) - get_pixel_value(img, xs - 1, ys),
            get_pixel_value(img, xs, ys + 1) - get_pixel_value(img, xs, ys - 1),
        ]
    )


def _track(img1, img2, x, y, dx, dy, inverse):
    xs = x + _OX
    ys = y + _OY
    reference = get_pixel_value(img1, xs, ys)
    h = np.zeros((2, 2))
    jac = None
    cost = last_cost = 0.0
    succ = True
    for it in range(_ITERATIONS):
        if not inverse:
            h = np.zeros((2, 2))
        cx = xs + dx
        cy = ys + dy
        error = reference - get_pixel_value(img2, cx, cy)
        if not inverse:
            jac = _gradient(img2, cx, cy)
        elif it == 0:
            # The inverse formulation keeps the template gradient fixed.
            jac = _gradient(img1, xs, ys)
        b = -(jac * error).sum(axis=1)
        cost = float(error @ error)
        if not inverse or it == 0:
            h = h + jac @ jac.T

        update = _solve(h, b)
        if np.isnan(update[0]):
            succ = False
            break
        if it > 0 and cost > last_cost:
            break
        dx += update[0]
        dy += update[1]
        last_cost = cost
        succ = True
        if np.linalg.norm(update) < _CONVERGED_NORM:
            break
    return dx, dy, succ


def optical_flow_single_level(
    img1,
    img2,
    kp1: Sequence,
    kp2: Sequence | None = None,
    inverse: bool = False,
    has_initial: bool = False,
):
    """Track keypoints of img1 into img2 on one image level.

    With has_initial, kp2 holds the starting guesses. Returns the tracked
    keypoints and a list of success flags.
    """
    if has_initial and (kp2 is None or len(kp2) != len(kp1)):
        raise ValueError("an initial guess is needed for every keypoint")
    tracked: list[KeyPoint] = []
    success: list[bool] = []
    for i, kp in enumerate(kp1):
        dx = dy = 0.0
        if has_initial:
            dx = kp2[i].x - kp.x
            dy = kp2[i].y - kp.y
        dx, dy, succ = _track(img1, img2, kp.x, kp.y, dx, dy, inverse)
        success.append(succ)
        tracked.append(KeyPoint(kp.x + dx, kp.y + dy, getattr(kp, "response", 0.0)))
    return tracked, success


def optical_flow_multi_level(img1, img2, kp1: Sequence, inverse: bool = False):
    """Track keypoints coarse to fine over a four-level pyramid of scale 0.5.

    Returns the tracked keypoints and the success flags of the finest level.
    """
    pyr1 = build_pyramid(img1, _PYRAMIDS, _PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, _PYRAMIDS, _PYRAMID_SCALE)

    top = _SCALES[_PYRAMIDS - 1]
    kp1_pyr = [KeyPoint(kp.x * top, kp.y * top, getattr(kp, "response", 0.0)) for kp in kp1]
    kp2_pyr = list(kp1_pyr)
    success: list[bool] = []
    for level in range(_PYRAMIDS - 1, -1, -1):
        kp2_pyr, success = optical_flow_single_level(
            pyr1[level], pyr2[level], kp1_pyr, kp2_pyr, inverse, True
        )
        if level > 0:
            kp1_pyr = [
                KeyPoint(kp.x / _PYRAMID_SCALE, kp.y / _PYRAMID_SCALE, kp.response)
                for kp in kp1_pyr
            ]
            kp2_pyr = [
                KeyPoint(kp.x / _PYRAMID_SCALE, kp.y / _PYRAMID_SCALE, kp.response)
                for kp in kp2_pyr
            ]
    return kp2_pyr, success