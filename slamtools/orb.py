"""Oriented FAST keypoints, rotated BRIEF descriptors and brute-force Hamming matching."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

Descriptor = Optional[tuple]

_DESCRIPTOR_WORDS = 8
_BITS_PER_WORD = 32
_HALF_PATCH_SIZE = 8
_HALF_BOUNDARY = 16
_MATCH_MAX_DISTANCE = 40
_GOOD_MATCH_FLOOR = 30.0

# Bresenham circle of radius 3 used by FAST-9/16, as (dx, dy) in ring order.
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC_LENGTH = 9

# Pairs of test points (px, py, qx, qy) of the steered BRIEF pattern.
_PATTERN = np.array(
    (
        8, -3, 9, 5, 4, 2, 7, -12, -11, 9, -8, 2, 7, -12, 12, -13,
        2, -13, 2, 12, 1, -7, 1, 6, -2, -10, -2, -4, -13, -13, -11, -8,
        -13, -3, -12, -9, 10, 4, 11, 9, -13, -8, -8, -9, -11, 7, -9, 12,
        7, 7, 12, 6, -4, -5, -3, 0, -13, 2, -12, -3, -9, 0, -7, 5,
        12, -6, 12, -1, -3, 6, -2, 12, -6, -13, -4, -8, 11, -13, 12, -8,
        4, 7, 5, 1, 5, -3, 10, -3, 3, -7, 6, 12, -8, -7, -6, -2,
        -2, 11, -1, -10, -13, 12, -8, 10, -7, 3, -5, -3, -4, 2, -3, 7,
        -10, -12, -6, 11, 5, -12, 6, -7, 5, -6, 7, -1, 1, 0, 4, -5,
        9, 11, 11, -13, 4, 7, 4, 12, 2, -1, 4, 4, -4, -12, -2, 7,
        -8, -5, -7, -10, 4, 11, 9, 12, 0, -8, 1, -13, -13, -2, -8, 2,
        -3, -2, -2, 3, -6, 9, -4, -9, 8, 12, 10, 7, 0, 9, 1, 3,
        7, -5, 11, -10, -13, -6, -11, 0, 10, 7, 12, 1, -6, -3, -6, 12,
        10, -9, 12, -4, -13, 8, -8, -12, -13, 0, -8, -4, 3, 3, 7, 8,
        5, 7, 10, -7, -1, 7, 1, -12, 3, -10, 5, 6, 2, -4, 3, -10,
        -13, 0, -13, 5, -13, -7, -12, 12, -13, 3, -11, 8, -7, 12, -4, 7,
        6, -10, 12, 8, -9, -1, -7, -6, -2, -5, 0, 12, -12, 5, -7, 5,
        3, -10, 8, -13, -7, -7, -4, 5, -3, -2, -1, -7, 2, 9, 5, -11,
        -11, -13, -5, -13, -1, 6, 0, -1, 5, -3, 5, 2, -4, -13, -4, 12,
        -9, -6, -9, 6, -12, -10, -8, -4, 10, 2, 12, -3, 7, 12, 12, 12,
        -7, -13, -6, 5, -4, 9, -3, 4, 7, -1, 12, 2, -7, 6, -5, 1,
        -13, 11, -12, 5, -3, 7, -2, -6, 7, -8, 12, -7, -13, -7, -11, -12,
        1, -3, 12, 12, 2, -6, 3, 0, -4, 3, -2, -13, -1, -13, 1, 9,
        7, 1, 8, -6, 1, -1, 3, 12, 9, 1, 12, 6, -1, -9, -1, 3,
        -13, -13, -10, 5, 7, 7, 10, 12, 12, -5, 12, 9, 6, 3, 7, 11,
        5, -13, 6, 10, 2, -12, 2, 3, 3, 8, 4, -6, 2, 6, 12, -13,
        9, -12, 10, 3, -8, 4, -7, 9, -11, 12, -4, -6, 1, 12, 2, -8,
        6, -9, 7, -4, 2, 3, 3, -2, 6, 3, 11, 0, 3, -3, 8, -8,
        7, 8, 9, 3, -11, -5, -6, -4, -10, 11, -5, 10, -5, -8, -3, 12,
        -10, 5, -9, 0, 8, -1, 12, -6, 4, -6, 6, -11, -10, 12, -8, 7,
        4, -2, 6, 7, -2, 0, -2, 12, -5, -8, -5, 2, 7, -6, 10, 12,
        -9, -13, -8, -8, -5, -13, -5, -2, 8, -8, 9, -13, -9, -11, -9, 0,
        1, -8, 1, -2, 7, -4, 9, 1, -2, 1, -1, -4, 11, -6, 12, -11,
        -12, -9, -6, 4, 3, 7, 7, 12, 5, 5, 10, 8, 0, -4, 2, 8,
        -9, 12, -5, -13, 0, 7, 2, 12, -1, 2, 1, 7, 5, 11, 7, -9,
        3, 5, 6, -8, -13, -4, -8, 9, -5, 9, -3, -3, -4, -7, -3, -12,
        6, 5, 8, 0, -7, 6, -6, 12, -13, 6, -5, -2, 1, -10, 3, 10,
        4, 1, 8, -4, -2, -2, 2, -13, 2, -12, 12, 12, -2, -13, 0, -6,
        4, 1, 9, 3, -6, -10, -3, -5, -3, -13, -1, 1, 7, 5, 12, -11,
        4, -2, 5, -7, -13, 9, -9, -5, 7, 1, 8, 6, 7, -8, 7, 6,
        -7, -4, -7, 1, -8, 11, -7, -8, -13, 6, -12, -8, 2, 4, 3, 9,
        10, -5, 12, 3, -6, -5, -6, 7, 8, -3, 9, -8, 2, -12, 2, 8,
        -11, -2, -10, 3, -12, -13, -7, -9, -11, 0, -10, -5, 5, -3, 11, 8,
        -2, -13, -1, 12, -1, -8, 0, 9, -13, -11, -12, -5, -10, -2, -10, 11,
        -3, 9, -2, -13, 2, -3, 3, 2, -9, -13, -4, 0, -4, 6, -3, -10,
        -4, 12, -2, -7, -6, -11, -4, 9, 6, -3, 6, 11, -13, 11, -5, 5,
        11, 11, 12, 6, 7, -5, 12, -2, -1, 12, 0, 7, -4, -8, -3, -2,
        -7, 1, -6, 7, -13, -12, -8, -13, -7, -2, -6, -8, -8, 5, -6, -9,
        -5, -1, -4, 5, -13, 7, -8, 10, 1, 5, 5, -13, 1, 0, 10, -13,
        9, 12, 10, -1, 5, -8, 10, -9, -1, 11, 1, -13, -9, -3, -6, 2,
        -1, -10, 1, 12, -13, 1, -8, -10, 8, -11, 10, -6, 2, -13, 3, -6,
        7, -13, 12, -9, -10, -10, -5, -7, -10, -8, -8, -13, 4, -6, 8, 5,
        3, 12, 8, -13, -4, 2, -3, -3, 5, -13, 10, -12, 4, -13, 5, -1,
        -9, 9, -4, 3, 0, 3, 3, -9, -12, 1, -6, 1, 3, 2, 4, -8,
        -10, -10, -10, 9, 8, -13, 12, 12, -8, -12, -6, -5, 2, 2, 3, 7,
        10, 6, 11, -8, 6, 8, 8, -12, -7, 10, -6, 5, -3, -9, -3, 9,
        -1, -13, -1, 5, -3, -7, -3, 4, -8, -2, -8, 3, 4, 2, 12, 12,
        2, -5, 3, 11, 6, -9, 11, -13, 3, -1, 7, 12, 11, -1, 12, 4,
        -3, 0, -3, 6, 4, -11, 4, 12, 2, -4, 2, 1, -10, -6, -8, 1,
        -13, 7, -11, 1, -13, 12, -11, -13, 6, 0, 11, -13, 0, -1, 1, 4,
        -13, 3, -9, -2, -9, 8, -6, -3, -13, -6, -8, -2, 5, -9, 8, 10,
        2, 7, 3, -9, -1, -6, -1, -1, 9, 5, 11, -2, 11, -3, 12, -8,
        3, 0, 3, 5, -1, 4, 0, 10, 3, -6, 4, 5, -13, 0, -10, 5,
        5, 8, 12, 11, 8, 9, 9, -6, 7, -4, 8, -12, -10, 4, -10, 9,
        7, 3, 12, 4, 9, -7, 10, -2, 7, 0, 12, -2, -1, -6, 0, -11,
    ),
    dtype=float,
).reshape(_DESCRIPTOR_WORDS * _BITS_PER_WORD, 4)

_WORD_WEIGHTS = np.left_shift(np.uint64(1), np.arange(_BITS_PER_WORD, dtype=np.uint64))
_PATCH_OFFSETS = np.arange(-_HALF_PATCH_SIZE, _HALF_PATCH_SIZE, dtype=float)


@dataclass(frozen=True)
class KeyPoint:
    """An image feature location with its detector response."""

    x: float
    y: float
    response: float = 0.0

    @property
    def pt(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Match:
    """A correspondence between a query descriptor and a train descriptor."""

    query_idx: int
    train_idx: int
    distance: float


def _as_gray(image) -> np.ndarray:
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("expected a single-channel 2D image")
    return img


def detect_fast(image, threshold: int = 40) -> list[KeyPoint]:
    """Detect FAST-9 corners with non-maximum suppression, in row-major order."""
    img = _as_gray(image).astype(np.int32)
    rows, cols = img.shape
    if rows < 7 or cols < 7:
        return []

    center = img[3:rows - 3, 3:cols - 3]
    diffs = np.stack(
        [img[3 + dy:rows - 3 + dy, 3 + dx:cols - 3 + dx] - center for dx, dy in _CIRCLE]
    )
    ring = len(_CIRCLE)
    ext = np.concatenate([diffs, diffs[:_ARC_LENGTH - 1]])
    arc_min = ext[:ring]
    arc_max = ext[:ring]
    for k in range(1, _ARC_LENGTH):
        arc_min = np.minimum(arc_min, ext[k:k + ring])
        arc_max = np.maximum(arc_max, ext[k:k + ring])
    brighter = arc_min.max(axis=0)
    darker = -arc_max.min(axis=0)
    best = np.maximum(brighter, darker)

    corner = np.zeros((rows, cols), dtype=bool)
    corner[3:rows - 3, 3:cols - 3] = best > threshold
    scores = np.zeros((rows, cols), dtype=np.int32)
    scores[3:rows - 3, 3:cols - 3] = np.where(best > threshold, best - 1, 0)

    padded = np.pad(scores, 1)
    keep = corner.copy()
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            neighbour = padded[1 + dy:1 + dy + rows, 1 + dx:1 + dx + cols]
            keep &= scores > neighbour

    ys, xs = np.nonzero(keep)
    return [
        KeyPoint(float(x), float(y), float(scores[y, x])) for y, x in zip(ys, xs)
    ]


def _sample(img: np.ndarray, pts: np.ndarray, cos_t: float, sin_t: float, x: float, y: float):
    rows, cols = img.shape
    px = cos_t * pts[:, 0] - sin_t * pts[:, 1] + x
    py = sin_t * pts[:, 0] + cos_t * pts[:, 1] + y
    ix = np.clip(np.trunc(px).astype(int), 0, cols - 1)
    iy = np.clip(np.trunc(py).astype(int), 0, rows - 1)
    return img[iy, ix]


def compute_orb(image, keypoints: Sequence[KeyPoint]) -> list[Descriptor]:
    """Compute a 256-bit steered BRIEF descriptor for each keypoint.

    Each descriptor is a tuple of eight 32-bit words. Keypoints closer than
    16 pixels to the image border get None.
    """
    img = _as_gray(image)
    rows, cols = img.shape
    pixels = img.astype(np.int32)
    descriptors: list[Descriptor] = []
    for kp in keypoints:
        x, y = kp.x, kp.y
        if (
            x < _HALF_BOUNDARY
            or y < _HALF_BOUNDARY
            or x >= cols - _HALF_BOUNDARY
            or y >= rows - _HALF_BOUNDARY
        ):
            descriptors.append(None)
            continue

        xi, yi = int(math.floor(x)), int(math.floor(y))
        patch = pixels[
            yi - _HALF_PATCH_SIZE:yi + _HALF_PATCH_SIZE,
            xi - _HALF_PATCH_SIZE:xi + _HALF_PATCH_SIZE,
        ].astype(float)
        m10 = float((patch * _PATCH_OFFSETS[None, :]).sum())
        m01 = float((patch * _PATCH_OFFSETS[:, None]).sum())

        m_norm = math.sqrt(m01 * m01 + m10 * m10) + 1e-18
        sin_t = m01 / m_norm
        cos_t = m10 / m_norm

        p_vals = _sample(pixels, _PATTERN[:, :2], cos_t, sin_t, x, y)
        q_vals = _sample(pixels, _PATTERN[:, 2:], cos_t, sin_t, x, y)
        bits = (p_vals < q_vals).astype(np.uint64).reshape(_DESCRIPTOR_WORDS, _BITS_PER_WORD)
        words = (bits * _WORD_WEIGHTS).sum(axis=1)
        descriptors.append(tuple(int(w) for w in words))
    return descriptors


def hamming_distance(desc1, desc2) -> int:
    """Number of differing bits between two descriptors of 32-bit words."""
    if len(desc1) != len(desc2):
        raise ValueError("descriptors differ in length")
    return sum((int(a) ^ int(b)).bit_count() for a, b in zip(desc1, desc2))


def bf_match(desc1: Sequence[Descriptor], desc2: Sequence[Descriptor]) -> list[Match]:
    """Brute-force match by Hamming distance, keeping matches closer than 40 bits."""
    matches: list[Match] = []
    for i1, d1 in enumerate(desc1):
        if not d1:
            continue
        best_idx, best_dist = 0, 256
        for i2, d2 in enumerate(desc2):
            if not d2:
                continue
            distance = hamming_distance(d1, d2)
            if distance < _MATCH_MAX_DISTANCE and distance < best_dist:
                best_idx, best_dist = i2, distance
        if best_dist < _MATCH_MAX_DISTANCE:
            matches.append(Match(i1, best_idx, float(best_dist)))
    return matches


def filter_good_matches(matches: Sequence[Match]) -> list[Match]:
    """Keep matches no farther than twice the smallest distance, with a floor of 30."""
    if not matches:
        return []
    min_dist = min(m.distance for m in matches)
    limit = max(2 * min_dist, _GOOD_MATCH_FLOOR)
    return [m for m in matches if m.distance <= limit]