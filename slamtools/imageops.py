"""Grey-level image sampling, resizing and image pyramids."""

from __future__ import annotations

import numpy as np


def _as_image(img, min_size: int = 1) -> np.ndarray:
    a = np.asarray(img)
    if a.ndim != 2:
        raise ValueError("expected a single-channel 2D image")
    if a.shape[0] < min_size or a.shape[1] < min_size:
        raise ValueError(f"image must be at least {min_size}x{min_size}")
    return a


def _coords(x, y):
    scalar = np.ndim(x) == 0 and np.ndim(y) == 0
    xs, ys = np.broadcast_arrays(np.asarray(x, dtype=float), np.asarray(y, dtype=float))
    return xs, ys, scalar


def _interpolate(a, xs, ys, x_limit, y_limit, scalar):
    rows, cols = a.shape
    x0 = np.floor(xs)
    y0 = np.floor(ys)
    xx = xs - x0
    yy = ys - y0
    xi = x0.astype(int)
    yi = y0.astype(int)
    xa = np.minimum(cols - 1, xi + 1)
    ya = np.minimum(rows - 1, yi + 1)
    value = (
        (1 - xx) * (1 - yy) * a[yi, xi]
        + xx * (1 - yy) * a[yi, xa]
        + (1 - xx) * yy * a[ya, xi]
        + xx * yy * a[ya, xa]
    )
    return float(value) if scalar else np.asarray(value, dtype=float)


def get_pixel_value(img, x, y):
    """Bilinearly interpolated grey value; coordinates are clamped to [0, size - 2].

    Accepts scalars or arrays of coordinates.
    """
    a = _as_image(img, 2)
    rows, cols = a.shape
    xs, ys, scalar = _coords(x, y)
    xs = np.where(xs < 0, 0.0, xs)
    ys = np.where(ys < 0, 0.0, ys)
    xs = np.where(xs >= cols - 1, cols - 2.0, xs)
    ys = np.where(ys >= rows - 1, rows - 2.0, ys)
    return _interpolate(a, xs, ys, cols, rows, scalar)


def get_pixel_value_clamped(img, x, y):
    """Bilinearly interpolated grey value; coordinates are clamped to [0, size - 1].

    Accepts scalars or arrays of coordinates.
    """
    a = _as_image(img, 1)
    rows, cols = a.shape
    xs, ys, scalar = _coords(x, y)
    xs = np.where(xs < 0, 0.0, xs)
    ys = np.where(ys < 0, 0.0, ys)
    xs = np.where(xs >= cols, cols - 1.0, xs)
    ys = np.where(ys >= rows, rows - 1.0, ys)
    return _interpolate(a, xs, ys, cols, rows, scalar)


def _axis(src: int, dst: int):
    scale = src / dst
    f = (np.arange(dst) + 0.5) * scale - 0.5
    i0 = np.floor(f).astype(int)
    w = f - i0
    low = i0 < 0
    i0[low] = 0
    w[low] = 0.0
    high = i0 >= src - 1
    i0[high] = src - 1
    w[high] = 0.0
    i1 = np.minimum(i0 + 1, src - 1)
    return i0, i1, w


def resize(img, width: int, height: int) -> np.ndarray:
    """Bilinear resize to width x height with pixel-centre alignment; keeps the dtype."""
    a = _as_image(img, 1)
    width, height = int(width), int(height)
    if width <= 0 or height <= 0:
        raise ValueError("target size must be positive")
    rows, cols = a.shape
    x0, x1, wx = _axis(cols, width)
    y0, y1, wy = _axis(rows, height)
    src = a.astype(float)
    top = src[y0][:, x0] * (1 - wx) + src[y0][:, x1] * wx
    bottom = src[y1][:, x0] * (1 - wx) + src[y1][:, x1] * wx
    out = top * (1 - wy)[:, None] + bottom * wy[:, None]
    if np.issubdtype(a.dtype, np.integer):
        info = np.iinfo(a.dtype)
        return np.clip(np.rint(out), info.min, info.max).astype(a.dtype)
    if np.issubdtype(a.dtype, np.floating):
        return out.astype(a.dtype)
    return out


def build_pyramid(img, levels: int = 4, scale: float = 0.5) -> list[np.ndarray]:
    """Return the image followed by successively resized copies, finest first."""
    if levels < 1:
        raise ValueError("a pyramid needs at least one level")
    pyramid = [_as_image(img, 1)]
    for _ in range(levels - 1):
        prev = pyramid[-1]
        pyramid.append(
            resize(prev, int(prev.shape[1] * scale), int(prev.shape[0] * scale))
        )
    return pyramid