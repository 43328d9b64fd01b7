"""Loading, normalising, perturbing and writing BAL bundle-adjustment problems."""

from __future__ import annotations

import random
from pathlib import Path

import numpy as np

from .rotation import (
    angle_axis_rotate_point,
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
)
from .sampling import rand_normal


def median(data) -> float:
    """Return the element at position n // 2 of the sorted data."""
    arr = np.asarray(data, dtype=float).ravel()
    if arr.size == 0:
        raise ValueError("median of empty data")
    mid = arr.size // 2
    return float(np.partition(arr, mid)[mid])


def perturb_point3(sigma: float, point, rng: random.Random | None = None) -> np.ndarray:
    """Return the 3-vector with Gaussian noise of the given sigma added."""
    noise = np.array([rand_normal(rng) for _ in range(3)])
    return np.asarray(point, dtype=float) + noise * sigma


class _Tokens:
    def __init__(self, text: str):
        self._it = iter(text.split())

    def _next(self) -> str:
        try:
            return next(self._it)
        except StopIteration:
            raise ValueError("Invalid UW data file: unexpected end of data") from None

    def int(self) -> int:
        token = self._next()
        try:
            return int(token)
        except ValueError:
            raise ValueError(f"Invalid UW data file: bad integer {token!r}") from None

    def float(self) -> float:
        token = self._next()
        try:
            return float(token)
        except ValueError:
            raise ValueError(f"Invalid UW data file: bad number {token!r}") from None


class BALProblem:
    """A bundle-adjustment problem in the BAL text format."""

    def __init__(self, filename, use_quaternions: bool = False):
        tokens = _Tokens(Path(filename).read_text())
        num_cameras = tokens.int()
        num_points = tokens.int()
        num_observations = tokens.int()
        if min(num_cameras, num_points, num_observations) < 0:
            raise ValueError("Invalid UW data file: negative count")

        camera_index = []
        point_index = []
        observations = []
        for _ in range(num_observations):
            camera_index.append(tokens.int())
            point_index.append(tokens.int())
            observations.append((tokens.float(), tokens.float()))

        num_parameters = 9 * num_cameras + 3 * num_points
        parameters = np.array([tokens.float() for _ in range(num_parameters)], dtype=float)

        self._num_cameras = num_cameras
        self._num_points = num_points
        self.camera_index = np.array(camera_index, dtype=int)
        self.point_index = np.array(point_index, dtype=int)
        self.observations = np.array(observations, dtype=float).reshape(num_observations, 2)
        self.use_quaternions = use_quaternions

        if use_quaternions:
            cams = parameters[: 9 * num_cameras].reshape(num_cameras, 9)
            quat_cams = [
                np.concatenate([angle_axis_to_quaternion(cam[:3]), cam[3:]]) for cam in cams
            ]
            parameters = np.concatenate(
                [np.array(quat_cams, dtype=float).ravel(), parameters[9 * num_cameras:]]
            )
        self.parameters = parameters

    @property
    def camera_block_size(self) -> int:
        return 10 if self.use_quaternions else 9

    @property
    def point_block_size(self) -> int:
        return 3

    @property
    def num_cameras(self) -> int:
        return self._num_cameras

    @property
    def num_points(self) -> int:
        return self._num_points

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    @property
    def num_parameters(self) -> int:
        return self.parameters.size

    @property
    def cameras(self) -> np.ndarray:
        """Camera blocks, one row per camera; a writable view."""
        n = self.camera_block_size * self._num_cameras
        return self.parameters[:n].reshape(self._num_cameras, self.camera_block_size)

    @property
    def points(self) -> np.ndarray:
        """Point blocks, one row per point; a writable view."""
        n = self.camera_block_size * self._num_cameras
        return self.parameters[n:].reshape(self._num_points, self.point_block_size)

    def camera_for_observation(self, i: int) -> np.ndarray:
        return self.cameras[self.camera_index[i]]

    def point_for_observation(self, i: int) -> np.ndarray:
        return self.points[self.point_index[i]]

    def _translation_slice(self) -> slice:
        cb = self.camera_block_size
        return slice(cb - 6, cb - 3)

    def _camera_to_angle_axis_and_center(self, camera):
        if self.use_quaternions:
            angle_axis = quaternion_to_angle_axis(camera[:4])
        else:
            angle_axis = np.array(camera[:3], dtype=float)
        # c = -R' t
        center = -angle_axis_rotate_point(-angle_axis, camera[self._translation_slice()])
        return angle_axis, center

    def _angle_axis_and_center_to_camera(self, angle_axis, center, camera) -> None:
        if self.use_quaternions:
            camera[:4] = angle_axis_to_quaternion(angle_axis)
        else:
            camera[:3] = angle_axis
        # t = -R c
        camera[self._translation_slice()] = -angle_axis_rotate_point(angle_axis, center)

    def write_to_file(self, filename) -> None:
        """Write the problem in BAL text form, rotations as angle-axis."""
        lines = [
            f"{self._num_cameras} {self._num_cameras} {self._num_points} {self.num_observations}"
        ]
        for cam, pt, (ox, oy) in zip(self.camera_index, self.point_index, self.observations):
            lines.append(f"{cam} {pt}" + " %g" % ox + " %g" % oy)
        for camera in self.cameras:
            if self.use_quaternions:
                values = np.concatenate([quaternion_to_angle_axis(camera[:4]), camera[4:10]])
            else:
                values = camera[:9]
            lines.extend("%.16g" % v for v in values)
        lines.extend("%.16g" % v for v in self.points.ravel())
        Path(filename).write_text("\n".join(lines) + "\n")

    def write_to_ply_file(self, filename) -> None:
        """Write camera centres (green) and points (white) as an ASCII PLY cloud."""
        header = [
            "ply",
            "format ascii 1.0",
            f"element vertex {self._num_cameras + self._num_points}",
            "property float x",
            "property float y",
            "property float z",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "end_header",
        ]
        body = []
        for camera in self.cameras:
            _, center = self._camera_to_angle_axis_and_center(camera)
            body.append(" ".join("%g" % c for c in center) + " 0 255 0\n")
        for point in self.points:
            body.append("".join("%g " % v for v in point) + " 255 255 255\n")
        Path(filename).write_text("\n".join(header) + "\n" + "".join(body))

    def normalize(self) -> None:
        """Centre the scene on its median and scale its median deviation to 100."""
        points = self.points
        med = np.array([median(points[:, i]) for i in range(3)])
        mad = median(np.abs(points - med).sum(axis=1))
        scale = 100.0 / mad
        points[:] = scale * (points - med)

        for camera in self.cameras:
            angle_axis, center = self._camera_to_angle_axis_and_center(camera)
            center = scale * (center - med)
            self._angle_axis_and_center_to_camera(angle_axis, center, camera)

    def perturb(
        self,
        rotation_sigma: float,
        translation_sigma: float,
        point_sigma: float,
        rng: random.Random | None = None,
    ) -> None:
        """Add Gaussian noise to points, camera rotations and translations."""
        if point_sigma < 0.0 or rotation_sigma < 0.0 or translation_sigma < 0.0:
            raise ValueError("sigmas must be non-negative")

        points = self.points
        if point_sigma > 0:
            for i in range(self._num_points):
                points[i] = perturb_point3(point_sigma, points[i], rng)

        translation = self._translation_slice()
        for camera in self.cameras:
            angle_axis, center = self._camera_to_angle_axis_and_center(camera)
            if rotation_sigma > 0.0:
                angle_axis = perturb_point3(rotation_sigma, angle_axis, rng)
            self._angle_axis_and_center_to_camera(angle_axis, center, camera)
            if translation_sigma > 0.0:
                camera[translation] = perturb_point3(translation_sigma, camera[translation], rng)