"""Bundle-adjustment-in-the-large (BAL) problems: loading, saving and conditioning."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .gaussian import rand_normal
from .rotation import (
    angle_axis_rotate_point,
    angle_axis_to_quaternion,
    quaternion_to_angle_axis,
)

POINT_BLOCK_SIZE = 3


def median(data) -> float:
    """Element at position ``n // 2`` of the sorted data."""
    values = sorted(float(v) for v in data)
    if not values:
        raise ValueError("median of empty data")
    return values[len(values) // 2]


def perturb_point3(sigma: float, point, rng: random.Random | None = None) -> np.ndarray:
    """Return ``point`` with Gaussian noise of deviation ``sigma`` added to each coordinate."""
    p = np.asarray(point, dtype=float)
    return p + np.array([rand_normal(rng) * sigma for _ in range(3)])


@dataclass(eq=False)
class BALProblem:
    """Cameras, points and observations of a BAL dataset."""

    num_cameras: int
    num_points: int
    camera_index: np.ndarray
    point_index: np.ndarray
    observations: np.ndarray
    parameters: np.ndarray
    use_quaternions: bool = field(default=False)

    def __post_init__(self) -> None:
        self.camera_index = np.asarray(self.camera_index, dtype=int)
        self.point_index = np.asarray(self.point_index, dtype=int)
        self.observations = np.asarray(self.observations, dtype=float).reshape(-1, 2)
        self.parameters = np.asarray(self.parameters, dtype=float).ravel()
        expected = self.camera_block_size * self.num_cameras + POINT_BLOCK_SIZE * self.num_points
        if self.parameters.size != expected:
            raise ValueError(f"expected {expected} parameters, got {self.parameters.size}")
        if not (len(self.camera_index) == len(self.point_index) == len(self.observations)):
            raise ValueError("observation arrays differ in length")

    @classmethod
    def from_file(cls, path, use_quaternions: bool = False) -> "BALProblem":
        """Load a BAL text file; angle-axis rotations become quaternions if asked."""
        tokens = iter(Path(path).read_text().split())

        def take(convert):
            try:
                token = next(tokens)
            except StopIteration:
                raise ValueError("Invalid UW data file: unexpected end of data") from None
            try:
                return convert(token)
            except ValueError:
                raise ValueError(f"Invalid UW data file: bad value {token!r}") from None

        num_cameras = take(int)
        num_points = take(int)
        num_observations = take(int)

        camera_index = []
        point_index = []
        observations = []
        for _ in range(num_observations):
            camera_index.append(take(int))
            point_index.append(take(int))
            observations.append((take(float), take(float)))

        num_parameters = 9 * num_cameras + 3 * num_points
        params = np.array([take(float) for _ in range(num_parameters)], dtype=float)

        if use_quaternions:
            cams = params[: 9 * num_cameras].reshape(num_cameras, 9)
            quat_cams = [
                np.concatenate([angle_axis_to_quaternion(cam[:3]), cam[3:]]) for cam in cams
            ]
            params = np.concatenate(quat_cams + [params[9 * num_cameras:]])

        return cls(
            num_cameras=num_cameras,
            num_points=num_points,
            camera_index=np.array(camera_index, dtype=int),
            point_index=np.array(point_index, dtype=int),
            observations=np.array(observations, dtype=float).reshape(-1, 2),
            parameters=params,
            use_quaternions=use_quaternions,
        )

    @property
    def camera_block_size(self) -> int:
        return 10 if self.use_quaternions else 9

    @property
    def point_block_size(self) -> int:
        return POINT_BLOCK_SIZE

    @property
    def num_observations(self) -> int:
        return len(self.observations)

    @property
    def num_parameters(self) -> int:
        return self.parameters.size

    @property
    def cameras(self) -> np.ndarray:
        """Writable view of the camera blocks, one row per camera."""
        end = self.camera_block_size * self.num_cameras
        return self.parameters[:end].reshape(self.num_cameras, self.camera_block_size)

    @property
    def points(self) -> np.ndarray:
        """Writable view of the points, one row per point."""
        start = self.camera_block_size * self.num_cameras
        return self.parameters[start:].reshape(self.num_points, POINT_BLOCK_SIZE)

    def camera_for_observation(self, i: int) -> np.ndarray:
        return self.cameras[self.camera_index[i]]

    def point_for_observation(self, i: int) -> np.ndarray:
        return self.points[self.point_index[i]]

    def write_to_file(self, path) -> None:
        """Save the problem in BAL text form with angle-axis rotations."""
        lines = [f"{self.num_cameras} {self.num_cameras} {self.num_points} {self.num_observations}"]
        for cam_idx, pt_idx, (u, v) in zip(self.camera_index, self.point_index, self.observations):
            lines.append("%d %d %g %g" % (cam_idx, pt_idx, u, v))
        for camera in self.cameras:
            if self.use_quaternions:
                values = np.concatenate([quaternion_to_angle_axis(camera[:4]), camera[4:10]])
            else:
                values = camera[:9]
            lines.extend("%.16g" % value for value in values)
        for point in self.points:
            lines.extend("%.16g" % value for value in point)
        Path(path).write_text("\n".join(lines) + "\n")

    def write_to_ply_file(self, path) -> None:
        """Save camera centres (green) and points (white) as an ASCII PLY cloud."""
        header = [
            "ply",
            "format ascii 1.0",
            f"element vertex {self.num_cameras + self.num_points}",
            "property float x",
            "property float y",
            "property float z",
            "property uchar red",
            "property uchar green",
            "property uchar blue",
            "end_header",
        ]
        lines = list(header)
        for camera in self.cameras:
            _, center = self._camera_to_angle_axis_and_center(camera)
            lines.append(" ".join(f"{c:g}" for c in center) + " 0 255 0")
        for point in self.points:
            lines.append("".join(f"{c:g} " for c in point) + " 255 255 255")
        Path(path).write_text("\n".join(lines) + "\n")

    def normalize(self) -> None:
        """Centre the points on their median and scale their median deviation to 100."""
        points = self.points
        med = np.array([median(points[:, i]) for i in range(3)])
        deviation = median(np.abs(points - med).sum(axis=1))
        if deviation == 0.0:
            raise ValueError("points have zero median absolute deviation")
        scale = 100.0 / deviation
        points[:] = scale * (points - med)
        for camera in self.cameras:
            angle_axis, center = self._camera_to_angle_axis_and_center(camera)
            self._angle_axis_and_center_to_camera(angle_axis, scale * (center - med), camera)

    def perturb(
        self,
        rotation_sigma: float,
        translation_sigma: float,
        point_sigma: float,
        rng: random.Random | None = None,
    ) -> None:
        """Add Gaussian noise to points, camera rotations and camera translations."""
        if point_sigma < 0.0 or rotation_sigma < 0.0 or translation_sigma < 0.0:
            raise ValueError("noise deviations must be non-negative")

        points = self.points
        if point_sigma > 0:
            for point in points:
                point[:] = perturb_point3(point_sigma, point, rng)

        t = self._translation_slice()
        for camera in self.cameras:
            angle_axis, center = self._camera_to_angle_axis_and_center(camera)
            if rotation_sigma > 0.0:
                angle_axis = perturb_point3(rotation_sigma, angle_axis, rng)
            self._angle_axis_and_center_to_camera(angle_axis, center, camera)
            if translation_sigma > 0.0:
                camera[t] = perturb_point3(translation_sigma, camera[t], rng)

    def _translation_slice(self) -> slice:
        start = self.camera_block_size - 6
        return slice(start, start + 3)

    def _camera_to_angle_axis_and_center(self, camera) -> tuple[np.ndarray, np.ndarray]:
        if self.use_quaternions:
            angle_axis = quaternion_to_angle_axis(camera[:4])
        else:
            angle_axis = np.array(camera[:3], dtype=float)
        # c = -R^T t
        center = -angle_axis_rotate_point(-angle_axis, camera[self._translation_slice()])
        return angle_axis, center

    def _angle_axis_and_center_to_camera(self, angle_axis, center, camera) -> None:
        if self.use_quaternions:
            camera[:4] = angle_axis_to_quaternion(angle_axis)
        else:
            camera[:3] = angle_axis
        # t = -R c
        camera[self._translation_slice()] = -angle_axis_rotate_point(angle_axis, center)