"""Reprojection error of BAL cameras with radial distortion, and its robust minimisation."""

from __future__ import annotations

import sys
from dataclasses import dataclass

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from .bal import BALProblem
from .rotation import angle_axis_rotate_point

CAMERA_BLOCK_SIZE = 9
HUBER_SCALE = 1.0
DEFAULT_MAX_ITERATIONS = 50
_EPS = sys.float_info.epsilon


def _camera(values) -> np.ndarray:
    cam = np.asarray(values, dtype=float)
    if cam.shape != (CAMERA_BLOCK_SIZE,):
        raise ValueError(f"camera must have {CAMERA_BLOCK_SIZE} parameters, got shape {cam.shape}")
    return cam


def cam_projection_with_distortion(camera, point) -> np.ndarray:
    """Image position of ``point`` for a camera ``[rotation(3), translation(3), f, k1, k2]``."""
    cam = _camera(camera)
    p = angle_axis_rotate_point(cam[:3], point) + cam[3:6]
    xp = -p[0] / p[2]
    yp = -p[1] / p[2]
    l1, l2 = cam[7], cam[8]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (l1 + l2 * r2)
    focal = cam[6]
    return np.array([focal * distortion * xp, focal * distortion * yp])


@dataclass(frozen=True)
class SnavelyReprojectionError:
    """Residual between a predicted and an observed image position."""

    observed_x: float
    observed_y: float

    def __call__(self, camera, point) -> np.ndarray:
        prediction = cam_projection_with_distortion(camera, point)
        return prediction - np.array([self.observed_x, self.observed_y])


def _rotate_many(angle_axis: np.ndarray, points: np.ndarray) -> np.ndarray:
    theta2 = np.sum(angle_axis * angle_axis, axis=1)
    large = theta2 > _EPS
    theta = np.sqrt(np.where(large, theta2, 1.0))
    w = angle_axis / theta[:, None]
    cos_theta = np.cos(theta)[:, None]
    sin_theta = np.sin(theta)[:, None]
    tmp = np.sum(w * points, axis=1)[:, None] * (1.0 - cos_theta)
    rotated = points * cos_theta + np.cross(w, points) * sin_theta + w * tmp
    approximate = points + np.cross(angle_axis, points)
    return np.where(large[:, None], rotated, approximate)


def _project_many(cameras: np.ndarray, points: np.ndarray) -> np.ndarray:
    p = _rotate_many(cameras[:, :3], points) + cameras[:, 3:6]
    xp = -p[:, 0] / p[:, 2]
    yp = -p[:, 1] / p[:, 2]
    r2 = xp * xp + yp * yp
    distortion = 1.0 + r2 * (cameras[:, 7] + cameras[:, 8] * r2)
    scale = cameras[:, 6] * distortion
    return np.column_stack([scale * xp, scale * yp])


def _require_angle_axis(problem: BALProblem) -> None:
    if problem.use_quaternions:
        raise ValueError("reprojection needs angle-axis cameras, not quaternions")


def reprojection_residuals(problem: BALProblem) -> np.ndarray:
    """Predicted minus observed position for every observation, one row each."""
    _require_angle_axis(problem)
    cameras = problem.cameras[problem.camera_index]
    points = problem.points[problem.point_index]
    return _project_many(cameras, points) - problem.observations


def _huber_cost(residuals: np.ndarray) -> float:
    z = (residuals / HUBER_SCALE) ** 2
    rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    return 0.5 * HUBER_SCALE**2 * float(np.sum(rho))


@dataclass(frozen=True)
class SolveSummary:
    """Outcome of a bundle adjustment run."""

    num_cameras: int
    num_points: int
    num_observations: int
    initial_cost: float
    final_cost: float
    evaluations: int
    success: bool
    message: str

    def report(self) -> str:
        return "\n".join(
            [
                "Solver Summary",
                f"  cameras:       {self.num_cameras}",
                f"  points:        {self.num_points}",
                f"  observations:  {self.num_observations}",
                f"  initial cost:  {self.initial_cost:.6e}",
                f"  final cost:    {self.final_cost:.6e}",
                f"  evaluations:   {self.evaluations}",
                f"  termination:   {'CONVERGENCE' if self.success else 'NO_CONVERGENCE'}"
                f" ({self.message})",
            ]
        )


def solve_ba(problem: BALProblem, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> SolveSummary:
    """Minimise the Huber-robust reprojection error over all cameras and points, in place."""
    _require_angle_axis(problem)
    if max_iterations < 1:
        raise ValueError("max_iterations must be at least 1")
    if problem.num_observations == 0:
        raise ValueError("the problem has no observations")

    num_cameras = problem.num_cameras
    offset = CAMERA_BLOCK_SIZE * num_cameras
    camera_index = problem.camera_index
    point_index = problem.point_index
    observations = problem.observations

    def residuals(x: np.ndarray) -> np.ndarray:
        cameras = x[:offset].reshape(num_cameras, CAMERA_BLOCK_SIZE)
        points = x[offset:].reshape(-1, 3)
        predicted = _project_many(cameras[camera_index], points[point_index])
        return (predicted - observations).ravel()

    sparsity = lil_matrix((2 * problem.num_observations, problem.num_parameters), dtype=int)
    for i, (c, p) in enumerate(zip(camera_index, point_index)):
        rows = slice(2 * i, 2 * i + 2)
        sparsity[rows, CAMERA_BLOCK_SIZE * c:CAMERA_BLOCK_SIZE * (c + 1)] = 1
        sparsity[rows, offset + 3 * p:offset + 3 * (p + 1)] = 1

    x0 = problem.parameters.copy()
    initial_cost = _huber_cost(residuals(x0))
    result = least_squares(
        residuals,
        x0,
        jac_sparsity=sparsity,
        loss="huber",
        f_scale=HUBER_SCALE,
        method="trf",
        x_scale="jac",
        max_nfev=max_iterations,
    )
    problem.parameters[:] = result.x
    return SolveSummary(
        num_cameras=num_cameras,
        num_points=problem.num_points,
        num_observations=problem.num_observations,
        initial_cost=initial_cost,
        final_cost=_huber_cost(result.fun),
        evaluations=int(result.nfev),
        success=bool(result.success),
        message=str(result.message),
    )


def main(argv=None) -> int:
    """Load a BAL file, condition and perturb it, solve it and save PLY clouds."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: bundle_adjustment_ceres bal_data.txt")
        return 1

    try:
        problem = BALProblem.from_file(args[0])
    except (OSError, ValueError) as exc:
        print(f"Error: unable to load {args[0]}: {exc}", file=sys.stderr)
        return 1

    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5)
    problem.write_to_ply_file("initial.ply")

    print("bal problem file loaded...")
    print(
        f"bal problem have {problem.num_cameras} cameras and {problem.num_points} points. "
    )
    print(f"Forming {problem.num_observations} observations. ")
    print("Solving ceres BA ... ")
    summary = solve_ba(problem)
    print(summary.report())

    problem.write_to_ply_file("final.ply")
    return 0