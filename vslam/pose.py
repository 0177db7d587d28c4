"""Camera pose from 3D-3D correspondences (ICP) and from 3D-2D projections (PnP)."""

from __future__ import annotations

import logging

import numpy as np

from .lie import SE3, hat

logger = logging.getLogger(__name__)

_LM_TAU = 1e-5
_LM_MAX_TRIALS = 10


def _points(values, dim: int, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.ndim != 2 or array.shape[1] != dim:
        raise ValueError(f"{name} must have shape (N, {dim}), got {array.shape}")
    if len(array) == 0:
        raise ValueError(f"{name} is empty")
    return array


def _paired(a: np.ndarray, b: np.ndarray) -> None:
    if len(a) != len(b):
        raise ValueError(f"point sets differ in length: {len(a)} and {len(b)}")


def pixel2cam(p, K) -> np.ndarray:
    """Normalised camera coordinates of the pixel ``p`` for intrinsics ``K``."""
    k = np.asarray(K, dtype=float)
    x, y = p
    return np.array([(x - k[0, 2]) / k[0, 0], (y - k[1, 2]) / k[1, 1]])


def pose_estimation_3d3d(pts1, pts2) -> tuple[np.ndarray, np.ndarray]:
    """Closed-form ``R, t`` with ``pts1 ~ R @ pts2 + t`` via SVD."""
    p1 = _points(pts1, 3, "pts1")
    p2 = _points(pts2, 3, "pts2")
    _paired(p1, p2)

    c1 = p1.mean(axis=0)
    c2 = p2.mean(axis=0)
    q1 = p1 - c1
    q2 = p2 - c2
    w = q1.T @ q2
    logger.debug("W=%s", w)

    u, _, vt = np.linalg.svd(w)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation = -rotation
    translation = c1 - rotation @ c2
    return rotation, translation


def _icp_system(pose: SE3, p1: np.ndarray, p2: np.ndarray):
    transformed = pose @ p2
    errors = p1 - transformed
    jac = np.zeros((len(p2), 3, 6))
    jac[:, :, :3] = -np.eye(3)
    jac[:, :, 3:] = np.array([hat(p) for p in transformed])
    h = np.einsum("nij,nik->jk", jac, jac)
    b = -np.einsum("nij,ni->j", jac, errors)
    return h, b, float(np.sum(errors**2))


def bundle_adjustment_3d3d(pts1, pts2, iterations: int = 10) -> SE3:
    """Refine ``T`` with ``pts1 ~ T @ pts2`` by Levenberg-Marquardt from the identity."""
    p1 = _points(pts1, 3, "pts1")
    p2 = _points(pts2, 3, "pts2")
    _paired(p1, p2)

    pose = SE3()
    h, b, cost = _icp_system(pose, p1, p2)
    lam = _LM_TAU * float(np.max(np.diag(h)))
    if lam <= 0.0:
        lam = _LM_TAU
    nu = 2.0

    for iteration in range(iterations):
        if cost == 0.0:
            break
        accepted = False
        for _ in range(_LM_MAX_TRIALS):
            try:
                dx = np.linalg.solve(h + lam * np.eye(6), b)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            candidate = SE3.exp(dx) @ pose
            new_cost = float(np.sum((p1 - candidate @ p2) ** 2))
            if np.isfinite(new_cost) and new_cost < cost:
                rho = (cost - new_cost) / (float(dx @ (lam * dx + b)) + 1e-3)
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                pose = candidate
                h, b, cost = _icp_system(pose, p1, p2)
                accepted = True
                break
            lam *= nu
            nu *= 2.0
        logger.debug("iteration %d chi2=%.12g lambda=%g", iteration, cost, lam)
        if not accepted:
            break
    return pose


def bundle_adjustment_gauss_newton(
    points_3d, points_2d, K, pose: SE3 | None = None, iterations: int = 10
) -> SE3:
    """Gauss-Newton PnP: the pose that projects ``points_3d`` onto ``points_2d``."""
    pts3 = _points(points_3d, 3, "points_3d")
    pts2 = _points(points_2d, 2, "points_2d")
    _paired(pts3, pts2)
    k = np.asarray(K, dtype=float)
    fx, fy, cx, cy = k[0, 0], k[1, 1], k[0, 2], k[1, 2]

    pose = SE3() if pose is None else pose
    last_cost = 0.0
    for iteration in range(iterations):
        pc = pose @ pts3
        x, y, z = pc.T
        inv_z = 1.0 / z
        inv_z2 = inv_z * inv_z
        proj = np.column_stack([fx * x * inv_z + cx, fy * y * inv_z + cy])
        errors = pts2 - proj
        cost = float(np.sum(errors**2))

        zeros = np.zeros_like(x)
        jac = np.stack(
            [
                np.stack(
                    [
                        -fx * inv_z,
                        zeros,
                        fx * x * inv_z2,
                        fx * x * y * inv_z2,
                        -fx - fx * x * x * inv_z2,
                        fx * y * inv_z,
                    ],
                    axis=1,
                ),
                np.stack(
                    [
                        zeros,
                        -fy * inv_z,
                        fy * y * inv_z2,
                        fy + fy * y * y * inv_z2,
                        -fy * x * y * inv_z2,
                        -fy * x * inv_z,
                    ],
                    axis=1,
                ),
            ],
            axis=1,
        )
        h = np.einsum("nij,nik->jk", jac, jac)
        b = -np.einsum("nij,ni->j", jac, errors)

        try:
            dx = np.linalg.solve(h, b)
        except np.linalg.LinAlgError:
            dx = np.full(6, np.nan)

        if np.isnan(dx[0]):
            logger.debug("result is nan!")
            break
        if iteration > 0 and cost >= last_cost:
            logger.debug("cost: %g, last cost: %g", cost, last_cost)
            break

        pose = SE3.exp(dx) @ pose
        last_cost = cost
        logger.debug("iteration %d cost=%.12g", iteration, cost)
        if np.linalg.norm(dx) < 1e-6:
            break
    return pose