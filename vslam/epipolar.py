"""Two-view geometry: fundamental and essential matrices, relative pose and triangulation."""

from __future__ import annotations

import numpy as np

from .lie import hat
from .pose import pixel2cam

MIN_POINTS = 8
DEPTH_LIMIT = 50.0
COLOR_LOW_DEPTH = 10.0
COLOR_HIGH_DEPTH = 50.0


def _pixels(values, name: str) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N, 2), got {array.shape}")
    return array


def _pair(points1, points2, minimum: int = MIN_POINTS) -> tuple[np.ndarray, np.ndarray]:
    p1 = _pixels(points1, "points1")
    p2 = _pixels(points2, "points2")
    if len(p1) != len(p2):
        raise ValueError(f"point sets differ in length: {len(p1)} and {len(p2)}")
    if len(p1) < minimum:
        raise ValueError(f"at least {minimum} correspondences are needed, got {len(p1)}")
    return p1, p2


def skew(t) -> np.ndarray:
    """Skew-symmetric matrix of ``t`` (``t^``)."""
    return hat(np.asarray(t, dtype=float).ravel())


def _normalizing_transform(points: np.ndarray) -> np.ndarray:
    center = points.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(points - center, axis=1)))
    scale = np.sqrt(2.0) / mean_dist if mean_dist > 0 else 1.0
    return np.array(
        [
            [scale, 0.0, -scale * center[0]],
            [0.0, scale, -scale * center[1]],
            [0.0, 0.0, 1.0],
        ]
    )


def _homogeneous(points: np.ndarray) -> np.ndarray:
    return np.column_stack([points, np.ones(len(points))])


def _eight_point(p1: np.ndarray, p2: np.ndarray) -> np.ndarray:
    t1 = _normalizing_transform(p1)
    t2 = _normalizing_transform(p2)
    x1 = _homogeneous(p1) @ t1.T
    x2 = _homogeneous(p2) @ t2.T
    a = np.einsum("ni,nj->nij", x2, x1).reshape(len(x1), 9)
    _, _, vt = np.linalg.svd(a)
    f = vt[-1].reshape(3, 3)
    u, s, vt = np.linalg.svd(f)
    f = u @ np.diag([s[0], s[1], 0.0]) @ vt
    return t2.T @ f @ t1


def find_fundamental_8point(points1, points2) -> np.ndarray:
    """Fundamental matrix with ``x2^T F x1 = 0`` from the normalised eight-point method."""
    p1, p2 = _pair(points1, points2)
    f = _eight_point(p1, p2)
    if abs(f[2, 2]) > np.finfo(float).eps:
        f = f / f[2, 2]
    return f


def _normalize_pixels(points: np.ndarray, focal: float, principal_point) -> np.ndarray:
    cx, cy = principal_point
    return (points - np.array([cx, cy], dtype=float)) / float(focal)


def essential_from_points(points1, points2, focal, principal_point) -> np.ndarray:
    """Essential matrix for a camera with one focal length and a principal point."""
    p1, p2 = _pair(points1, points2)
    n1 = _normalize_pixels(p1, focal, principal_point)
    n2 = _normalize_pixels(p2, focal, principal_point)
    e = _eight_point(n1, n2)
    u, _, vt = np.linalg.svd(e)
    return u @ np.diag([1.0, 1.0, 0.0]) @ vt


def triangulate_points(T1, T2, pts1, pts2) -> np.ndarray:
    """Homogeneous points, one row each, seen at ``pts1`` by ``T1`` and ``pts2`` by ``T2``."""
    p1 = np.asarray(T1, dtype=float)
    p2 = np.asarray(T2, dtype=float)
    if p1.shape != (3, 4) or p2.shape != (3, 4):
        raise ValueError("projection matrices must have shape (3, 4)")
    x1, x2 = _pair(pts1, pts2, minimum=0)
    result = np.empty((len(x1), 4))
    for row, ((u1, v1), (u2, v2)) in enumerate(zip(x1, x2)):
        a = np.array(
            [
                u1 * p1[2] - p1[0],
                v1 * p1[2] - p1[1],
                u2 * p2[2] - p2[0],
                v2 * p2[2] - p2[1],
            ]
        )
        _, _, vt = np.linalg.svd(a)
        result[row] = vt[-1]
    return result


def _projection(R, t) -> np.ndarray:
    return np.hstack([np.asarray(R, dtype=float), np.asarray(t, dtype=float).reshape(3, 1)])


def recover_pose(essential, points1, points2, focal, principal_point) -> tuple[np.ndarray, np.ndarray]:
    """Rotation and unit translation from ``essential`` that put most points in front of both cameras."""
    e = np.asarray(essential, dtype=float)
    if e.shape != (3, 3):
        raise ValueError(f"essential matrix must have shape (3, 3), got {e.shape}")
    p1, p2 = _pair(points1, points2, minimum=1)
    n1 = _normalize_pixels(p1, focal, principal_point)
    n2 = _normalize_pixels(p2, focal, principal_point)

    u, _, vt = np.linalg.svd(e)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    r2 = u @ w.T @ vt
    t = u[:, 2]

    first = _projection(np.eye(3), np.zeros(3))
    best: tuple[int, np.ndarray, np.ndarray] | None = None
    for rotation, translation in ((r1, t), (r1, -t), (r2, t), (r2, -t)):
        homog = triangulate_points(first, _projection(rotation, translation), n1, n2)
        with np.errstate(divide="ignore", invalid="ignore"):
            points = homog[:, :3] / homog[:, 3:4]
        z1 = points[:, 2]
        z2 = (points @ rotation.T + translation)[:, 2]
        good = (z1 > 0) & (z1 < DEPTH_LIMIT) & (z2 > 0) & (z2 < DEPTH_LIMIT)
        count = int(np.count_nonzero(good))
        if best is None or count > best[0]:
            best = (count, rotation, translation)
    _, rotation, translation = best
    return rotation, translation.copy()


def triangulation(points1, points2, R, t, K) -> np.ndarray:
    """Points in the first camera's frame from matched pixels and the relative pose."""
    p1, p2 = _pair(points1, points2, minimum=0)
    cam1 = np.array([pixel2cam(p, K) for p in p1]).reshape(-1, 2)
    cam2 = np.array([pixel2cam(p, K) for p in p2]).reshape(-1, 2)
    first = _projection(np.eye(3), np.zeros(3))
    homog = triangulate_points(first, _projection(R, t), cam1, cam2)
    return homog[:, :3] / homog[:, 3:4]


def epipolar_constraint(p1, p2, R, t, K) -> float:
    """The value ``y2^T t^ R y1`` for one pixel pair; zero for a consistent pose."""
    c1 = pixel2cam(p1, K)
    c2 = pixel2cam(p2, K)
    y1 = np.array([c1[0], c1[1], 1.0])
    y2 = np.array([c2[0], c2[1], 1.0])
    return float(y2 @ skew(t) @ np.asarray(R, dtype=float) @ y1)


def get_color(depth: float) -> tuple[float, float, float]:
    """Drawing colour (blue, green, red) for a depth clamped to [10, 50]."""
    th_range = COLOR_HIGH_DEPTH - COLOR_LOW_DEPTH
    depth = min(max(float(depth), COLOR_LOW_DEPTH), COLOR_HIGH_DEPTH)
    return (255.0 * depth / th_range, 0.0, 255.0 * (1.0 - depth / th_range))