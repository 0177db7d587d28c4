"""Sparse Lucas-Kanade optical flow by Gauss-Newton, on one level or over a pyramid."""

from __future__ import annotations

import logging

import numpy as np

from .direct_method import build_pyramid

logger = logging.getLogger(__name__)

HALF_PATCH_SIZE = 4
ITERATIONS = 10
CONVERGENCE_NORM = 1e-2
PYRAMID_LEVELS = 4
PYRAMID_SCALE = 0.5


def _gray(image, name: str) -> np.ndarray:
    array = np.asarray(image, dtype=float)
    if array.ndim != 2:
        raise ValueError(f"{name} must be a single-channel image, got shape {array.shape}")
    if array.shape[0] < 2 or array.shape[1] < 2:
        raise ValueError(f"{name} must be at least 2x2 pixels, got shape {array.shape}")
    return array


def _as_points(keypoints, name: str) -> np.ndarray:
    items = list(keypoints)
    if items and hasattr(items[0], "pt"):
        return np.array([kp.pt for kp in items], dtype=float).reshape(-1, 2)
    array = np.asarray(items, dtype=float)
    if array.size == 0:
        return np.zeros((0, 2))
    if array.ndim != 2 or array.shape[1] != 2:
        raise ValueError(f"{name} must hold (x, y) pairs, got shape {array.shape}")
    return array


def _sample(img: np.ndarray, x, y):
    rows, cols = img.shape
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    x = np.where(x < 0, 0.0, x)
    y = np.where(y < 0, 0.0, y)
    x = np.where(x >= cols - 1, cols - 2.0, x)
    y = np.where(y >= rows - 1, rows - 2.0, y)
    x0 = np.floor(x).astype(int)
    y0 = np.floor(y).astype(int)
    xx = x - x0
    yy = y - y0
    x1 = np.minimum(cols - 1, x0 + 1)
    y1 = np.minimum(rows - 1, y0 + 1)
    return (
        (1 - xx) * (1 - yy) * img[y0, x0]
        + xx * (1 - yy) * img[y0, x1]
        + (1 - xx) * yy * img[y1, x0]
        + xx * yy * img[y1, x1]
    )


def get_pixel_value(img, x, y):
    """Bilinearly interpolated intensity, with coordinates clamped inside the image."""
    value = _sample(_gray(img, "img"), x, y)
    return float(value) if np.ndim(value) == 0 else value


def _gradient(img: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
    return -0.5 * np.column_stack(
        [
            _sample(img, x + 1, y) - _sample(img, x - 1, y),
            _sample(img, x, y + 1) - _sample(img, x, y - 1),
        ]
    )


def _solve(h: np.ndarray, b: np.ndarray) -> np.ndarray:
    if not (np.all(np.isfinite(h)) and np.all(np.isfinite(b))):
        return np.full(2, np.nan)
    try:
        return np.linalg.solve(h, b)
    except np.linalg.LinAlgError:
        return np.full(2, np.nan)


_STEPS = np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE, dtype=float)
_OFF_X, _OFF_Y = (a.ravel() for a in np.meshgrid(_STEPS, _STEPS, indexing="ij"))


def _track(img1, img2, x, y, dx, dy, inverse) -> tuple[float, float, bool]:
    px = x + _OFF_X
    py = y + _OFF_Y
    reference = _sample(img1, px, py)
    jac = None
    hessian = np.zeros((2, 2))
    if inverse:
        # The template gradient does not depend on the current shift.
        jac = _gradient(img1, px, py)
        hessian = jac.T @ jac

    last_cost = 0.0
    succeeded = True
    for iteration in range(ITERATIONS):
        qx = px + dx
        qy = py + dy
        error = reference - _sample(img2, qx, qy)
        if not inverse:
            jac = _gradient(img2, qx, qy)
            hessian = jac.T @ jac
        bias = -(jac.T @ error)
        cost = float(error @ error)

        update = _solve(hessian, bias)
        if np.isnan(update[0]):
            # A black or white patch leaves H singular.
            logger.debug("update is nan")
            succeeded = False
            break
        if iteration > 0 and cost > last_cost:
            break

        dx += update[0]
        dy += update[1]
        last_cost = cost
        succeeded = True
        if np.linalg.norm(update) < CONVERGENCE_NORM:
            break
    return dx, dy, succeeded


def optical_flow_single_level(
    img1, img2, kp1, kp2=None, inverse: bool = False, has_initial: bool = False
) -> tuple[np.ndarray, np.ndarray]:
    """Track ``kp1`` from ``img1`` into ``img2``.

    With ``has_initial`` the positions in ``kp2`` are the starting guess.
    Returns the tracked positions, one row each, and a flag per point.
    """
    a = _gray(img1, "img1")
    b = _gray(img2, "img2")
    p1 = _as_points(kp1, "kp1")
    if has_initial:
        if kp2 is None:
            raise ValueError("an initial guess was requested but kp2 was not given")
        p2 = _as_points(kp2, "kp2")
        if p2.shape != p1.shape:
            raise ValueError(f"kp1 has {len(p1)} points but kp2 has {len(p2)}")
    else:
        p2 = p1

    tracked = np.empty_like(p1)
    success = np.zeros(len(p1), dtype=bool)
    for i, ((x, y), (gx, gy)) in enumerate(zip(p1, p2)):
        dx, dy, ok = _track(a, b, x, y, gx - x, gy - y, inverse)
        tracked[i] = (x + dx, y + dy)
        success[i] = ok
    return tracked, success


def optical_flow_multi_level(
    img1, img2, kp1, inverse: bool = False
) -> tuple[np.ndarray, np.ndarray]:
    """Coarse-to-fine tracking over a four-level half-scale pyramid."""
    pyr1 = build_pyramid(np.asarray(img1), PYRAMID_LEVELS, PYRAMID_SCALE)
    pyr2 = build_pyramid(np.asarray(img2), PYRAMID_LEVELS, PYRAMID_SCALE)
    top_scale = PYRAMID_SCALE ** (PYRAMID_LEVELS - 1)

    kp1_pyr = _as_points(kp1, "kp1") * top_scale
    kp2_pyr = kp1_pyr.copy()
    success = np.zeros(len(kp1_pyr), dtype=bool)
    for level in reversed(range(PYRAMID_LEVELS)):
        kp2_pyr, success = optical_flow_single_level(
            pyr1[level], pyr2[level], kp1_pyr, kp2_pyr, inverse, True
        )
        logger.debug("tracked pyramid level %d", level)
        if level > 0:
            kp1_pyr = kp1_pyr / PYRAMID_SCALE
            kp2_pyr = kp2_pyr / PYRAMID_SCALE
    return kp2_pyr, success