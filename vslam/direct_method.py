"""Camera pose from photometric alignment of sparse pixels (the direct method)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import NamedTuple

import numpy as np

from .lie import SE3

logger = logging.getLogger(__name__)

HALF_PATCH_SIZE = 1
ITERATIONS = 10
CONVERGENCE_NORM = 1e-3
PYRAMID_LEVELS = 4
PYRAMID_SCALE = 0.5


@dataclass(frozen=True)
class Camera:
    """Pinhole intrinsics of a stereo camera, with its baseline in metres."""

    fx: float = 718.856
    fy: float = 718.856
    cx: float = 607.1928
    cy: float = 185.2157
    baseline: float = 0.573

    def scaled(self, scale: float) -> "Camera":
        """Intrinsics for the image resized by ``scale``."""
        return replace(
            self,
            fx=self.fx * scale,
            fy=self.fy * scale,
            cx=self.cx * scale,
            cy=self.cy * scale,
        )


class NormalEquations(NamedTuple):
    """Gauss-Newton system ``H dx = b`` and the mean photometric cost."""

    hessian: np.ndarray
    bias: np.ndarray
    cost: float


class DirectEstimate(NamedTuple):
    """Estimated pose, the projected reference pixels and the last cost."""

    pose: SE3
    projection: np.ndarray
    cost: float


def _gray(image, name: str) -> np.ndarray:
    array = np.asarray(image, dtype=float)
    if array.ndim != 2:
        raise ValueError(f"{name} must be a single-channel image, got shape {array.shape}")
    return array


def _bilinear(img: np.ndarray, x, y):
    rows, cols = img.shape
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    x = np.where(x < 0, 0.0, x)
    y = np.where(y < 0, 0.0, y)
    x = np.where(x >= cols, cols - 1.0, x)
    y = np.where(y >= rows, rows - 1.0, y)
    x0 = np.floor(x).astype(int)
    y0 = np.floor(y).astype(int)
    xx = x - x0
    yy = y - y0
    x1 = np.minimum(x0 + 1, cols - 1)
    y1 = np.minimum(y0 + 1, rows - 1)
    return (
        (1 - xx) * (1 - yy) * img[y0, x0]
        + xx * (1 - yy) * img[y0, x1]
        + (1 - xx) * yy * img[y1, x0]
        + xx * yy * img[y1, x1]
    )


def get_pixel_value(img, x, y):
    """Bilinearly interpolated intensity at ``(x, y)``, clamped to the image."""
    value = _bilinear(_gray(img, "img"), x, y)
    return float(value) if np.ndim(value) == 0 else value


def _resize(img: np.ndarray, width: int, height: int) -> np.ndarray:
    rows, cols = img.shape
    source = img.astype(float)
    xs = np.clip((np.arange(width) + 0.5) * (cols / width) - 0.5, 0.0, cols - 1.0)
    ys = np.clip((np.arange(height) + 0.5) * (rows / height) - 0.5, 0.0, rows - 1.0)
    grid_x, grid_y = np.meshgrid(xs, ys)
    out = _bilinear(source, grid_x, grid_y)
    if np.issubdtype(img.dtype, np.integer):
        info = np.iinfo(img.dtype)
        return np.clip(np.rint(out), info.min, info.max).astype(img.dtype)
    return out.astype(img.dtype)


def build_pyramid(image, levels: int = PYRAMID_LEVELS, scale: float = PYRAMID_SCALE) -> list[np.ndarray]:
    """Image pyramid, finest level first, each level ``scale`` times the previous one."""
    if levels < 1:
        raise ValueError("a pyramid needs at least one level")
    first = np.asarray(image)
    if first.ndim != 2:
        raise ValueError(f"expected a single-channel image, got shape {first.shape}")
    pyramid = [first]
    for _ in range(1, levels):
        previous = pyramid[-1]
        rows, cols = previous.shape
        width, height = int(cols * scale), int(rows * scale)
        if width < 1 or height < 1:
            raise ValueError("image too small for the requested pyramid")
        pyramid.append(_resize(previous, width, height))
    return pyramid


@dataclass(eq=False)
class JacobianAccumulator:
    """Builds the photometric Gauss-Newton system for reference pixels with known depth."""

    img1: np.ndarray
    img2: np.ndarray
    px_ref: np.ndarray
    depth_ref: np.ndarray
    camera: Camera = field(default_factory=Camera)
    projection: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        self.img1 = _gray(self.img1, "img1")
        self.img2 = _gray(self.img2, "img2")
        self.px_ref = np.asarray(self.px_ref, dtype=float).reshape(-1, 2)
        self.depth_ref = np.asarray(self.depth_ref, dtype=float).ravel()
        if len(self.px_ref) != len(self.depth_ref):
            raise ValueError(
                f"{len(self.px_ref)} pixels but {len(self.depth_ref)} depths were given"
            )
        self.projection = np.zeros((len(self.px_ref), 2))

    def accumulate(self, T21: SE3) -> NormalEquations:
        """Hessian, bias and mean cost of all well-projected patches under ``T21``."""
        cam = self.camera
        px = self.px_ref
        hessian = np.zeros((6, 6))
        bias = np.zeros(6)
        if len(px) == 0:
            return NormalEquations(hessian, bias, 0.0)

        rays = np.column_stack(
            [(px[:, 0] - cam.cx) / cam.fx, (px[:, 1] - cam.cy) / cam.fy, np.ones(len(px))]
        )
        point_cur = T21 @ (self.depth_ref[:, None] * rays)
        X, Y, Z = point_cur.T
        rows, cols = self.img2.shape
        h = HALF_PATCH_SIZE
        with np.errstate(divide="ignore", invalid="ignore"):
            u = cam.fx * X / Z + cam.cx
            v = cam.fy * Y / Z + cam.cy
            valid = (Z > 0) & (u >= h) & (u <= cols - h) & (v >= h) & (v <= rows - h)
        count = int(np.count_nonzero(valid))
        if count == 0:
            return NormalEquations(hessian, bias, 0.0)

        self.projection[valid] = np.column_stack([u[valid], v[valid]])
        X, Y, Z, u, v = X[valid], Y[valid], Z[valid], u[valid], v[valid]
        z_inv = 1.0 / Z
        z2_inv = z_inv * z_inv
        fx, fy = cam.fx, cam.fy

        j_pixel = np.zeros((count, 2, 6))
        j_pixel[:, 0, 0] = fx * z_inv
        j_pixel[:, 0, 2] = -fx * X * z2_inv
        j_pixel[:, 0, 3] = -fx * X * Y * z2_inv
        j_pixel[:, 0, 4] = fx + fx * X * X * z2_inv
        j_pixel[:, 0, 5] = -fx * Y * z_inv
        j_pixel[:, 1, 1] = fy * z_inv
        j_pixel[:, 1, 2] = -fy * Y * z2_inv
        j_pixel[:, 1, 3] = -fy - fy * Y * Y * z2_inv
        j_pixel[:, 1, 4] = fy * X * Y * z2_inv
        j_pixel[:, 1, 5] = fy * X * z_inv

        steps = np.arange(-h, h + 1, dtype=float)
        off_x, off_y = (a.ravel() for a in np.meshgrid(steps, steps, indexing="ij"))
        ref_x = px[valid, 0][:, None] + off_x
        ref_y = px[valid, 1][:, None] + off_y
        cur_x = u[:, None] + off_x
        cur_y = v[:, None] + off_y

        img1, img2 = self.img1, self.img2
        error = _bilinear(img1, ref_x, ref_y) - _bilinear(img2, cur_x, cur_y)
        grad_x = 0.5 * (_bilinear(img2, cur_x + 1, cur_y) - _bilinear(img2, cur_x - 1, cur_y))
        grad_y = 0.5 * (_bilinear(img2, cur_x, cur_y + 1) - _bilinear(img2, cur_x, cur_y - 1))

        jac = -(
            grad_x[..., None] * j_pixel[:, None, 0, :] + grad_y[..., None] * j_pixel[:, None, 1, :]
        )
        hessian = np.einsum("mki,mkj->ij", jac, jac)
        bias = -np.einsum("mk,mki->i", error, jac)
        cost = float(np.sum(error**2)) / count
        return NormalEquations(hessian, bias, cost)


def _solve(hessian: np.ndarray, bias: np.ndarray) -> np.ndarray:
    if not (np.all(np.isfinite(hessian)) and np.all(np.isfinite(bias))):
        return np.full(6, np.nan)
    try:
        return np.linalg.solve(hessian, bias)
    except np.linalg.LinAlgError:
        return np.linalg.lstsq(hessian, bias, rcond=None)[0]


def direct_pose_estimation_single_layer(
    img1, img2, px_ref, depth_ref, T21: SE3 | None = None, camera: Camera | None = None
) -> DirectEstimate:
    """Refine ``T21`` by Gauss-Newton on the photometric error at one image scale."""
    pose = SE3() if T21 is None else T21
    accumulator = JacobianAccumulator(
        img1, img2, px_ref, depth_ref, camera if camera is not None else Camera()
    )
    cost = 0.0
    last_cost = 0.0
    for iteration in range(ITERATIONS):
        system = accumulator.accumulate(pose)
        update = _solve(system.hessian, system.bias)
        cost = system.cost
        if np.isnan(update[0]):
            # A flat black or white patch leaves H singular.
            logger.warning("update is nan")
            break
        pose = SE3.exp(update) @ pose
        if iteration > 0 and cost > last_cost:
            logger.debug("cost increased: %g, %g", cost, last_cost)
            break
        if np.linalg.norm(update) < CONVERGENCE_NORM:
            break
        last_cost = cost
        logger.debug("iteration: %d, cost: %g", iteration, cost)
    return DirectEstimate(pose, accumulator.projection.copy(), cost)


def direct_pose_estimation_multi_layer(
    img1, img2, px_ref, depth_ref, T21: SE3 | None = None, camera: Camera | None = None
) -> DirectEstimate:
    """Refine ``T21`` coarse to fine over a four-level half-scale pyramid."""
    camera = camera if camera is not None else Camera()
    pose = SE3() if T21 is None else T21
    pixels = np.asarray(px_ref, dtype=float).reshape(-1, 2)
    pyr1 = build_pyramid(img1, PYRAMID_LEVELS, PYRAMID_SCALE)
    pyr2 = build_pyramid(img2, PYRAMID_LEVELS, PYRAMID_SCALE)
    scales = [PYRAMID_SCALE**level for level in range(PYRAMID_LEVELS)]

    result = DirectEstimate(pose, np.zeros_like(pixels), 0.0)
    for level in reversed(range(PYRAMID_LEVELS)):
        scale = scales[level]
        result = direct_pose_estimation_single_layer(
            pyr1[level], pyr2[level], scale * pixels, depth_ref, pose, camera.scaled(scale)
        )
        pose = result.pose
    return result