"""Bundle adjustment of BAL problems by Levenberg-Marquardt with Schur elimination of points."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import NamedTuple

import numpy as np
from scipy.linalg import block_diag
from scipy.sparse import coo_matrix

from .bal import BALProblem
from .lie import SO3

logger = logging.getLogger(__name__)

CAMERA_DIM = 9
POINT_DIM = 3
HUBER_DELTA = 1.0
DEFAULT_ITERATIONS = 40
_NUMERIC_STEP = 1e-6
_LM_TAU = 1e-5
_LM_MAX_TRIALS = 10

_ROTATION_STEPS = [
    (SO3.exp(_NUMERIC_STEP * axis).matrix, SO3.exp(-_NUMERIC_STEP * axis).matrix)
    for axis in np.eye(3)
]


def _project_batch(rotations, translations, focal, k1, k2, points) -> np.ndarray:
    pc = np.einsum("nij,nj->ni", rotations, points) + translations
    pc = -pc / pc[:, 2:3]
    r2 = np.sum(pc * pc, axis=1)
    distortion = 1.0 + r2 * (k1 + k2 * r2)
    scale = focal * distortion
    return np.column_stack([scale * pc[:, 0], scale * pc[:, 1]])


@dataclass(frozen=True, eq=False)
class PoseAndIntrinsics:
    """Camera rotation, translation, focal length and two radial distortion terms."""

    rotation: SO3 = field(default_factory=SO3)
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    focal: float = 0.0
    k1: float = 0.0
    k2: float = 0.0

    def __post_init__(self) -> None:
        t = np.array(self.translation, dtype=float)
        if t.shape != (3,):
            raise ValueError(f"translation must have shape (3,), got {t.shape}")
        object.__setattr__(self, "translation", t)

    @classmethod
    def from_array(cls, data) -> "PoseAndIntrinsics":
        """Read ``[rotation vector(3), translation(3), f, k1, k2]``."""
        values = np.asarray(data, dtype=float)
        if values.shape != (CAMERA_DIM,):
            raise ValueError(f"camera must have {CAMERA_DIM} parameters, got shape {values.shape}")
        return cls(
            SO3.exp(values[:3]),
            values[3:6],
            float(values[6]),
            float(values[7]),
            float(values[8]),
        )

    def to_array(self) -> np.ndarray:
        """The nine parameters in the order that ``from_array`` reads."""
        return np.concatenate(
            [self.rotation.log(), self.translation, [self.focal, self.k1, self.k2]]
        )

    def project(self, point) -> np.ndarray:
        """Image position of ``point`` under this camera."""
        p = np.asarray(point, dtype=float)
        if p.shape != (3,):
            raise ValueError(f"point must have shape (3,), got {p.shape}")
        return _project_batch(
            self.rotation.matrix[None],
            self.translation[None],
            self.focal,
            self.k1,
            self.k2,
            p[None],
        )[0]

    def oplus(self, update) -> "PoseAndIntrinsics":
        """Camera after a nine-dimensional update; rotation is left-multiplied."""
        u = np.asarray(update, dtype=float)
        if u.shape != (CAMERA_DIM,):
            raise ValueError(f"update must have {CAMERA_DIM} entries, got shape {u.shape}")
        return PoseAndIntrinsics(
            SO3.exp(u[:3]) @ self.rotation,
            self.translation + u[3:6],
            self.focal + u[6],
            self.k1 + u[7],
            self.k2 + u[8],
        )


class BAResult(NamedTuple):
    """Robust cost before and after optimisation and the iterations run."""

    initial_cost: float
    final_cost: float
    iterations: int


@dataclass
class _State:
    rotations: np.ndarray
    translations: np.ndarray
    intrinsics: np.ndarray
    points: np.ndarray

    def project(self, ci: np.ndarray, pi: np.ndarray) -> np.ndarray:
        return self._project(
            self.rotations[ci], self.translations[ci], self.intrinsics[ci], self.points[pi]
        )

    @staticmethod
    def _project(rotations, translations, intrinsics, points) -> np.ndarray:
        return _project_batch(
            rotations, translations, intrinsics[:, 0], intrinsics[:, 1], intrinsics[:, 2], points
        )

    def jacobians(self, ci, pi) -> tuple[np.ndarray, np.ndarray]:
        rot = self.rotations[ci]
        trans = self.translations[ci]
        intr = self.intrinsics[ci]
        pts = self.points[pi]
        count = len(ci)
        jc = np.empty((count, 2, CAMERA_DIM))
        jp = np.empty((count, 2, POINT_DIM))
        scale = 1.0 / (2.0 * _NUMERIC_STEP)
        step = _NUMERIC_STEP

        for k, (plus, minus) in enumerate(_ROTATION_STEPS):
            jc[:, :, k] = scale * (
                self._project(plus @ rot, trans, intr, pts)
                - self._project(minus @ rot, trans, intr, pts)
            )
        for k in range(3):
            delta = np.zeros(3)
            delta[k] = step
            jc[:, :, 3 + k] = scale * (
                self._project(rot, trans + delta, intr, pts)
                - self._project(rot, trans - delta, intr, pts)
            )
            jc[:, :, 6 + k] = scale * (
                self._project(rot, trans, intr + delta, pts)
                - self._project(rot, trans, intr - delta, pts)
            )
            jp[:, :, k] = scale * (
                self._project(rot, trans, intr, pts + delta)
                - self._project(rot, trans, intr, pts - delta)
            )
        return jc, jp

    def updated(self, dc: np.ndarray, dp: np.ndarray) -> "_State":
        steps = np.array([SO3.exp(w).matrix for w in dc[:, :3]]).reshape(-1, 3, 3)
        return _State(
            steps @ self.rotations,
            self.translations + dc[:, 3:6],
            self.intrinsics + dc[:, 6:9],
            self.points + dp,
        )


def _robust(errors: np.ndarray) -> tuple[float, np.ndarray]:
    chi2 = np.sum(errors * errors, axis=1)
    root = np.sqrt(chi2)
    inlier = chi2 <= HUBER_DELTA**2
    rho = np.where(inlier, chi2, 2.0 * root * HUBER_DELTA - HUBER_DELTA**2)
    with np.errstate(divide="ignore"):
        weight = np.where(inlier, 1.0, HUBER_DELTA / np.where(inlier, 1.0, root))
    return float(np.sum(rho)), weight


def _block_sparse(blocks: np.ndarray, rows_of: np.ndarray, cols_of: np.ndarray, shape) -> coo_matrix:
    r_dim, c_dim = blocks.shape[1:]
    rows = r_dim * rows_of[:, None, None] + np.arange(r_dim)[None, :, None]
    cols = c_dim * cols_of[:, None, None] + np.arange(c_dim)[None, None, :]
    rows, cols = np.broadcast_arrays(rows, cols)
    return coo_matrix((blocks.ravel(), (rows.ravel(), cols.ravel())), shape=shape)


class _System(NamedTuple):
    hcc: np.ndarray
    hpp: np.ndarray
    hcp: object
    bc: np.ndarray
    bp: np.ndarray


def _build_system(state: _State, ci, pi, observations, num_cameras, num_points):
    errors = state.project(ci, pi) - observations
    cost, weight = _robust(errors)
    jc, jp = state.jacobians(ci, pi)

    hcc = np.zeros((num_cameras, CAMERA_DIM, CAMERA_DIM))
    hpp = np.zeros((num_points, POINT_DIM, POINT_DIM))
    bc = np.zeros((num_cameras, CAMERA_DIM))
    bp = np.zeros((num_points, POINT_DIM))
    np.add.at(hcc, ci, np.einsum("kai,k,kaj->kij", jc, weight, jc))
    np.add.at(hpp, pi, np.einsum("kai,k,kaj->kij", jp, weight, jp))
    np.add.at(bc, ci, -np.einsum("kai,k,ka->ki", jc, weight, errors))
    np.add.at(bp, pi, -np.einsum("kai,k,ka->ki", jp, weight, errors))
    w = np.einsum("kai,k,kaj->kij", jc, weight, jp)
    hcp = _block_sparse(
        w, ci, pi, (CAMERA_DIM * num_cameras, POINT_DIM * num_points)
    ).tocsr()
    return cost, _System(hcc, hpp, hcp, bc.ravel(), bp.ravel())


def _solve_damped(system: _System, lam: float) -> tuple[np.ndarray, np.ndarray]:
    num_points = len(system.hpp)
    hpp_inv_blocks = np.linalg.inv(system.hpp + lam * np.eye(POINT_DIM))
    index = np.arange(num_points)
    hpp_inv = _block_sparse(
        hpp_inv_blocks, index, index, (POINT_DIM * num_points, POINT_DIM * num_points)
    ).tocsr()
    hcc = block_diag(*(system.hcc + lam * np.eye(CAMERA_DIM)))
    hcp = system.hcp
    schur = hcc - (hcp @ hpp_inv @ hcp.T).toarray()
    rhs = system.bc - hcp @ (hpp_inv @ system.bp)
    dc = np.linalg.solve(schur, rhs)
    dp = hpp_inv @ (system.bp - hcp.T @ dc)
    return dc, np.asarray(dp).ravel()


def solve_ba_lm(problem: BALProblem, iterations: int = DEFAULT_ITERATIONS) -> BAResult:
    """Optimise all cameras and points of ``problem`` in place under a Huber kernel."""
    if problem.use_quaternions:
        raise ValueError("bundle adjustment needs angle-axis cameras, not quaternions")
    if iterations < 1:
        raise ValueError("iterations must be at least 1")
    if problem.num_observations == 0:
        raise ValueError("the problem has no observations")

    num_cameras = problem.num_cameras
    num_points = problem.num_points
    ci = np.asarray(problem.camera_index, dtype=int)
    pi = np.asarray(problem.point_index, dtype=int)
    observations = np.asarray(problem.observations, dtype=float).reshape(-1, 2)

    cameras = [PoseAndIntrinsics.from_array(c) for c in np.asarray(problem.cameras).reshape(-1, CAMERA_DIM)]
    state = _State(
        np.array([c.rotation.matrix for c in cameras]).reshape(-1, 3, 3),
        np.array([c.translation for c in cameras]).reshape(-1, 3),
        np.array([[c.focal, c.k1, c.k2] for c in cameras]).reshape(-1, 3),
        np.array(problem.points, dtype=float).reshape(-1, POINT_DIM),
    )

    cost, system = _build_system(state, ci, pi, observations, num_cameras, num_points)
    initial_cost = cost
    diagonals = np.concatenate(
        [np.diagonal(system.hcc, axis1=1, axis2=2).ravel(),
         np.diagonal(system.hpp, axis1=1, axis2=2).ravel()]
    )
    lam = _LM_TAU * float(np.max(diagonals)) if diagonals.size else _LM_TAU
    if not lam > 0.0:
        lam = _LM_TAU
    nu = 2.0

    done = 0
    for iteration in range(iterations):
        if cost == 0.0:
            break
        done = iteration + 1
        accepted = False
        for _ in range(_LM_MAX_TRIALS):
            try:
                dc, dp = _solve_damped(system, lam)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            candidate = state.updated(dc.reshape(num_cameras, CAMERA_DIM), dp.reshape(num_points, POINT_DIM))
            new_cost, _ = _robust(candidate.project(ci, pi) - observations)
            dx = np.concatenate([dc, dp])
            b = np.concatenate([system.bc, system.bp])
            if np.isfinite(new_cost) and new_cost < cost:
                rho = (cost - new_cost) / (float(dx @ (lam * dx + b)) + 1e-3)
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                state = candidate
                cost, system = _build_system(state, ci, pi, observations, num_cameras, num_points)
                accepted = True
                break
            lam *= nu
            nu *= 2.0
        logger.debug("iteration %d chi2=%.12g lambda=%g", iteration, cost, lam)
        if not accepted:
            break

    camera_values = [
        PoseAndIntrinsics(SO3(r), t, f, k1, k2).to_array()
        for r, t, (f, k1, k2) in zip(state.rotations, state.translations, state.intrinsics)
    ]
    problem.parameters[:] = np.concatenate(
        [np.ravel(camera_values), state.points.ravel()]
    )
    return BAResult(initial_cost, cost, done)


def main(argv=None) -> int:
    """Load a BAL file, condition and perturb it, optimise it and save PLY clouds."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("usage: bundle_adjustment_g2o bal_data.txt")
        return 1

    try:
        problem = BALProblem.from_file(args[0])
    except (OSError, ValueError) as exc:
        print(f"Error: unable to load {args[0]}: {exc}", file=sys.stderr)
        return 1

    problem.normalize()
    problem.perturb(0.1, 0.5, 0.5)
    problem.write_to_ply_file("initial.ply")
    result = solve_ba_lm(problem, DEFAULT_ITERATIONS)
    print(
        f"iterations: {result.iterations}, initial chi2: {result.initial_cost:.6g}, "
        f"final chi2: {result.final_cost:.6g}"
    )
    problem.write_to_ply_file("final.ply")
    return 0