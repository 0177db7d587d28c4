"""Rotations (SO3) and rigid-body motions (SE3) with exponential coordinates."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-10


def _vec3(values, name: str = "vector") -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.shape != (3,):
        raise ValueError(f"{name} must have shape (3,), got {array.shape}")
    return array


def hat(v) -> np.ndarray:
    """Skew-symmetric matrix ``[v]x`` such that ``hat(v) @ w == v x w``."""
    x, y, z = _vec3(v)
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def _left_jacobian(phi: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(phi))
    k = hat(phi)
    k2 = k @ k
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * k + k2 / 6.0
    return (
        np.eye(3)
        + (1.0 - math.cos(theta)) / theta**2 * k
        + (theta - math.sin(theta)) / theta**3 * k2
    )


def _apply(matrix: np.ndarray, translation: np.ndarray, other) -> np.ndarray:
    array = np.asarray(other, dtype=float)
    if array.shape == (3,):
        return matrix @ array + translation
    if array.ndim == 2 and array.shape[1] == 3:
        return array @ matrix.T + translation
    raise ValueError(f"expected a point of shape (3,) or points of shape (N, 3), got {array.shape}")


@dataclass(frozen=True, eq=False)
class SO3:
    """A rotation in three dimensions, held as an orthonormal matrix."""

    matrix: np.ndarray = field(default_factory=lambda: np.eye(3))

    def __post_init__(self) -> None:
        m = np.array(self.matrix, dtype=float)
        if m.shape != (3, 3):
            raise ValueError(f"rotation matrix must have shape (3, 3), got {m.shape}")
        object.__setattr__(self, "matrix", m)

    @classmethod
    def exp(cls, omega) -> "SO3":
        """Rotation for the rotation vector ``omega`` (Rodrigues' formula)."""
        w = _vec3(omega, "omega")
        theta = float(np.linalg.norm(w))
        k = hat(w)
        if theta < _SMALL_ANGLE:
            return cls(np.eye(3) + k + 0.5 * (k @ k))
        a = math.sin(theta) / theta
        b = (1.0 - math.cos(theta)) / theta**2
        return cls(np.eye(3) + a * k + b * (k @ k))

    def log(self) -> np.ndarray:
        """Rotation vector of this rotation."""
        return Rotation.from_matrix(self.matrix).as_rotvec()

    def inverse(self) -> "SO3":
        return SO3(self.matrix.T)

    def __matmul__(self, other):
        if isinstance(other, SO3):
            return SO3(self.matrix @ other.matrix)
        if isinstance(other, SE3):
            return NotImplemented
        return _apply(self.matrix, np.zeros(3), other)


@dataclass(frozen=True, eq=False)
class SE3:
    """A rigid-body motion ``p -> R p + t``."""

    rotation: SO3 = field(default_factory=SO3)
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        if not isinstance(self.rotation, SO3):
            object.__setattr__(self, "rotation", SO3(self.rotation))
        object.__setattr__(self, "translation", _vec3(self.translation, "translation").copy())

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Motion for the twist ``xi``: translation part first, rotation part last."""
        twist = np.asarray(xi, dtype=float)
        if twist.shape != (6,):
            raise ValueError(f"twist must have shape (6,), got {twist.shape}")
        rho, phi = twist[:3], twist[3:]
        return cls(SO3.exp(phi), _left_jacobian(phi) @ rho)

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self.rotation.matrix

    def inverse(self) -> "SE3":
        inv = self.rotation.inverse()
        return SE3(inv, -(inv.matrix @ self.translation))

    def matrix(self) -> np.ndarray:
        """Homogeneous 4x4 matrix of this motion."""
        m = np.eye(4)
        m[:3, :3] = self.rotation.matrix
        m[:3, 3] = self.translation
        return m

    def __matmul__(self, other):
        if isinstance(other, SE3):
            return SE3(
                self.rotation @ other.rotation,
                self.rotation.matrix @ other.translation + self.translation,
            )
        if isinstance(other, SO3):
            return NotImplemented
        return _apply(self.rotation.matrix, self.translation, other)