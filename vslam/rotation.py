"""Angle-axis and quaternion rotation helpers for three-dimensional points."""

from __future__ import annotations

import math
import sys

import numpy as np

_EPS = sys.float_info.epsilon


def _vector(values, size: int) -> np.ndarray:
    array = np.asarray(values, dtype=float)
    if array.shape != (size,):
        raise ValueError(f"expected a vector of length {size}, got shape {array.shape}")
    return array


def dot_product(x, y) -> float:
    """Dot product of two 3-vectors."""
    a = _vector(x, 3)
    b = _vector(y, 3)
    return float(a[0] * b[0] + a[1] * b[1] + a[2] * b[2])


def cross_product(x, y) -> np.ndarray:
    """Cross product of two 3-vectors."""
    a = _vector(x, 3)
    b = _vector(y, 3)
    return np.array(
        [
            a[1] * b[2] - a[2] * b[1],
            a[2] * b[0] - a[0] * b[2],
            a[0] * b[1] - a[1] * b[0],
        ]
    )


def angle_axis_to_quaternion(angle_axis) -> np.ndarray:
    """Convert an angle-axis vector to a quaternion ``(w, x, y, z)``."""
    a0, a1, a2 = _vector(angle_axis, 3)
    theta_squared = a0 * a0 + a1 * a1 + a2 * a2
    if theta_squared > _EPS:
        theta = math.sqrt(theta_squared)
        half_theta = theta * 0.5
        k = math.sin(half_theta) / theta
        w = math.cos(half_theta)
    else:
        k = 0.5
        w = 1.0
    return np.array([w, a0 * k, a1 * k, a2 * k])


def quaternion_to_angle_axis(quaternion) -> np.ndarray:
    """Convert a quaternion ``(w, x, y, z)`` to an angle-axis vector."""
    q0, q1, q2, q3 = _vector(quaternion, 4)
    sin_squared_theta = q1 * q1 + q2 * q2 + q3 * q3
    if sin_squared_theta > _EPS:
        sin_theta = math.sqrt(sin_squared_theta)
        cos_theta = q0
        if cos_theta < 0.0:
            two_theta = 2.0 * math.atan2(-sin_theta, -cos_theta)
        else:
            two_theta = 2.0 * math.atan2(sin_theta, cos_theta)
        k = two_theta / sin_theta
    else:
        k = 2.0
    return np.array([q1 * k, q2 * k, q3 * k])


def angle_axis_rotate_point(angle_axis, pt) -> np.ndarray:
    """Rotate ``pt`` by the rotation that ``angle_axis`` describes."""
    aa = _vector(angle_axis, 3)
    p = _vector(pt, 3)
    theta2 = dot_product(aa, aa)
    if theta2 > _EPS:
        theta = math.sqrt(theta2)
        cos_theta = math.cos(theta)
        sin_theta = math.sin(theta)
        w = aa / theta
        w_cross_pt = cross_product(w, p)
        tmp = dot_product(w, p) * (1.0 - cos_theta)
        return p * cos_theta + w_cross_pt * sin_theta + w * tmp
    # First-order approximation near the identity: R * p = p + w x p.
    return p + cross_product(aa, p)