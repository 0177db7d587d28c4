"""Uniform and normally distributed random numbers."""

from __future__ import annotations

import math
import random

_default_rng = random.Random()


def rand_double(rng: random.Random | None = None) -> float:
    """Uniform random number in the unit interval."""
    source = rng if rng is not None else _default_rng
    return source.random()


def rand_normal(rng: random.Random | None = None) -> float:
    """Standard normal sample drawn with the polar Box-Muller method."""
    while True:
        x1 = 2.0 * rand_double(rng) - 1.0
        x2 = 2.0 * rand_double(rng) - 1.0
        w = x1 * x1 + x2 * x2
        if 0.0 < w < 1.0:
            break
    w = math.sqrt((-2.0 * math.log(w)) / w)
    return x1 * w