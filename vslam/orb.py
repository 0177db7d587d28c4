"""Oriented FAST keypoints, rotated BRIEF descriptors and brute-force Hamming matching."""

from __future__ import annotations

import argparse
import random
import sys
import time
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw

HALF_PATCH_SIZE = 8
HALF_BOUNDARY = 16
DESCRIPTOR_WORDS = 8
MAX_MATCH_DISTANCE = 40
FAST_THRESHOLD = 40

# Bresenham circle of radius 3 used by FAST, as (dx, dy) in circular order.
_FAST_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_FAST_ARC = 9

# 256 test pairs (px, py, qx, qy) of the rotated BRIEF descriptor.
_ORB_PATTERN = (
    (8, -3, 9, 5), (4, 2, 7, -12), (-11, 9, -8, 2), (7, -12, 12, -13),
    (2, -13, 2, 12), (1, -7, 1, 6), (-2, -10, -2, -4), (-13, -13, -11, -8),
    (-13, -3, -12, -9), (10, 4, 11, 9), (-13, -8, -8, -9), (-11, 7, -9, 12),
    (7, 7, 12, 6), (-4, -5, -3, 0), (-13, 2, -12, -3), (-9, 0, -7, 5),
    (12, -6, 12, -1), (-3, 6, -2, 12), (-6, -13, -4, -8), (11, -13, 12, -8),
    (4, 7, 5, 1), (5, -3, 10, -3), (3, -7, 6, 12), (-8, -7, -6, -2),
    (-2, 11, -1, -10), (-13, 12, -8, 10), (-7, 3, -5, -3), (-4, 2, -3, 7),
    (-10, -12, -6, 11), (5, -12, 6, -7), (5, -6, 7, -1), (1, 0, 4, -5),
    (9, 11, 11, -13), (4, 7, 4, 12), (2, -1, 4, 4), (-4, -12, -2, 7),
    (-8, -5, -7, -10), (4, 11, 9, 12), (0, -8, 1, -13), (-13, -2, -8, 2),
    (-3, -2, -2, 3), (-6, 9, -4, -9), (8, 12, 10, 7), (0, 9, 1, 3),
    (7, -5, 11, -10), (-13, -6, -11, 0), (10, 7, 12, 1), (-6, -3, -6, 12),
    (10, -9, 12, -4), (-13, 8, -8, -12), (-13, 0, -8, -4), (3, 3, 7, 8),
    (5, 7, 10, -7), (-1, 7, 1, -12), (3, -10, 5, 6), (2, -4, 3, -10),
    (-13, 0, -13, 5), (-13, -7, -12, 12), (-13, 3, -11, 8), (-7, 12, -4, 7),
    (6, -10, 12, 8), (-9, -1, -7, -6), (-2, -5, 0, 12), (-12, 5, -7, 5),
    (3, -10, 8, -13), (-7, -7, -4, 5), (-3, -2, -1, -7), (2, 9, 5, -11),
    (-11, -13, -5, -13), (-1, 6, 0, -1), (5, -3, 5, 2), (-4, -13, -4, 12),
    (-9, -6, -9, 6), (-12, -10, -8, -4), (10, 2, 12, -3), (7, 12, 12, 12),
    (-7, -13, -6, 5), (-4, 9, -3, 4), (7, -1, 12, 2), (-7, 6, -5, 1),
    (-13, 11, -12, 5), (-3, 7, -2, -6), (7, -8, 12, -7), (-13, -7, -11, -12),
    (1, -3, 12, 12), (2, -6, 3, 0), (-4, 3, -2, -13), (-1, -13, 1, 9),
    (7, 1, 8, -6), (1, -1, 3, 12), (9, 1, 12, 6), (-1, -9, -1, 3),
    (-13, -13, -10, 5), (7, 7, 10, 12), (12, -5, 12, 9), (6, 3, 7, 11),
    (5, -13, 6, 10), (2, -12, 2, 3), (3, 8, 4, -6), (2, 6, 12, -13),
    (9, -12, 10, 3), (-8, 4, -7, 9), (-11, 12, -4, -6), (1, 12, 2, -8),
    (6, -9, 7, -4), (2, 3, 3, -2), (6, 3, 11, 0), (3, -3, 8, -8),
    (7, 8, 9, 3), (-11, -5, -6, -4), (-10, 11, -5, 10), (-5, -8, -3, 12),
    (-10, 5, -9, 0), (8, -1, 12, -6), (4, -6, 6, -11), (-10, 12, -8, 7),
    (4, -2, 6, 7), (-2, 0, -2, 12), (-5, -8, -5, 2), (7, -6, 10, 12),
    (-9, -13, -8, -8), (-5, -13, -5, -2), (8, -8, 9, -13), (-9, -11, -9, 0),
    (1, -8, 1, -2), (7, -4, 9, 1), (-2, 1, -1, -4), (11, -6, 12, -11),
    (-12, -9, -6, 4), (3, 7, 7, 12), (5, 5, 10, 8), (0, -4, 2, 8),
    (-9, 12, -5, -13), (0, 7, 2, 12), (-1, 2, 1, 7), (5, 11, 7, -9),
    (3, 5, 6, -8), (-13, -4, -8, 9), (-5, 9, -3, -3), (-4, -7, -3, -12),
    (6, 5, 8, 0), (-7, 6, -6, 12), (-13, 6, -5, -2), (1, -10, 3, 10),
    (4, 1, 8, -4), (-2, -2, 2, -13), (2, -12, 12, 12), (-2, -13, 0, -6),
    (4, 1, 9, 3), (-6, -10, -3, -5), (-3, -13, -1, 1), (7, 5, 12, -11),
    (4, -2, 5, -7), (-13, 9, -9, -5), (7, 1, 8, 6), (7, -8, 7, 6),
    (-7, -4, -7, 1), (-8, 11, -7, -8), (-13, 6, -12, -8), (2, 4, 3, 9),
    (10, -5, 12, 3), (-6, -5, -6, 7), (8, -3, 9, -8), (2, -12, 2, 8),
    (-11, -2, -10, 3), (-12, -13, -7, -9), (-11, 0, -10, -5), (5, -3, 11, 8),
    (-2, -13, -1, 12), (-1, -8, 0, 9), (-13, -11, -12, -5), (-10, -2, -10, 11),
    (-3, 9, -2, -13), (2, -3, 3, 2), (-9, -13, -4, 0), (-4, 6, -3, -10),
    (-4, 12, -2, -7), (-6, -11, -4, 9), (6, -3, 6, 11), (-13, 11, -5, 5),
    (11, 11, 12, 6), (7, -5, 12, -2), (-1, 12, 0, 7), (-4, -8, -3, -2),
    (-7, 1, -6, 7), (-13, -12, -8, -13), (-7, -2, -6, -8), (-8, 5, -6, -9),
    (-5, -1, -4, 5), (-13, 7, -8, 10), (1, 5, 5, -13), (1, 0, 10, -13),
    (9, 12, 10, -1), (5, -8, 10, -9), (-1, 11, 1, -13), (-9, -3, -6, 2),
    (-1, -10, 1, 12), (-13, 1, -8, -10), (8, -11, 10, -6), (2, -13, 3, -6),
    (7, -13, 12, -9), (-10, -10, -5, -7), (-10, -8, -8, -13), (4, -6, 8, 5),
    (3, 12, 8, -13), (-4, 2, -3, -3), (5, -13, 10, -12), (4, -13, 5, -1),
    (-9, 9, -4, 3), (0, 3, 3, -9), (-12, 1, -6, 1), (3, 2, 4, -8),
    (-10, -10, -10, 9), (8, -13, 12, 12), (-8, -12, -6, -5), (2, 2, 3, 7),
    (10, 6, 11, -8), (6, 8, 8, -12), (-7, 10, -6, 5), (-3, -9, -3, 9),
    (-1, -13, -1, 5), (-3, -7, -3, 4), (-8, -2, -8, 3), (4, 2, 12, 12),
    (2, -5, 3, 11), (6, -9, 11, -13), (3, -1, 7, 12), (11, -1, 12, 4),
    (-3, 0, -3, 6), (4, -11, 4, 12), (2, -4, 2, 1), (-10, -6, -8, 1),
    (-13, 7, -11, 1), (-13, 12, -11, -13), (6, 0, 11, -13), (0, -1, 1, 4),
    (-13, 3, -9, -2), (-9, 8, -6, -3), (-13, -6, -8, -2), (5, -9, 8, 10),
    (2, 7, 3, -9), (-1, -6, -1, -1), (9, 5, 11, -2), (11, -3, 12, -8),
    (3, 0, 3, 5), (-1, 4, 0, 10), (3, -6, 4, 5), (-13, 0, -10, 5),
    (5, 8, 12, 11), (8, 9, 9, -6), (7, -4, 8, -12), (-10, 4, -10, 9),
    (7, 3, 12, 4), (9, -7, 10, -2), (7, 0, 12, -2), (-1, -6, 0, -11),
)

_PATTERN = np.array(_ORB_PATTERN, dtype=float)
_BIT_WEIGHTS = np.left_shift(np.uint64(1), np.arange(32, dtype=np.uint64))

Descriptor = tuple


@dataclass
class KeyPoint:
    """An image location with the detector's response."""

    x: float
    y: float
    response: float = 0.0

    @property
    def pt(self) -> tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class DMatch:
    """A correspondence between a query and a train descriptor."""

    query_idx: int
    train_idx: int
    distance: int


def _as_gray(image) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError(f"expected a single-channel image, got shape {array.shape}")
    return array


def _fast_scores(img: np.ndarray, threshold: float) -> np.ndarray:
    rows, cols = img.shape
    scores = np.zeros((rows, cols), dtype=np.int32)
    if rows < 7 or cols < 7:
        return scores
    data = img.astype(np.int32)
    center = data[3:rows - 3, 3:cols - 3]
    ring = np.stack(
        [data[3 + dy:rows - 3 + dy, 3 + dx:cols - 3 + dx] - center for dx, dy in _FAST_CIRCLE]
    )
    ring = np.concatenate([ring, ring[: _FAST_ARC - 1]])
    n = len(_FAST_CIRCLE)
    bright = np.max([ring[s:s + _FAST_ARC].min(axis=0) for s in range(n)], axis=0)
    dark = np.max([-ring[s:s + _FAST_ARC].max(axis=0) for s in range(n)], axis=0)
    best = np.maximum(bright, dark)
    scores[3:rows - 3, 3:cols - 3] = np.where(best > threshold, best, 0)
    return scores


def detect_fast(image, threshold: float = FAST_THRESHOLD) -> list[KeyPoint]:
    """FAST-9 corners with 3x3 non-maximum suppression, in row-major order."""
    img = _as_gray(image)
    scores = _fast_scores(img, threshold)
    rows, cols = scores.shape
    padded = np.pad(scores, 1)
    neighbour_max = np.zeros_like(scores)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            if dx == 0 and dy == 0:
                continue
            shifted = padded[1 + dy:1 + dy + rows, 1 + dx:1 + dx + cols]
            np.maximum(neighbour_max, shifted, out=neighbour_max)
    keep = (scores > 0) & (scores > neighbour_max)
    ys, xs = np.nonzero(keep)
    return [KeyPoint(float(x), float(y), float(scores[y, x])) for y, x in zip(ys, xs)]


def compute_orb(image, keypoints) -> list[Descriptor]:
    """Rotated BRIEF descriptors, eight 32-bit words each.

    Keypoints closer than 16 pixels to the border get an empty descriptor.
    """
    img = _as_gray(image)
    rows, cols = img.shape
    offsets = np.arange(-HALF_PATCH_SIZE, HALF_PATCH_SIZE, dtype=float)
    px, py, qx, qy = _PATTERN.T
    descriptors: list[Descriptor] = []
    for kp in keypoints:
        if (
            kp.x < HALF_BOUNDARY
            or kp.y < HALF_BOUNDARY
            or kp.x >= cols - HALF_BOUNDARY
            or kp.y >= rows - HALF_BOUNDARY
        ):
            descriptors.append(())
            continue

        cx, cy = int(kp.x), int(kp.y)
        patch = img[cy - HALF_PATCH_SIZE:cy + HALF_PATCH_SIZE,
                    cx - HALF_PATCH_SIZE:cx + HALF_PATCH_SIZE].astype(float)
        m10 = float((patch * offsets[None, :]).sum())
        m01 = float((patch * offsets[:, None]).sum())
        m_sqrt = np.hypot(m01, m10) + 1e-18
        sin_theta = m01 / m_sqrt
        cos_theta = m10 / m_sqrt

        def sample(ax, ay):
            xs = (cos_theta * ax - sin_theta * ay + kp.x).astype(int)
            ys = (sin_theta * ax + cos_theta * ay + kp.y).astype(int)
            # The rotated pattern may reach slightly past the 16-pixel margin.
            return img[np.clip(ys, 0, rows - 1), np.clip(xs, 0, cols - 1)]

        bits = (sample(px, py) < sample(qx, qy)).astype(np.uint64)
        words = (bits.reshape(DESCRIPTOR_WORDS, 32) * _BIT_WEIGHTS).sum(axis=1)
        descriptors.append(tuple(int(w) for w in words))
    return descriptors


def _hamming(a: Descriptor, b: Descriptor) -> int:
    return sum((x ^ y).bit_count() for x, y in zip(a, b))


def bf_match(desc1, desc2) -> list[DMatch]:
    """Nearest neighbour by Hamming distance, kept only below 40 bits."""
    matches = []
    for i1, d1 in enumerate(desc1):
        if not d1:
            continue
        best = DMatch(i1, 0, 256)
        for i2, d2 in enumerate(desc2):
            if not d2:
                continue
            distance = _hamming(d1, d2)
            if distance < MAX_MATCH_DISTANCE and distance < best.distance:
                best = DMatch(i1, i2, distance)
        if best.distance < MAX_MATCH_DISTANCE:
            matches.append(best)
    return matches


def _draw_matches(img1, kps1, img2, kps2, matches) -> Image.Image:
    h1, w1 = img1.shape
    h2, w2 = img2.shape
    canvas = Image.new("RGB", (w1 + w2, max(h1, h2)))
    canvas.paste(Image.fromarray(np.asarray(img1, dtype=np.uint8)).convert("RGB"), (0, 0))
    canvas.paste(Image.fromarray(np.asarray(img2, dtype=np.uint8)).convert("RGB"), (w1, 0))
    draw = ImageDraw.Draw(canvas)
    colors = random.Random(0)

    def circle(x, y, color):
        draw.ellipse((x - 3, y - 3, x + 3, y + 3), outline=color)

    for m in matches:
        color = tuple(colors.randrange(256) for _ in range(3))
        p1 = kps1[m.query_idx]
        p2 = kps2[m.train_idx]
        circle(p1.x, p1.y, color)
        circle(p2.x + w1, p2.y, color)
        draw.line((p1.x, p1.y, p2.x + w1, p2.y), fill=color)
    return canvas


def main(argv=None) -> int:
    """Detect, describe and match ORB features between two images."""
    parser = argparse.ArgumentParser(description="Match hand-built ORB features between two images.")
    parser.add_argument("first", nargs="?", default="./1.png")
    parser.add_argument("second", nargs="?", default="./2.png")
    parser.add_argument("-o", "--output", default="matches.png")
    args = parser.parse_args(argv)

    try:
        first = np.array(Image.open(args.first).convert("L"))
        second = np.array(Image.open(args.second).convert("L"))
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    t1 = time.perf_counter()
    keypoints1 = detect_fast(first, FAST_THRESHOLD)
    descriptor1 = compute_orb(first, keypoints1)
    print(f"bad/total: {sum(1 for d in descriptor1 if not d)}/{len(keypoints1)}")
    keypoints2 = detect_fast(second, FAST_THRESHOLD)
    descriptor2 = compute_orb(second, keypoints2)
    print(f"bad/total: {sum(1 for d in descriptor2 if not d)}/{len(keypoints2)}")
    t2 = time.perf_counter()
    print(f"extract ORB cost = {t2 - t1} seconds. ")

    t1 = time.perf_counter()
    matches = bf_match(descriptor1, descriptor2)
    t2 = time.perf_counter()
    print(f"match ORB cost = {t2 - t1} seconds. ")
    print(f"matches: {len(matches)}")

    _draw_matches(first, keypoints1, second, keypoints2, matches).save(Path(args.output))
    print("done.")
    return 0