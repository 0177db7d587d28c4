"""Brute-force Hamming matching of ORB descriptors and selection of good matches."""

from __future__ import annotations

import argparse
import random
import sys
import time
from collections.abc import Sequence
from pathlib import Path

import numpy as np
from PIL import Image, ImageDraw

from .orb import FAST_THRESHOLD, DMatch, KeyPoint, compute_orb, detect_fast

GOOD_MATCH_FLOOR = 30.0


def _hamming(a: Sequence[int], b: Sequence[int]) -> int:
    if len(a) != len(b):
        raise ValueError(f"descriptors differ in length: {len(a)} and {len(b)}")
    return sum((int(x) ^ int(y)).bit_count() for x, y in zip(a, b))


def brute_force_match(desc1, desc2) -> list[DMatch]:
    """For every query descriptor, the train descriptor nearest in Hamming distance.

    Empty descriptors are skipped; among equally near candidates the first wins.
    """
    matches = []
    for i1, d1 in enumerate(desc1):
        if len(d1) == 0:
            continue
        best: DMatch | None = None
        for i2, d2 in enumerate(desc2):
            if len(d2) == 0:
                continue
            distance = _hamming(d1, d2)
            if best is None or distance < best.distance:
                best = DMatch(i1, i2, distance)
        if best is not None:
            matches.append(best)
    return matches


def distance_range(matches) -> tuple[float, float]:
    """Smallest and largest distance among ``matches``."""
    distances = [m.distance for m in matches]
    if not distances:
        raise ValueError("no matches to measure")
    return float(min(distances)), float(max(distances))


def select_good_matches(matches) -> list[DMatch]:
    """Matches no farther than twice the smallest distance, with a floor of 30."""
    matches = list(matches)
    if not matches:
        return []
    min_dist, _ = distance_range(matches)
    limit = max(2 * min_dist, GOOD_MATCH_FLOOR)
    return [m for m in matches if m.distance <= limit]


def _to_rgb(image: np.ndarray) -> Image.Image:
    return Image.fromarray(np.asarray(image, dtype=np.uint8)).convert("RGB")


def _random_color(colors: random.Random) -> tuple[int, int, int]:
    return tuple(colors.randrange(256) for _ in range(3))


def _circle(draw: ImageDraw.ImageDraw, x: float, y: float, color) -> None:
    draw.ellipse((x - 3, y - 3, x + 3, y + 3), outline=color)


def _draw_keypoints(image: np.ndarray, keypoints: list[KeyPoint]) -> Image.Image:
    canvas = _to_rgb(image)
    draw = ImageDraw.Draw(canvas)
    colors = random.Random(0)
    for kp in keypoints:
        _circle(draw, kp.x, kp.y, _random_color(colors))
    return canvas


def _draw_matches(img1, kps1, img2, kps2, matches) -> Image.Image:
    h1, w1 = img1.shape
    h2, w2 = img2.shape
    canvas = Image.new("RGB", (w1 + w2, max(h1, h2)))
    canvas.paste(_to_rgb(img1), (0, 0))
    canvas.paste(_to_rgb(img2), (w1, 0))
    draw = ImageDraw.Draw(canvas)
    colors = random.Random(0)
    for m in matches:
        color = _random_color(colors)
        p1 = kps1[m.query_idx]
        p2 = kps2[m.train_idx]
        _circle(draw, p1.x, p1.y, color)
        _circle(draw, p2.x + w1, p2.y, color)
        draw.line((p1.x, p1.y, p2.x + w1, p2.y), fill=color)
    return canvas


def main(argv=None) -> int:
    """Extract and match ORB features between two images, then keep the good matches."""
    parser = argparse.ArgumentParser(description="Match ORB features between two images.")
    parser.add_argument("img1")
    parser.add_argument("img2")
    parser.add_argument("--features", default="orb_features.png")
    parser.add_argument("--all-matches", default="all_matches.png")
    parser.add_argument("--good-matches", default="good_matches.png")
    args = parser.parse_args(argv)

    try:
        img1 = np.array(Image.open(args.img1).convert("L"))
        img2 = np.array(Image.open(args.img2).convert("L"))
    except OSError as exc:
        print(f"cannot load images: {exc}", file=sys.stderr)
        return 1

    t1 = time.perf_counter()
    keypoints1 = detect_fast(img1, FAST_THRESHOLD)
    keypoints2 = detect_fast(img2, FAST_THRESHOLD)
    descriptors1 = compute_orb(img1, keypoints1)
    descriptors2 = compute_orb(img2, keypoints2)
    t2 = time.perf_counter()
    print(f"extract ORB cost = {t2 - t1} seconds. ")

    _draw_keypoints(img1, keypoints1).save(Path(args.features))

    t1 = time.perf_counter()
    matches = brute_force_match(descriptors1, descriptors2)
    t2 = time.perf_counter()
    print(f"match ORB cost = {t2 - t1} seconds. ")

    if not matches:
        print("no matches found", file=sys.stderr)
        return 1

    min_dist, max_dist = distance_range(matches)
    print("-- Max dist : %f " % max_dist)
    print("-- Min dist : %f " % min_dist)

    good_matches = select_good_matches(matches)
    _draw_matches(img1, keypoints1, img2, keypoints2, matches).save(Path(args.all_matches))
    _draw_matches(img1, keypoints1, img2, keypoints2, good_matches).save(Path(args.good_matches))
    return 0