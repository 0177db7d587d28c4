# vslam

Building blocks for visual SLAM and visual odometry, written with NumPy,
SciPy and Pillow.

| Module | What it holds |
| --- | --- |
| `vslam.rotation` | Angle-axis and quaternion conversions, `angle_axis_rotate_point` |
| `vslam.gaussian` | `rand_double` and `rand_normal` (polar Box–Muller) |
| `vslam.lie` | `hat`, the `SO3` and `SE3` groups with `exp`, `log`, `inverse` and `@` |
| `vslam.orb` | FAST-9 corners (`detect_fast`), rotated BRIEF descriptors (`compute_orb`), `bf_match`, `KeyPoint`, `DMatch` |
| `vslam.matching` | `brute_force_match`, `distance_range`, `select_good_matches` |
| `vslam.epipolar` | Eight-point fundamental matrix, essential matrix, `recover_pose`, linear triangulation, `epipolar_constraint`, `get_color` |
| `vslam.pose` | `pixel2cam`, SVD alignment of 3D point sets, Levenberg–Marquardt 3D–3D refinement, Gauss–Newton PnP |
| `vslam.optical_flow` | Single- and multi-level Lucas–Kanade tracking |
| `vslam.direct_method` | `Camera`, `build_pyramid`, `JacobianAccumulator`, single- and multi-layer photometric pose estimation |
| `vslam.bal` | `BALProblem`: loading, saving, PLY export, `normalize`, `perturb` |
| `vslam.reprojection` | Radial-distortion projection, `SnavelyReprojectionError`, `solve_ba` (SciPy `least_squares` with a Huber loss) |
| `vslam.bundle_adjustment` | `PoseAndIntrinsics` and `solve_ba_lm` (Levenberg–Marquardt with Schur elimination of points) |

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Command-line tools

### `vslam-orb`

Detects FAST corners (threshold 40) in two grayscale images, computes rotated
BRIEF descriptors, and keeps nearest-neighbour matches below a Hamming distance
of 40. It prints the number of keypoints too close to the border to describe,
the timings and the number of matches, and saves a side-by-side picture of the
matches.

```
vslam-orb first.png second.png -o matches.png
```

Both image paths are optional and default to `./1.png` and `./2.png`; the
output defaults to `matches.png`.

### `vslam-match`

Uses the same detector and descriptor, matches every descriptor to its nearest
neighbour, prints the largest and smallest distances, and keeps the good
matches: those no farther than twice the smallest distance, with a floor of 30.

```
vslam-match first.png second.png
```

It writes three pictures, whose names can be changed with `--features`
(default `orb_features.png`), `--all-matches` (default `all_matches.png`) and
`--good-matches` (default `good_matches.png`). It exits with status 1 when an
image cannot be loaded or when no match is found.

### `vslam-ba-ceres` and `vslam-ba-g2o`

Both load a BAL problem file, normalise it, perturb it (rotation 0.1,
translation 0.5, points 0.5; the noise is not seeded), and write the point
cloud to `initial.ply` in the current directory. They then solve it and write
`final.ply`.

```
vslam-ba-ceres problem.txt
vslam-ba-g2o problem.txt
```

`vslam-ba-ceres` calls `vslam.reprojection.solve_ba` and prints a summary of
costs and evaluations. `vslam-ba-g2o` calls
`vslam.bundle_adjustment.solve_ba_lm` for up to 40 iterations and prints the
iteration count and the robust cost before and after.

## Library use

Rotations in angle-axis form:

```python
import math
from vslam.rotation import angle_axis_rotate_point, angle_axis_to_quaternion

p = angle_axis_rotate_point([0.0, 0.0, math.pi / 2], [1.0, 0.0, 0.0])
# p is close to [0, 1, 0]
q = angle_axis_to_quaternion([0.0, 0.0, math.pi / 2])  # (w, x, y, z)
```

Rigid motions on SE(3); a twist holds the translation part first and the
rotation part last:

```python
import numpy as np
from vslam.lie import SE3

T = SE3.exp(np.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.2]))
identity = T @ T.inverse()
print(identity.matrix())
```

Aligning two 3D point sets, then refining:

```python
from vslam.pose import bundle_adjustment_3d3d, pose_estimation_3d3d

R, t = pose_estimation_3d3d(pts1, pts2)   # pts1 ≈ R @ pts2 + t
T = bundle_adjustment_3d3d(pts1, pts2, 10)  # an SE3 with pts1 ≈ T @ pts2
```

Tracking points between two grayscale images:

```python
from vslam.optical_flow import optical_flow_multi_level

tracked, success = optical_flow_multi_level(img1, img2, points, True)
```

Estimating the motion of a camera from pixels with known depth:

```python
from vslam.direct_method import Camera, direct_pose_estimation_multi_layer

estimate = direct_pose_estimation_multi_layer(img1, img2, pixels, depths, None, Camera())
print(estimate.pose.matrix(), estimate.cost)
```

Working with a BAL dataset:

```python
from vslam.bal import BALProblem
from vslam.reprojection import solve_ba

problem = BALProblem.from_file("problem.txt", False)
problem.normalize()
summary = solve_ba(problem, 50)   # at most 50 function evaluations
print(summary.report())
problem.write_to_ply_file("final.ply")
```

Camera blocks hold nine values: an angle-axis rotation, a translation, the
focal length and two radial distortion coefficients. With quaternions enabled
the rotation takes four values and the block holds ten; `solve_ba` and
`solve_ba_lm` accept only angle-axis problems.

`BALProblem.write_to_file` writes the camera count twice on its header line,
so a saved file cannot be read back with `from_file` unchanged.

The pose, optical-flow and direct-method functions report their progress
through the standard `logging` module at debug level.

## What the package does not do

- It opens no windows: results of the command-line tools are saved as image
  or PLY files.
- Only the ORB and bundle-adjustment tasks have commands. Two-view geometry,
  triangulation, PnP, 3D–3D alignment, optical flow and the direct method are
  available as library functions only.
- There is no image-pyramid ORB detector, no RANSAC, and no homography
  estimation; `find_fundamental_8point` and `essential_from_points` use all
  the correspondences they are given.