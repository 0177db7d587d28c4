import numpy as np
import pytest

from vslam.bal import BALProblem
from vslam.bundle_adjustment import PoseAndIntrinsics, main, solve_ba_lm
from vslam.lie import SO3
from vslam.reprojection import cam_projection_with_distortion

CAMERAS = np.array(
    [
        [0.01, -0.02, 0.005, 0.0, 0.0, -10.0, 500.0, 0.0, 0.0],
        [-0.015, 0.03, 0.0, 0.5, 0.1, -10.0, 500.0, 0.0, 0.0],
        [0.02, 0.01, -0.01, -0.5, -0.2, -10.5, 500.0, 0.0, 0.0],
    ]
)


def _points():
    return np.random.default_rng(3).uniform(-2.0, 2.0, size=(20, 3))


def _observations(points):
    rows = []
    for c, cam in enumerate(CAMERAS):
        pose = PoseAndIntrinsics.from_array(cam)
        for p, point in enumerate(points):
            x, y = pose.project(point)
            rows.append((c, p, x, y))
    return rows


def _write_bal(path, cameras, points, observations):
    lines = [f"{len(cameras)} {len(points)} {len(observations)}"]
    lines += [f"{c} {p} {x:.17g} {y:.17g}" for c, p, x, y in observations]
    lines += [f"{v:.17g}" for v in np.concatenate([cameras.ravel(), points.ravel()])]
    path.write_text("\n".join(lines) + "\n")


def test_array_round_trip():
    pose = PoseAndIntrinsics.from_array(CAMERAS[1])
    np.testing.assert_allclose(pose.to_array(), CAMERAS[1], atol=1e-12)


def test_from_array_rejects_wrong_length():
    with pytest.raises(ValueError):
        PoseAndIntrinsics.from_array([0.0] * 8)


def test_project_without_distortion_matches_pinhole_model():
    camera = CAMERAS[2]
    point = np.array([0.7, -1.1, 1.5])
    pose = PoseAndIntrinsics.from_array(camera)
    np.testing.assert_allclose(
        pose.project(point), cam_projection_with_distortion(camera, point), rtol=1e-12
    )


def test_zero_update_changes_nothing():
    pose = PoseAndIntrinsics.from_array(CAMERAS[0])
    np.testing.assert_allclose(pose.oplus(np.zeros(9)).to_array(), CAMERAS[0], atol=1e-12)


def test_oplus_left_multiplies_rotation_and_adds_the_rest():
    pose = PoseAndIntrinsics.from_array(CAMERAS[1])
    update = np.array([0.1, -0.05, 0.02, 1.0, 2.0, 3.0, 4.0, 0.5, 0.25])
    moved = pose.oplus(update)
    expected_rotation = (SO3.exp(update[:3]) @ pose.rotation).matrix
    np.testing.assert_allclose(moved.rotation.matrix, expected_rotation, atol=1e-12)
    np.testing.assert_allclose(moved.translation, pose.translation + update[3:6])
    assert moved.focal == pytest.approx(pose.focal + update[6])
    assert moved.k1 == pytest.approx(update[7])
    assert moved.k2 == pytest.approx(update[8])


def test_exact_problem_is_left_unchanged(tmp_path):
    points = _points()
    path = tmp_path / "exact.txt"
    _write_bal(path, CAMERAS, points, _observations(points))
    problem = BALProblem.from_file(path)
    before = np.array(problem.parameters, dtype=float)
    result = solve_ba_lm(problem, 10)
    assert result.initial_cost == pytest.approx(0.0, abs=1e-12)
    np.testing.assert_allclose(problem.parameters, before, atol=1e-9)


def test_perturbed_points_are_refined(tmp_path):
    points = _points()
    observations = _observations(points)
    noisy = points + np.random.default_rng(7).normal(0.0, 0.05, size=points.shape)
    path = tmp_path / "noisy.txt"
    _write_bal(path, CAMERAS, noisy, observations)
    problem = BALProblem.from_file(path)
    before = np.array(problem.parameters, dtype=float)
    result = solve_ba_lm(problem, 40)
    assert result.initial_cost > 0.0
    assert result.final_cost < 0.1 * result.initial_cost
    assert 1 <= result.iterations <= 40
    assert not np.allclose(problem.parameters, before)


def test_quaternion_problem_is_rejected(tmp_path):
    points = _points()
    path = tmp_path / "quat.txt"
    _write_bal(path, CAMERAS, points, _observations(points))
    problem = BALProblem.from_file(path, use_quaternions=True)
    with pytest.raises(ValueError):
        solve_ba_lm(problem, 5)


def test_iterations_must_be_positive(tmp_path):
    points = _points()
    path = tmp_path / "bal.txt"
    _write_bal(path, CAMERAS, points, _observations(points))
    problem = BALProblem.from_file(path)
    with pytest.raises(ValueError):
        solve_ba_lm(problem, 0)


def test_main_without_file_prints_usage():
    assert main([]) == 1


def test_main_writes_point_clouds(tmp_path, monkeypatch):
    points = _points()
    path = tmp_path / "bal.txt"
    _write_bal(path, CAMERAS, points, _observations(points))
    monkeypatch.chdir(tmp_path)
    assert main([str(path)]) == 0
    for name in ("initial.ply", "final.ply"):
        assert (tmp_path / name).read_text().splitlines()[0] == "ply"