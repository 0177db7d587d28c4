import math

import numpy as np
import pytest

from vslam.bal import BALProblem
from vslam.reprojection import (
    SnavelyReprojectionError,
    cam_projection_with_distortion,
    main,
    reprojection_residuals,
    solve_ba,
)
from vslam.rotation import angle_axis_rotate_point

CAMERAS = np.array(
    [
        [0.01, -0.02, 0.0, 0.1, 0.0, 0.0, 500.0, 0.0, 0.0],
        [-0.01, 0.015, 0.02, -0.1, 0.05, 0.0, 500.0, 0.0, 0.0],
        [0.0, 0.01, -0.01, 0.0, -0.05, 0.1, 500.0, 0.0, 0.0],
    ]
)


def _points(count=8):
    rng = np.random.default_rng(0)
    return np.column_stack(
        [rng.uniform(-1, 1, count), rng.uniform(-1, 1, count), rng.uniform(-7, -5, count)]
    )


def _problem(points=None):
    true_points = _points()
    points = true_points if points is None else points
    camera_index, point_index, observations = [], [], []
    for c, camera in enumerate(CAMERAS):
        for p, point in enumerate(true_points):
            camera_index.append(c)
            point_index.append(p)
            observations.append(cam_projection_with_distortion(camera, point))
    parameters = np.concatenate([CAMERAS.ravel(), np.asarray(points).ravel()])
    return BALProblem(
        num_cameras=len(CAMERAS),
        num_points=len(true_points),
        camera_index=np.array(camera_index),
        point_index=np.array(point_index),
        observations=np.array(observations),
        parameters=parameters,
    )


def test_identity_camera_projects_through_focal_length():
    camera = [0, 0, 0, 0, 0, 0, 2.0, 0, 0]
    assert np.allclose(cam_projection_with_distortion(camera, [1.0, 2.0, 4.0]), [-0.5, -1.0])


def test_translation_equals_moving_the_point():
    t = np.array([0.1, -0.2, 0.3])
    point = np.array([0.5, 0.4, -3.0])
    moved = cam_projection_with_distortion([0, 0, 0, *t, 3.0, 0.1, 0.0], point)
    direct = cam_projection_with_distortion([0, 0, 0, 0, 0, 0, 3.0, 0.1, 0.0], point + t)
    assert np.allclose(moved, direct)


def test_rotation_equals_rotating_the_point():
    aa = np.array([0.0, 0.0, math.pi / 2])
    point = np.array([0.5, 0.4, -3.0])
    rotated = cam_projection_with_distortion([*aa, 0, 0, 0, 3.0, 0, 0], point)
    direct = cam_projection_with_distortion(
        [0, 0, 0, 0, 0, 0, 3.0, 0, 0], angle_axis_rotate_point(aa, point)
    )
    assert np.allclose(rotated, direct)


def test_distortion_is_radial_and_outward_for_positive_coefficients():
    point = np.array([0.5, 0.4, -2.0])
    plain = cam_projection_with_distortion([0, 0, 0, 0, 0, 0, 10.0, 0, 0], point)
    bent = cam_projection_with_distortion([0, 0, 0, 0, 0, 0, 10.0, 0.2, 0.05], point)
    assert plain[0] * bent[1] - plain[1] * bent[0] == pytest.approx(0.0, abs=1e-9)
    assert np.linalg.norm(bent) > np.linalg.norm(plain)


def test_camera_with_wrong_size_is_rejected():
    with pytest.raises(ValueError):
        cam_projection_with_distortion([0.0] * 8, [0.0, 0.0, -1.0])


def test_error_functor_subtracts_observation():
    camera = CAMERAS[1]
    point = _points()[0]
    prediction = cam_projection_with_distortion(camera, point)
    assert np.allclose(SnavelyReprojectionError(*prediction)(camera, point), 0.0)
    shifted = SnavelyReprojectionError(prediction[0] + 1.0, prediction[1] - 2.0)
    assert np.allclose(shifted(camera, point), [-1.0, 2.0])


def test_residuals_vanish_for_exact_observations():
    problem = _problem()
    residuals = reprojection_residuals(problem)
    assert residuals.shape == (problem.num_observations, 2)
    assert np.allclose(residuals, 0.0, atol=1e-9)


def test_residuals_agree_with_error_functor():
    rng = np.random.default_rng(1)
    problem = _problem(_points() + rng.normal(0, 0.05, (8, 3)))
    residuals = reprojection_residuals(problem)
    for i, (u, v) in enumerate(problem.observations):
        expected = SnavelyReprojectionError(u, v)(
            problem.camera_for_observation(i), problem.point_for_observation(i)
        )
        assert np.allclose(residuals[i], expected)


def test_quaternion_problem_is_rejected():
    problem = BALProblem(
        num_cameras=1,
        num_points=1,
        camera_index=np.array([0]),
        point_index=np.array([0]),
        observations=np.array([[0.0, 0.0]]),
        parameters=np.zeros(13),
        use_quaternions=True,
    )
    with pytest.raises(ValueError):
        reprojection_residuals(problem)
    with pytest.raises(ValueError):
        solve_ba(problem)


def test_solve_ba_reduces_reprojection_error():
    rng = np.random.default_rng(2)
    problem = _problem(_points() + rng.normal(0, 0.05, (8, 3)))
    summary = solve_ba(problem, 100)
    assert summary.num_observations == 24
    assert summary.final_cost < summary.initial_cost * 1e-2
    assert np.abs(reprojection_residuals(problem)).max() < 0.5


def test_main_without_file_prints_usage():
    assert main([]) == 1


def _write_bal(path, problem):
    lines = [f"{problem.num_cameras} {problem.num_points} {problem.num_observations}"]
    for c, p, (u, v) in zip(problem.camera_index, problem.point_index, problem.observations):
        lines.append(f"{c} {p} {u!r} {v!r}")
    lines.extend(repr(float(value)) for value in problem.parameters)
    path.write_text("\n".join(lines) + "\n")


def test_main_writes_point_clouds(tmp_path, monkeypatch):
    problem = _problem()
    data = tmp_path / "problem.txt"
    _write_bal(data, problem)
    monkeypatch.chdir(tmp_path)
    assert main([str(data)]) == 0
    for name in ("initial.ply", "final.ply"):
        lines = (tmp_path / name).read_text().splitlines()
        assert lines[0] == "ply"
        assert lines[2] == f"element vertex {problem.num_cameras + problem.num_points}"
        assert len(lines) == 10 + problem.num_cameras + problem.num_points