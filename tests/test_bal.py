import random

import numpy as np
import pytest

from vslam.bal import BALProblem, median, perturb_point3
from vslam.rotation import quaternion_to_angle_axis

CAM0 = [0.01, -0.02, 0.003, -0.03, 0.1, 1.5, 400.0, -3e-7, 5e-13]
CAM1 = [-0.015, 0.01, -0.0015, 0.2, -0.05, 0.8, 402.0, -3.2e-7, 4e-13]
POINTS = [[1.0, 2.0, 10.0], [-1.5, 0.5, 12.0], [0.3, -0.8, 9.0]]

SAMPLE = "\n".join(
    [
        "2 3 4",
        "0 0 -385.99 387.12",
        "1 0 -38.44 492.12",
        "0 1 -667.89 123.11",
        "1 2 5.25 -7.5",
    ]
    + [repr(v) for v in CAM0 + CAM1]
    + [repr(v) for p in POINTS for v in p]
) + "\n"


@pytest.fixture
def sample_path(tmp_path):
    path = tmp_path / "problem.txt"
    path.write_text(SAMPLE)
    return path


def test_median_odd():
    assert median([3.0, 1.0, 2.0]) == 2.0


def test_median_even_takes_upper():
    assert median([4.0, 1.0, 3.0, 2.0]) == 3.0


def test_median_empty():
    with pytest.raises(ValueError):
        median([])


def test_perturb_point3_zero_sigma():
    np.testing.assert_allclose(perturb_point3(0.0, [1.0, 2.0, 3.0], random.Random(1)), [1, 2, 3])


def test_perturb_point3_changes_point():
    result = perturb_point3(0.5, [1.0, 2.0, 3.0], random.Random(1))
    assert not np.allclose(result, [1.0, 2.0, 3.0])


def test_from_file(sample_path):
    problem = BALProblem.from_file(sample_path)
    assert problem.num_cameras == 2
    assert problem.num_points == 3
    assert problem.num_observations == 4
    assert problem.num_parameters == 27
    assert problem.camera_index.tolist() == [0, 1, 0, 1]
    assert problem.point_index.tolist() == [0, 0, 1, 2]
    np.testing.assert_allclose(problem.observations[0], [-385.99, 387.12])
    np.testing.assert_allclose(problem.cameras[1], CAM1)
    np.testing.assert_allclose(problem.points[2], POINTS[2])


def test_observation_accessors(sample_path):
    problem = BALProblem.from_file(sample_path)
    np.testing.assert_allclose(problem.camera_for_observation(2), CAM0)
    np.testing.assert_allclose(problem.point_for_observation(3), POINTS[2])
    problem.point_for_observation(3)[0] = 7.0
    assert problem.points[2, 0] == 7.0


def test_from_file_quaternions(sample_path):
    problem = BALProblem.from_file(sample_path, use_quaternions=True)
    assert problem.camera_block_size == 10
    assert problem.num_parameters == 10 * 2 + 3 * 3
    np.testing.assert_allclose(problem.cameras[0, 4:], CAM0[3:])
    np.testing.assert_allclose(quaternion_to_angle_axis(problem.cameras[0, :4]), CAM0[:3])
    np.testing.assert_allclose(problem.points, POINTS)


def test_truncated_file(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("2 3 4\n0 0 1.0\n")
    with pytest.raises(ValueError):
        BALProblem.from_file(path)


def test_bad_token(tmp_path):
    path = tmp_path / "bad.txt"
    path.write_text("two 3 4\n")
    with pytest.raises(ValueError):
        BALProblem.from_file(path)


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        BALProblem.from_file(tmp_path / "absent.txt")


def test_write_to_file(sample_path, tmp_path):
    problem = BALProblem.from_file(sample_path)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "2 2 3 4"
    assert lines[1] == "0 0 -385.99 387.12"
    assert lines[5] == "0.01"
    assert len(lines) == 1 + 4 + 18 + 9
    assert [float(v) for v in lines[-3:]] == POINTS[2]


def test_write_to_file_quaternions_outputs_angle_axis(sample_path, tmp_path):
    problem = BALProblem.from_file(sample_path, use_quaternions=True)
    out = tmp_path / "out.txt"
    problem.write_to_file(out)
    lines = out.read_text().splitlines()
    camera0 = [float(v) for v in lines[5:14]]
    np.testing.assert_allclose(camera0, CAM0, atol=1e-15)


def test_write_to_ply_file(sample_path, tmp_path):
    problem = BALProblem.from_file(sample_path)
    out = tmp_path / "cloud.ply"
    problem.write_to_ply_file(out)
    lines = out.read_text().splitlines()
    assert lines[0] == "ply"
    assert lines[2] == "element vertex 5"
    assert lines[9] == "end_header"
    assert len(lines) == 15
    assert lines[10].endswith(" 0 255 0")
    assert len(lines[10].split()) == 6
    assert lines[12] == "1 2 10  255 255 255"


def test_normalize_invariants(sample_path):
    problem = BALProblem.from_file(sample_path)
    rotations = problem.cameras[:, :3].copy()
    intrinsics = problem.cameras[:, 6:].copy()
    problem.normalize()
    points = problem.points
    for i in range(3):
        assert median(points[:, i]) == pytest.approx(0.0, abs=1e-9)
    assert median(np.abs(points).sum(axis=1)) == pytest.approx(100.0)
    np.testing.assert_allclose(problem.cameras[:, :3], rotations)
    np.testing.assert_allclose(problem.cameras[:, 6:], intrinsics)


def test_normalize_degenerate(sample_path):
    problem = BALProblem.from_file(sample_path)
    problem.points[:] = 1.0
    with pytest.raises(ValueError):
        problem.normalize()


def test_perturb_zero_sigma_keeps_parameters(sample_path):
    problem = BALProblem.from_file(sample_path)
    before = problem.parameters.copy()
    problem.perturb(0.0, 0.0, 0.0, random.Random(3))
    np.testing.assert_allclose(problem.parameters, before, atol=1e-12)


def test_perturb_deterministic_and_keeps_intrinsics(sample_path):
    a = BALProblem.from_file(sample_path)
    b = BALProblem.from_file(sample_path)
    a.perturb(0.1, 0.5, 0.5, random.Random(9))
    b.perturb(0.1, 0.5, 0.5, random.Random(9))
    np.testing.assert_array_equal(a.parameters, b.parameters)
    np.testing.assert_allclose(a.cameras[:, 6:], [CAM0[6:], CAM1[6:]])
    assert not np.allclose(a.points, POINTS)


def test_perturb_negative_sigma(sample_path):
    problem = BALProblem.from_file(sample_path)
    with pytest.raises(ValueError):
        problem.perturb(-0.1, 0.0, 0.0)