import numpy as np
import pytest

from vslam.direct_method import (
    Camera,
    JacobianAccumulator,
    build_pyramid,
    direct_pose_estimation_multi_layer,
    direct_pose_estimation_single_layer,
    get_pixel_value,
)
from vslam.lie import SE3

CAMERA = Camera(fx=100.0, fy=100.0, cx=32.0, cy=24.0)


def _texture(u, v, shift=0.0):
    return 128.0 + 60.0 * np.sin((u - shift) / 6.0) * np.cos(v / 7.0)


def _images(shift, width=64, height=48):
    v, u = np.mgrid[0:height, 0:width].astype(float)
    return _texture(u, v), _texture(u, v, shift)


def _reference_pixels():
    us, vs = np.meshgrid(np.arange(12, 53, 4), np.arange(12, 37, 4))
    px = np.column_stack([us.ravel(), vs.ravel()]).astype(float)
    return px, np.ones(len(px))


def test_camera_scaled_scales_intrinsics():
    scaled = Camera().scaled(0.5)
    assert scaled.fx == pytest.approx(718.856 * 0.5)
    assert scaled.cy == pytest.approx(185.2157 * 0.5)
    assert scaled.baseline == Camera().baseline


def test_get_pixel_value_at_integer_and_half_positions():
    img = np.arange(12, dtype=np.uint8).reshape(3, 4)
    assert get_pixel_value(img, 1, 2) == pytest.approx(img[2, 1])
    assert get_pixel_value(img, 0.5, 0) == pytest.approx((img[0, 0] + img[0, 1]) / 2)
    assert get_pixel_value(img, -5, -5) == pytest.approx(img[0, 0])


def test_get_pixel_value_accepts_arrays():
    img = np.arange(12, dtype=float).reshape(3, 4)
    values = get_pixel_value(img, np.array([0.0, 3.0]), np.array([0.0, 2.0]))
    assert np.allclose(values, [img[0, 0], img[2, 3]])


def test_build_pyramid_shapes_and_constant_image():
    image = np.full((48, 64), 7, dtype=np.uint8)
    pyramid = build_pyramid(image, 4, 0.5)
    assert [level.shape for level in pyramid] == [(48, 64), (24, 32), (12, 16), (6, 8)]
    assert all(level.dtype == np.uint8 for level in pyramid)
    assert all(np.all(level == 7) for level in pyramid)


def test_build_pyramid_rejects_no_levels():
    with pytest.raises(ValueError):
        build_pyramid(np.zeros((8, 8)), 0, 0.5)


def test_accumulator_rejects_mismatched_depths():
    img, _ = _images(0.0)
    with pytest.raises(ValueError):
        JacobianAccumulator(img, img, np.zeros((3, 2)), np.ones(2), CAMERA)


def test_accumulate_identical_images_has_zero_cost():
    img, _ = _images(0.0)
    px, depth = _reference_pixels()
    accumulator = JacobianAccumulator(img, img, px, depth, CAMERA)
    system = accumulator.accumulate(SE3())
    assert system.cost == pytest.approx(0.0)
    assert np.allclose(system.bias, 0.0)
    assert np.allclose(system.hessian, system.hessian.T)
    assert np.min(np.linalg.eigvalsh(system.hessian)) > -1e-6
    assert np.allclose(accumulator.projection, px)


def test_accumulate_shifted_images_has_cost_and_bias():
    img1, img2 = _images(1.0)
    px, depth = _reference_pixels()
    system = JacobianAccumulator(img1, img2, px, depth, CAMERA).accumulate(SE3())
    assert system.cost > 0.0
    assert np.linalg.norm(system.bias) > 0.0


def test_points_behind_camera_are_skipped():
    img, _ = _images(0.0)
    px, depth = _reference_pixels()
    accumulator = JacobianAccumulator(img, img, px, -depth, CAMERA)
    system = accumulator.accumulate(SE3())
    assert system.cost == 0.0
    assert np.all(system.hessian == 0.0)
    assert np.all(accumulator.projection == 0.0)


def test_single_layer_keeps_identity_for_identical_images():
    img, _ = _images(0.0)
    px, depth = _reference_pixels()
    result = direct_pose_estimation_single_layer(img, img, px, depth, SE3(), CAMERA)
    assert np.allclose(result.pose.matrix(), np.eye(4))


def test_single_layer_tracks_horizontal_shift():
    img1, img2 = _images(1.0)
    px, depth = _reference_pixels()
    result = direct_pose_estimation_single_layer(img1, img2, px, depth, SE3(), CAMERA)
    flow = result.projection - px
    assert np.mean(flow[:, 0]) == pytest.approx(1.0, abs=0.2)
    assert np.mean(flow[:, 1]) == pytest.approx(0.0, abs=0.2)


def test_multi_layer_keeps_identity_for_identical_images():
    img, _ = _images(0.0, width=128, height=96)
    us, vs = np.meshgrid(np.arange(24, 105, 8), np.arange(24, 73, 8))
    px = np.column_stack([us.ravel(), vs.ravel()]).astype(float)
    camera = Camera(fx=200.0, fy=200.0, cx=64.0, cy=48.0)
    result = direct_pose_estimation_multi_layer(img, img, px, np.ones(len(px)), SE3(), camera)
    assert np.allclose(result.pose.matrix(), np.eye(4))
    assert result.projection.shape == px.shape