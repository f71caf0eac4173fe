"""Tests for overlay drawing."""

from dataclasses import replace

import numpy as np
import pytest

from gaugecam.vision.calibration import Calib, CalibrationModel
from gaugecam.vision.models import ErrorReason, FindLineResult, FindPointSet, Status
from gaugecam.vision.utils import draw_calibration, draw_find_result, draw_move_targets


@pytest.fixture()
def model(pixel_points, world_points, image_size):
    calib = Calib(template_dim=56)
    assert calib.calibrate(pixel_points, world_points, (2, 4), image_size).ok
    return calib.model


def test_draw_calibration_returns_bgr_copy(model, target_image):
    original = target_image.copy()
    result = draw_calibration(target_image, model)
    assert result.status == Status.OK
    assert result.value.shape == target_image.shape + (3,)
    assert np.array_equal(target_image, original)
    assert not np.array_equal(result.value[:, :, 0], result.value[:, :, 1])


def test_draw_calibration_without_search_lines(model, target_image):
    result = draw_calibration(target_image, replace(model, search_lines=[]))
    assert result.status == Status.WARNING
    assert result.value is not None


def test_draw_calibration_uncalibrated(target_image):
    result = draw_calibration(target_image, CalibrationModel())
    assert result.reason == ErrorReason.UNCALIBRATED


def test_draw_find_result():
    image = np.full((100, 200, 3), 128, dtype=np.uint8)
    line = FindLineResult(
        slope=0.0,
        intercept=50.0,
        line_points=FindPointSet((10.0, 50.0), (100.0, 50.0), (190.0, 50.0), 0.0),
        inliers=[(20.0, 50.0), (80.0, 50.0)],
        outliers=[(50.0, 10.0)],
    )
    result = draw_find_result(image, line)
    assert result.ok
    assert tuple(result.value[50, 100]) != (128, 128, 128)
    assert tuple(image[50, 100]) == (128, 128, 128)


def test_draw_move_targets_rejects_empty():
    result = draw_move_targets(np.zeros((0, 0), dtype=np.uint8), FindPointSet())
    assert result.reason == ErrorReason.INVALID_ARGUMENT


def test_draw_move_targets(target_image):
    points = FindPointSet.from_ends((160.0, 80.0), (480.0, 80.0))
    result = draw_move_targets(target_image, points)
    assert result.ok
    assert tuple(result.value[80, 160]) == (255, 0, 255)
