"""Tests for the water line search and RANSAC line fit."""

import math

import numpy as np
import pytest
from conftest import TEMPLATE_DIM, render_target

from gaugecam.vision.detection import FindLine
from gaugecam.vision.models import ErrorReason, FindLineResult, Rect, SearchLine, Status


@pytest.fixture()
def finder(image_size):
    finder = FindLine((2, 4))
    assert finder.init_bowtie_search(TEMPLATE_DIM, image_size).ok
    finder.seed(42)
    return finder


@pytest.fixture()
def vertical_lines():
    return [SearchLine((x, 100), (x, 420)) for x in range(200, 401)]


def line_points(slope, intercept, xs):
    return [(float(x), float(slope * x + intercept)) for x in xs]


class TestRansac:
    """Test robust line fitting."""

    def test_recovers_line_with_outliers(self, finder):
        xs = np.linspace(0, 490, 50)
        points = line_points(0.1, 50.0, xs)
        outliers = []
        for i in range(0, 50, 5):
            points[i] = (points[i][0], points[i][1] + 40.0 + i)
            outliers.append(points[i])

        result = finder.fit_line_ransac(points, 245.0)
        assert result.ok
        line = result.value
        assert line.slope == pytest.approx(0.1, abs=1e-6)
        assert line.intercept == pytest.approx(50.0, abs=1e-4)
        assert set(line.outliers) == set(outliers)
        assert not set(line.inliers) & set(outliers)
        assert len(line.inliers) == 40
        assert line.line_points.center == pytest.approx((245.0, 74.5), abs=1e-4)
        assert line.line_points.angle == pytest.approx(math.degrees(math.atan(0.1)))

    def test_steep_line_rejected_by_angle_bounds(self, finder):
        points = line_points(math.tan(math.radians(30)), 10.0, range(0, 200, 10))
        result = finder.fit_line_ransac(points, 100.0)
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.INSUFFICIENT_POINTS

        assert finder.set_line_find_angle_bounds(20.0, 40.0).ok
        result = finder.fit_line_ransac(points, 100.0)
        assert result.ok
        assert result.value.line_points.angle == pytest.approx(30.0, abs=1e-6)

    def test_too_few_points(self, finder):
        result = finder.fit_line_ransac([(0.0, 0.0), (10.0, 1.0)], 5.0)
        assert result.reason == ErrorReason.INSUFFICIENT_POINTS

    def test_vertical_points_fail(self, finder):
        points = [(100.0, float(y)) for y in range(0, 50, 5)]
        result = finder.fit_line_ransac(points, 100.0)
        assert result.reason == ErrorReason.INSUFFICIENT_POINTS

    def test_center_outside_image(self, finder):
        points = line_points(0.0, 20.0, range(0, 100, 10))
        result = finder.fit_line_ransac(points, 700.0, (480, 640))
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    @pytest.mark.parametrize("bounds", [(-90.0, 10.0), (10.0, 90.0), (5.0, 5.0), (10.0, -10.0)])
    def test_invalid_angle_bounds(self, finder, bounds):
        result = finder.set_line_find_angle_bounds(*bounds)
        assert result.reason == ErrorReason.INVALID_ARGUMENT
        assert (finder.min_line_find_angle, finder.max_line_find_angle) == (-15.0, 15.0)


class TestProfile:
    """Test row sums, median filter and transition points."""

    def test_median_filter_removes_spike(self, finder):
        values = np.array([1.0, 1.0, 1.0, 50.0, 1.0, 1.0, 1.0])
        result = finder.median_filter(3, values)
        assert result.ok
        assert np.array_equal(result.value, np.ones(7))

    def test_median_filter_keeps_step(self, finder):
        values = np.array([0.0] * 5 + [10.0] * 5)
        result = finder.median_filter(5, values)
        assert np.array_equal(result.value, values)

    @pytest.mark.parametrize("kernel", [0, 2, -3])
    def test_median_filter_invalid_kernel(self, finder, kernel):
        result = finder.median_filter(kernel, np.zeros(10))
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    def test_row_sums(self, finder):
        gray = np.zeros((50, 50), dtype=np.uint8)
        gray[20:, :] = 10
        lines = [SearchLine((x, 0), (x, 49)) for x in (10, 11, 12)]
        profile = finder.calc_row_sums(gray, lines)
        assert profile.shape == (50,)
        assert profile[0] == 0.0
        assert profile[-1] == pytest.approx(30.0)

    def test_swath_point_on_step(self, finder):
        profile = np.array([100.0] * 40 + [10.0] * 40)
        line = SearchLine((30, 100), (30, 179))
        result = finder.calc_swath_point(profile, line)
        assert result.ok
        assert result.value == pytest.approx((30.0, 139.5), abs=0.5)

    def test_swath_point_flat_profile(self, finder):
        result = finder.calc_swath_point(np.full(50, 7.0), SearchLine((0, 0), (0, 49)))
        assert result.reason == ErrorReason.NO_MATCH


class TestFind:
    """Test the full water line search."""

    def test_find_level_line(self, finder, vertical_lines):
        image = render_target(water_y=300.0)
        result = finder.find(image, vertical_lines)
        assert result.ok
        line = result.value
        assert isinstance(line, FindLineResult)
        assert line.slope == pytest.approx(0.0, abs=0.01)
        assert line.y_at(300.0) == pytest.approx(300.5, abs=1.5)
        assert len(line.found_points) == finder.swath_count

    def test_find_sloped_line(self, finder, vertical_lines):
        image = render_target(water_y=250.0, water_slope=0.05)
        result = finder.find(image, vertical_lines)
        assert result.ok
        assert result.value.slope == pytest.approx(0.05, abs=0.01)
        assert result.value.y_at(300.0) == pytest.approx(265.5, abs=1.5)

    def test_find_bgr_image(self, finder, vertical_lines):
        gray = render_target(water_y=300.0)
        bgr = np.dstack([gray, gray, gray])
        assert finder.find(bgr, vertical_lines).ok

    def test_find_float_bgr_image(self, finder, vertical_lines):
        gray = render_target(water_y=300.0).astype(np.float64)
        bgr = np.dstack([gray, gray, gray])
        result = finder.find(bgr, vertical_lines)
        assert result.ok
        assert result.value.y_at(300.0) == pytest.approx(300.5, abs=1.5)

    def test_find_two_channel_image(self, finder, vertical_lines, water_image):
        image = np.dstack([water_image, water_image])
        result = finder.find(image, vertical_lines)
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    def test_find_uninitialized(self, vertical_lines, water_image):
        result = FindLine().find(water_image, vertical_lines)
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.NOT_INITIALIZED

    def test_find_lines_outside_image(self, finder, water_image):
        lines = [SearchLine((x, -(2**31)), (x, 100)) for x in range(10, 20)]
        result = finder.find(water_image, lines)
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    def test_find_no_lines(self, finder, water_image):
        assert finder.find(water_image, []).reason == ErrorReason.INVALID_ARGUMENT

    def test_find_move_targets(self, finder, target_image):
        assert finder.set_move_target_roi(target_image, Rect(104, 24, 112, 112), True).ok
        assert finder.set_move_target_roi(target_image, Rect(424, 24, 112, 112), False).ok
        result = finder.find_move_targets(target_image)
        assert result.ok
        assert result.value.left == pytest.approx((160.0, 80.0), abs=1.0)
        assert result.value.right == pytest.approx((480.0, 80.0), abs=1.0)
        assert result.value.angle == pytest.approx(0.0, abs=0.5)

    def test_find_move_targets_uninitialized(self, target_image):
        result = FindLine().find_move_targets(target_image)
        assert result.reason == ErrorReason.NOT_INITIALIZED

    def test_draw_result(self, finder, vertical_lines):
        image = render_target(water_y=300.0)
        line = finder.find(image, vertical_lines).value
        drawn = finder.draw_result(image, line)
        assert drawn.ok
        assert drawn.value.shape == image.shape + (3,)
