"""Tests for pixel/world calibration."""

import json

import numpy as np
import pytest

from gaugecam.vision.calibration import Calib, CalibrationModel, calc_search_lines
from gaugecam.vision.models import ErrorReason, Rect, Status


@pytest.fixture()
def calib(pixel_points, world_points, image_size):
    calib = Calib(template_dim=56)
    result = calib.calibrate(pixel_points, world_points, (2, 4), image_size)
    assert result.ok
    return calib


class TestCalibrate:
    """Test homography fitting and derived geometry."""

    def test_calibrate_success(self, calib, pixel_points):
        model = calib.model
        assert calib.is_calibrated
        assert model.pixel_to_world.shape == (3, 3)
        assert model.world_to_pixel.shape == (3, 3)
        assert model.pixel_points == pixel_points
        assert len(model.search_lines) > 0
        assert calib.reprojection_error() < 1e-6

    def test_move_search_regions_centered_on_top_corners(self, calib):
        assert calib.model.move_search_left == Rect(104, 24, 112, 112)
        assert calib.model.move_search_right == Rect(424, 24, 112, 112)

    def test_move_ref_points(self, calib):
        assert calib.move_ref_point(True).value == (160.0, 80.0)
        assert calib.move_ref_point(False).value == (480.0, 80.0)

    def test_world_pixel_round_trip(self, calib):
        for world in [(0.0, 0.0), (0.5, 1.5), (1.0, 3.0), (0.25, 2.2)]:
            pixel = calib.world_to_pixel(world)
            assert pixel.ok
            back = calib.pixel_to_world(pixel.value)
            assert back.ok
            assert back.value == pytest.approx(world, abs=1e-6)

    def test_pixel_to_world_on_grid(self, calib):
        result = calib.pixel_to_world((160.0, 320.0))
        assert result.value == pytest.approx((0.0, 0.0), abs=1e-6)
        result = calib.pixel_to_world((320.0, 200.0))
        assert result.value == pytest.approx((0.5, 1.5), abs=1e-6)

    def test_uncalibrated_conversion_fails(self):
        calib = Calib()
        result = calib.pixel_to_world((10.0, 10.0))
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.UNCALIBRATED
        assert calib.world_to_pixel((0.0, 0.0)).reason == ErrorReason.UNCALIBRATED
        assert calib.move_search_roi(True).reason == ErrorReason.UNCALIBRATED

    def test_count_mismatch_leaves_state(self, calib, pixel_points, world_points, image_size):
        before = calib.model
        result = calib.calibrate(pixel_points[:-1], world_points, (2, 4), image_size)
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.COUNT_MISMATCH
        assert calib.model is before

    def test_empty_points_rejected(self, image_size):
        result = Calib().calibrate([], [], (2, 4), image_size)
        assert result.reason == ErrorReason.COUNT_MISMATCH

    def test_grid_too_small_rejected(self, pixel_points, world_points, image_size):
        result = Calib().calibrate(pixel_points[:6], world_points[:6], (2, 3), image_size)
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    def test_collinear_points_numeric_error(self, world_points, image_size):
        collinear = [(float(i * 10), float(i * 10)) for i in range(8)]
        result = Calib().calibrate(collinear, world_points, (2, 4), image_size)
        assert result.status == Status.NUMERIC_ERROR
        assert result.reason == ErrorReason.DEGENERATE_POINTS

    def test_clear(self, calib):
        calib.clear()
        assert not calib.is_calibrated


class TestSearchLines:
    """Test search band derivation."""

    def test_search_line_band(self, pixel_points, image_size):
        result = calc_search_lines(pixel_points, (2, 4), image_size)
        assert result.ok
        lines = result.value

        width_top = round((480 - 160) / 3)
        assert len(lines) == width_top + 1
        assert lines[0].top[0] == 160 + width_top
        assert all(line.top[1] < 80 for line in lines)
        assert all(320 < line.bot[1] <= image_size[1] - 1 for line in lines)
        assert [line.top[0] for line in lines] == sorted(line.top[0] for line in lines)

    def test_search_lines_clamped_to_image(self, image_size):
        points = [(float(x), float(y)) for y in (30, 160, 300, 440) for x in (100, 540)]
        result = calc_search_lines(points, (2, 4), image_size)
        assert result.ok
        for line in result.value:
            assert line.top[1] >= 0
            assert line.bot[1] <= image_size[1] - 1

    def test_calc_search_swaths_restores_lines(self, calib):
        derived = list(calib.model.search_lines)
        calib._model.search_lines = []
        result = calib.calc_search_swaths()
        assert result.ok
        assert calib.model.search_lines == derived

    def test_calc_search_swaths_uncalibrated(self):
        result = Calib().calc_search_swaths()
        assert result.reason == ErrorReason.INVALID_ARGUMENT

    def test_inverted_grid_rejected(self, pixel_points, image_size):
        result = calc_search_lines(list(reversed(pixel_points)), (2, 4), image_size)
        assert result.reason == ErrorReason.INVALID_ARGUMENT


class TestPersistence:
    """Test calibration file save and load."""

    def test_save_load_round_trip(self, calib, tmp_path):
        path = tmp_path / "calib.json"
        assert calib.save(path).ok

        loaded = Calib(template_dim=56)
        result = loaded.load(path)
        assert result.ok
        assert loaded.model.pixel_points == calib.model.pixel_points
        assert loaded.model.world_points == calib.model.world_points
        assert loaded.model.search_lines == calib.model.search_lines
        assert loaded.model.move_search_left == calib.model.move_search_left
        assert np.allclose(loaded.model.pixel_to_world, calib.model.pixel_to_world)

    def test_saved_layout(self, calib):
        data = json.loads(calib.model_json_string().value)
        assert data["imageWidth"] == 640
        assert data["PixelToWorld"]["columns"] == 2
        assert data["PixelToWorld"]["rows"] == 4
        assert data["PixelToWorld"]["points"][0] == {
            "pixelX": 160.0,
            "pixelY": 80.0,
            "worldX": 0.0,
            "worldY": 3.0,
        }
        assert set(data["MoveSearchRegions"]) == {"Left", "Right"}
        assert set(data["SearchLines"][0]) == {"topX", "topY", "botX", "botY"}

    def test_stored_search_lines_kept(self, calib, tmp_path):
        data = calib.model.to_dict()
        data["SearchLines"] = data["SearchLines"][:3]
        path = tmp_path / "calib.json"
        path.write_text(json.dumps(data))

        loaded = Calib()
        assert loaded.load(path).ok
        assert len(loaded.model.search_lines) == 3

    def test_load_missing_file(self, tmp_path):
        result = Calib().load(tmp_path / "missing.json")
        assert result.status == Status.VALIDATION_ERROR
        assert result.reason == ErrorReason.FILE_NOT_FOUND

    def test_load_malformed_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{ not json")
        result = Calib().load(path)
        assert result.status == Status.EXCEPTION
        assert result.reason == ErrorReason.PARSE_ERROR

    def test_load_missing_section(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"imageWidth": 640}))
        result = Calib().load(path)
        assert result.reason == ErrorReason.PARSE_ERROR

    def test_load_count_mismatch(self, calib, tmp_path):
        data = calib.model.to_dict()
        data["PixelToWorld"]["points"].pop()
        path = tmp_path / "calib.json"
        path.write_text(json.dumps(data))

        result = Calib().load(path)
        assert result.reason == ErrorReason.COUNT_MISMATCH

    def test_load_without_image_size(self, calib, tmp_path):
        data = calib.model.to_dict()
        del data["imageWidth"]
        del data["imageHeight"]
        path = tmp_path / "calib.json"
        path.write_text(json.dumps(data))

        loaded = Calib(template_dim=56)
        result = loaded.load(path)
        assert result.ok
        width, height = loaded.image_size
        assert width > max(x for x, _ in calib.model.pixel_points)
        assert height > max(line.bot[1] for line in calib.model.search_lines)
        assert loaded.model.search_lines == calib.model.search_lines
        assert loaded.model.move_search_right == calib.model.move_search_right
        assert np.allclose(loaded.model.pixel_to_world, calib.model.pixel_to_world)

    def test_load_degenerate_points(self, calib, tmp_path):
        data = calib.model.to_dict()
        for i, point in enumerate(data["PixelToWorld"]["points"]):
            point["pixelX"] = 100.0 + 10.0 * i
            point["pixelY"] = 50.0 + 10.0 * i
        path = tmp_path / "calib.json"
        path.write_text(json.dumps(data))

        before = calib.model
        result = calib.load(path)
        assert result.status == Status.NUMERIC_ERROR
        assert result.reason == ErrorReason.DEGENERATE_POINTS
        assert calib.model is before
        assert calib.is_calibrated

    def test_save_uncalibrated_fails(self, tmp_path):
        result = Calib().save(tmp_path / "calib.json")
        assert result.reason == ErrorReason.INVALID_ARGUMENT
        assert not (tmp_path / "calib.json").exists()


class TestCalibrationModel:
    """Test the calibration data model."""

    def test_from_dict_defaults(self):
        model = CalibrationModel.from_dict(
            {"PixelToWorld": {"points": [{"pixelX": 1.5}]}, "SearchLines": [{}]}
        )
        assert model.grid_size == (2, 4)
        assert model.image_size == (0, 0)
        assert model.pixel_points == [(1.5, 0.0)]
        assert model.world_points == [(0.0, 0.0)]
        assert model.search_lines[0].top == (-(2**31), -(2**31))
        assert not model.is_calibrated

    def test_from_dict_requires_pixel_to_world(self):
        with pytest.raises(KeyError):
            CalibrationModel.from_dict({"imageWidth": 10})
