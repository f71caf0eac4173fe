"""Pixel/world calibration from a bowtie target grid.

Fits forward (pixel to world) and inverse (world to pixel) homographies over
the grid correspondence points and derives the auxiliary search geometry:
the two move-reference search regions around the top corner markers and the
band of vertical search lines in which the water line is looked for.
"""

import json
import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from ...config import config
from ..models import ErrorReason, Point, Rect, Result, SearchLine
from .model import MIN_GRID_COLUMNS, MIN_GRID_ROWS, CalibrationModel

logger = logging.getLogger(__name__)

HOMOGRAPHY_METHODS = {
    "least_squares": 0,
    "ransac": cv2.RANSAC,
    "lmeds": cv2.LMEDS,
}


class Calib:
    """Camera calibration and pixel/world coordinate mapping.

    The calibration model is only replaced after every validation and
    numeric step of ``calibrate`` has succeeded, so a failed calibration
    leaves the previous one in place.
    """

    def __init__(self, template_dim: Optional[int] = None) -> None:
        """Initialize an uncalibrated instance.

        Args:
            template_dim: Bowtie template dimension used to size the move
                search regions (defaults to vision.bowtie.template_dim)
        """
        self.template_dim = (
            template_dim
            if template_dim is not None
            else config.get("vision.bowtie.template_dim", 56)
        )
        self._model = CalibrationModel()

    @property
    def model(self) -> CalibrationModel:
        return self._model

    @property
    def is_calibrated(self) -> bool:
        return self._model.is_calibrated

    @property
    def image_size(self) -> tuple[int, int]:
        return self._model.image_size

    def clear(self) -> None:
        self._model = CalibrationModel()

    def calibrate(
        self,
        pixel_points: list[Point],
        world_points: list[Point],
        grid_size: tuple[int, int],
        image_size: tuple[int, int],
    ) -> Result[CalibrationModel]:
        """Calibrate from grid correspondence points.

        Args:
            pixel_points: Marker centers in pixels, row-major from top-left
            world_points: Matching world coordinates
            grid_size: (columns, rows) of the marker grid
            image_size: (width, height) of the calibration image

        Returns:
            Result holding the new calibration model
        """
        columns, rows = grid_size
        if (
            len(pixel_points) != len(world_points)
            or not pixel_points
            or columns <= 0
            or columns * rows != len(pixel_points)
        ):
            message = (
                f"Calibration world/pixel point counts do not match or are empty: "
                f"pixel={len(pixel_points)} world={len(world_points)} grid={columns}x{rows}"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.COUNT_MISMATCH, message)

        if columns < MIN_GRID_COLUMNS or rows < MIN_GRID_ROWS:
            message = (
                f"Calibration grid {columns}x{rows} is smaller than the "
                f"{MIN_GRID_COLUMNS}x{MIN_GRID_ROWS} minimum"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        if image_size[0] <= 0 or image_size[1] <= 0:
            message = f"Invalid calibration image size {image_size}"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        pixel = np.asarray(pixel_points, dtype=np.float64).reshape(-1, 2)
        world = np.asarray(world_points, dtype=np.float64).reshape(-1, 2)
        if not (np.all(np.isfinite(pixel)) and np.all(np.isfinite(world))):
            message = "Calibration points contain non-finite values"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        if _is_degenerate(pixel) or _is_degenerate(world):
            message = "Calibration points are collinear or coincident"
            logger.error(message)
            return Result.numeric(ErrorReason.DEGENERATE_POINTS, message)

        method_name = config.get("vision.calibration.homography_method", "least_squares")
        method = HOMOGRAPHY_METHODS.get(method_name, 0)

        try:
            pixel_to_world, _ = cv2.findHomography(pixel, world, method)
            world_to_pixel, _ = cv2.findHomography(world, pixel, method)
        except cv2.error as e:
            logger.exception("Homography fit failed")
            return Result.exception(f"Homography fit failed: {e}")

        for name, matrix in (
            ("pixel to world", pixel_to_world),
            ("world to pixel", world_to_pixel),
        ):
            if (
                matrix is None
                or matrix.shape != (3, 3)
                or not np.all(np.isfinite(matrix))
                or np.linalg.matrix_rank(matrix) < 3
            ):
                message = f"Could not fit {name} homography"
                logger.error(message)
                return Result.numeric(ErrorReason.DEGENERATE_POINTS, message)

        pixel_list = [(float(x), float(y)) for x, y in pixel]
        world_list = [(float(x), float(y)) for x, y in world]

        lines_result = calc_search_lines(pixel_list, grid_size, image_size)
        if not lines_result.ok:
            return lines_result.forward()

        model = CalibrationModel(
            grid_size=(columns, rows),
            image_size=(int(image_size[0]), int(image_size[1])),
            pixel_points=pixel_list,
            world_points=world_list,
            pixel_to_world=pixel_to_world,
            world_to_pixel=world_to_pixel,
            move_search_left=Rect.centered_box(
                pixel_list[0], self.template_dim, image_size
            ),
            move_search_right=Rect.centered_box(
                pixel_list[columns - 1], self.template_dim, image_size
            ),
            search_lines=lines_result.value,
        )
        self._model = model

        error = self.reprojection_error()
        logger.info(
            f"Calibrated {columns}x{rows} grid, "
            f"{len(model.search_lines)} search lines, "
            f"reprojection error {error:.3f} px"
        )
        return Result.success(model)

    def pixel_to_world(self, pixel_point: Point) -> Result[Point]:
        """Convert a pixel coordinate to world coordinates."""
        if self._model.pixel_to_world is None:
            message = "No calibration for pixel to world conversion"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)
        return _project(pixel_point, self._model.pixel_to_world)

    def world_to_pixel(self, world_point: Point) -> Result[Point]:
        """Convert a world coordinate to pixel coordinates."""
        if self._model.world_to_pixel is None:
            message = "No calibration for world to pixel conversion"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)
        return _project(world_point, self._model.world_to_pixel)

    def reprojection_error(self) -> float:
        """RMS pixel error of the world to pixel mapping on the grid points."""
        if not self._model.is_calibrated:
            return math.inf
        world = np.asarray(self._model.world_points, dtype=np.float64).reshape(-1, 1, 2)
        pixel = np.asarray(self._model.pixel_points, dtype=np.float64).reshape(-1, 2)
        projected = cv2.perspectiveTransform(world, self._model.world_to_pixel)
        residuals = np.linalg.norm(projected.reshape(-1, 2) - pixel, axis=1)
        return float(np.sqrt(np.mean(residuals**2)))

    def calc_search_swaths(self) -> Result[list[SearchLine]]:
        """Recompute the search lines of the current model."""
        result = calc_search_lines(
            self._model.pixel_points, self._model.grid_size, self._model.image_size
        )
        if result.ok:
            self._model = replace(self._model, search_lines=result.value)
        return result

    def move_search_roi(self, is_left: bool) -> Result[Rect]:
        """Search region for the left or right move-reference marker."""
        if not self._model.has_valid_grid():
            message = "Cannot retrieve move search region from an uncalibrated system"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)
        return Result.success(
            self._model.move_search_left if is_left else self._model.move_search_right
        )

    def move_ref_point(self, is_left: bool) -> Result[Point]:
        """Calibrated pixel position of the left or right move-reference marker."""
        side = "left" if is_left else "right"
        if not self._model.has_valid_grid():
            message = f"Cannot retrieve {side} move reference point with invalid calibration"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)
        index = 0 if is_left else self._model.columns - 1
        return Result.success(self._model.pixel_points[index])

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def load(self, filepath: str | Path) -> Result[CalibrationModel]:
        """Load a calibration file and re-derive the homographies from its points.

        Search lines and move search regions stored in the file replace the
        derived ones.
        A file without an image size is calibrated against the smallest
        image that holds its points, search lines and regions.
        """
        filepath = Path(filepath)
        if not filepath.exists():
            message = f"{filepath} does not exist"
            logger.error(message)
            return Result.invalid(ErrorReason.FILE_NOT_FOUND, message)

        try:
            with open(filepath, encoding="utf-8") as f:
                data = json.load(f)
            loaded = CalibrationModel.from_dict(data)
        except OSError as e:
            logger.error(f"Could not read calibration file {filepath}: {e}")
            return Result.exception(str(e), ErrorReason.IO_ERROR)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
            logger.error(f"Could not parse calibration file {filepath}: {e!r}")
            return Result.exception(repr(e), ErrorReason.PARSE_ERROR)

        if loaded.columns * loaded.rows != len(loaded.pixel_points):
            message = (
                f"Invalid association point count {len(loaded.pixel_points)} "
                f"for a {loaded.columns}x{loaded.rows} grid"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.COUNT_MISMATCH, message)

        for index, (pixel, world) in enumerate(
            zip(loaded.pixel_points, loaded.world_points)
        ):
            logger.debug(
                f"[r={index // loaded.columns} c={index % loaded.columns}] "
                f"pixel={pixel} world={world}"
            )

        image_size = loaded.image_size
        if image_size[0] <= 0 or image_size[1] <= 0:
            image_size = _covering_size(loaded)
            logger.warning(
                f"{filepath} has no image size, using {image_size[0]}x{image_size[1]} "
                f"from the stored geometry"
            )

        result = self.calibrate(
            loaded.pixel_points, loaded.world_points, loaded.grid_size, image_size
        )
        if not result.ok:
            return result

        model = self._model
        if loaded.search_lines:
            model = replace(model, search_lines=loaded.search_lines)
        if not loaded.move_search_left.is_empty:
            model = replace(model, move_search_left=loaded.move_search_left)
        if not loaded.move_search_right.is_empty:
            model = replace(model, move_search_right=loaded.move_search_right)
        self._model = model

        logger.info(f"Loaded calibration from {filepath}")
        return Result.success(model)

    def save(self, filepath: str | Path) -> Result[Path]:
        """Save the calibration model as JSON."""
        json_result = self.model_json_string()
        if not json_result.ok:
            return json_result.forward()

        filepath = Path(filepath)
        try:
            with open(filepath, "w", encoding="utf-8") as f:
                f.write(json_result.value)
        except OSError as e:
            logger.error(f"Could not open calibration save file {filepath}: {e}")
            return Result.exception(str(e), ErrorReason.IO_ERROR)

        logger.info(f"Saved calibration to {filepath}")
        return Result.success(filepath)

    def model_json_string(self) -> Result[str]:
        """Calibration model in the calibration file layout."""
        if not self._model.is_saveable():
            message = "Invalid calib grid dimension(s) or empty cal point vector(s)"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        return Result.success(json.dumps(self._model.to_dict(), indent=2))


def calc_search_lines(
    pixel_points: list[Point], grid_size: tuple[int, int], image_size: tuple[int, int]
) -> Result[list[SearchLine]]:
    """Vertical search lines over the middle third of the marker grid.

    The band runs from above the top marker row to below the bottom marker
    row (1.25 times the row span, padded by an eighth of that at each end)
    and follows the slope of the top and bottom rows, so it narrows or
    widens with the perspective of the target.

    Args:
        pixel_points: Grid marker centers, row-major from top-left
        grid_size: (columns, rows)
        image_size: (width, height)

    Returns:
        Result holding one SearchLine per pixel column of the band top
    """
    columns, rows = grid_size
    if (
        not pixel_points
        or columns < MIN_GRID_COLUMNS
        or rows < MIN_GRID_ROWS
        or len(pixel_points) != columns * rows
    ):
        message = "Invalid calib grid dimension(s) or empty cal point vector(s)"
        logger.error(message)
        return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

    top_left = pixel_points[0]
    top_right = pixel_points[columns - 1]
    bot_left = pixel_points[columns * (rows - 1)]
    bot_right = pixel_points[-1]

    width_top = round((top_right[0] - top_left[0]) / 3.0)
    width_bot = (bot_right[0] - bot_left[0]) / 3.0
    height = round((bot_left[1] - top_left[1]) * 1.25)
    if width_top <= 0 or width_bot <= 0.0 or height <= 0:
        message = (
            "Grid points are not ordered left to right and top to bottom; "
            "cannot compute search swath"
        )
        logger.error(message)
        return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

    top_x = top_left[0] + width_top
    top_y = max(0.0, top_left[1] - height / 8.0 + (height >> 4))
    bot_x = bot_left[0] + width_bot
    bot_y = min(bot_left[1] + height / 8.0 + (height >> 4), float(image_size[1] - 1))

    x_inc_bot = width_bot / width_top
    y_inc_top = (top_right[1] - top_left[1]) / (top_right[0] - top_left[0])
    y_inc_bot = (bot_right[1] - bot_left[1]) / (bot_right[0] - bot_left[0]) * x_inc_bot

    last_row = float(image_size[1] - 1)
    lines = []
    for _ in range(width_top + 1):
        lines.append(
            SearchLine(
                top=(round(top_x), round(max(0.0, top_y))),
                bot=(round(bot_x), round(min(bot_y, last_row))),
            )
        )
        top_x += 1.0
        top_y += y_inc_top
        bot_x += x_inc_bot
        bot_y += y_inc_bot

    return Result.success(lines)


def _is_degenerate(points: np.ndarray) -> bool:
    """Whether the points span less than two dimensions."""
    centered = points - points.mean(axis=0)
    singular_values = np.linalg.svd(centered, compute_uv=False)
    if singular_values[0] <= 1e-12:
        return True
    return bool(singular_values[-1] / singular_values[0] < 1e-9)


def _covering_size(model: CalibrationModel) -> tuple[int, int]:
    """(width, height) of the smallest image holding the model's stored geometry.

    Search line ends left at the missing-coordinate sentinel and empty
    regions do not count.
    """
    xs = [p[0] for p in model.pixel_points]
    ys = [p[1] for p in model.pixel_points]
    for line in model.search_lines:
        for x, y in (line.top, line.bot):
            if x >= 0 and y >= 0:
                xs.append(x)
                ys.append(y)
    for rect in (model.move_search_left, model.move_search_right):
        if not rect.is_empty:
            xs.append(rect.x + rect.width - 1)
            ys.append(rect.y + rect.height - 1)

    xs = [x for x in xs if math.isfinite(x)]
    ys = [y for y in ys if math.isfinite(y)]
    width = math.floor(max(xs, default=-1.0)) + 1
    height = math.floor(max(ys, default=-1.0)) + 1
    return max(0, width), max(0, height)


def _project(point: Point, homography: np.ndarray) -> Result[Point]:
    try:
        src = np.array([[point]], dtype=np.float64)
        dst = cv2.perspectiveTransform(src, homography)
    except cv2.error as e:
        logger.exception("Perspective transform failed")
        return Result.exception(str(e))
    x, y = dst[0, 0]
    if not (math.isfinite(x) and math.isfinite(y)):
        return Result.numeric(
            ErrorReason.DEGENERATE_POINTS, f"Point {point} maps to infinity"
        )
    return Result.success((float(x), float(y)))
