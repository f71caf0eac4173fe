"""Overlay drawing for calibration and water line results.

Every drawing function works on a BGR copy of its input (gray input is
converted), so the caller's image is never modified.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from ..calibration.model import CalibrationModel
from ..models import ErrorReason, FindLineResult, FindPointSet, Point, Rect, Result

logger = logging.getLogger(__name__)

GRID_COLOR = (0, 255, 0)
MOVE_ROI_COLOR = (255, 0, 0)
SEARCH_ROI_COLOR = (0, 255, 255)
LINE_COLOR = (0, 0, 255)
INLIER_COLOR = (0, 255, 0)
OUTLIER_COLOR = (0, 0, 255)
MOVE_TARGET_COLOR = (255, 0, 255)


def _to_int(point: Point) -> tuple[int, int]:
    return (int(round(point[0])), int(round(point[1])))


class GaugeVisualization:
    """Drawing tools for calibration and line find debugging."""

    @staticmethod
    def to_bgr(image: np.ndarray) -> Optional[np.ndarray]:
        """BGR uint8 copy of a gray or BGR image, None if unusable."""
        if image is None or image.size == 0 or image.dtype != np.uint8:
            return None
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        if image.ndim == 3 and image.shape[2] == 3:
            return image.copy()
        return None

    @staticmethod
    def draw_calibration(
        image: np.ndarray,
        model: CalibrationModel,
        draw_grid: bool = True,
        draw_move_rois: bool = True,
        draw_search_roi: bool = True,
    ) -> Result[np.ndarray]:
        """Draw the calibration grid, move search regions and search band.

        Args:
            image: Gray or BGR uint8 image
            model: Calibration to draw
            draw_grid: Draw the calibration points
            draw_move_rois: Draw the move search regions
            draw_search_roi: Draw the outline of the search band

        Returns:
            Result holding the overlay; WARNING when the search band was
            requested but the calibration has no search lines
        """
        vis_image = GaugeVisualization.to_bgr(image)
        if vis_image is None:
            message = "Cannot draw calibration on an empty or non 8-bit image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if not model.is_calibrated:
            message = "System not calibrated"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)

        if draw_grid:
            thickness = max(1, vis_image.shape[1] // 400)
            radius = max(3, vis_image.shape[1] // 200)
            for index, point in enumerate(model.pixel_points):
                center = _to_int(point)
                cv2.circle(vis_image, center, radius, GRID_COLOR, thickness)
                cv2.putText(
                    vis_image,
                    str(index),
                    (center[0] + radius + 2, center[1] - radius - 2),
                    cv2.FONT_HERSHEY_SIMPLEX,
                    0.4,
                    GRID_COLOR,
                    1,
                )

        if draw_move_rois:
            for rect in (model.move_search_left, model.move_search_right):
                GaugeVisualization.draw_rect(vis_image, rect, MOVE_ROI_COLOR)

        if draw_search_roi:
            lines = model.search_lines
            if not lines:
                message = "Search lines not calculated, search region not drawn"
                logger.warning(message)
                return Result.warning(vis_image, ErrorReason.INVALID_ARGUMENT, message)
            outline = np.array(
                [lines[0].top, lines[-1].top, lines[-1].bot, lines[0].bot], dtype=np.int32
            )
            cv2.polylines(vis_image, [outline], True, SEARCH_ROI_COLOR, 1)

        return Result.success(vis_image)

    @staticmethod
    def draw_find_result(image: np.ndarray, result: FindLineResult) -> Result[np.ndarray]:
        """Draw the fitted line with its inlier and outlier candidate points."""
        vis_image = GaugeVisualization.to_bgr(image)
        if vis_image is None:
            message = "Cannot draw line find result on an empty or non 8-bit image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        for point in result.inliers:
            cv2.circle(vis_image, _to_int(point), 3, INLIER_COLOR, cv2.FILLED)
        for point in result.outliers:
            cv2.drawMarker(vis_image, _to_int(point), OUTLIER_COLOR, cv2.MARKER_TILTED_CROSS, 8)

        GaugeVisualization.draw_point_set(vis_image, result.line_points, LINE_COLOR)
        return Result.success(vis_image)

    @staticmethod
    def draw_move_targets(image: np.ndarray, points: FindPointSet) -> Result[np.ndarray]:
        """Draw the found left and right move targets."""
        vis_image = GaugeVisualization.to_bgr(image)
        if vis_image is None:
            message = "Cannot draw move targets on an empty or non 8-bit image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        for point in (points.left, points.right):
            cv2.drawMarker(vis_image, _to_int(point), MOVE_TARGET_COLOR, cv2.MARKER_CROSS, 20, 2)
        cv2.putText(
            vis_image,
            f"angle={points.angle:.2f}",
            (10, 20),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.5,
            MOVE_TARGET_COLOR,
            1,
        )
        return Result.success(vis_image)

    @staticmethod
    def draw_point_set(
        image: np.ndarray, points: FindPointSet, color: tuple[int, int, int], thickness: int = 2
    ) -> np.ndarray:
        cv2.line(image, _to_int(points.left), _to_int(points.right), color, thickness)
        cv2.circle(image, _to_int(points.center), 5, color, thickness)
        return image

    @staticmethod
    def draw_rect(
        image: np.ndarray, rect: Rect, color: tuple[int, int, int], thickness: int = 1
    ) -> np.ndarray:
        if rect.is_empty:
            return image
        cv2.rectangle(
            image,
            (rect.x, rect.y),
            (rect.x + rect.width - 1, rect.y + rect.height - 1),
            color,
            thickness,
        )
        return image


draw_calibration = GaugeVisualization.draw_calibration
draw_find_result = GaugeVisualization.draw_find_result
draw_move_targets = GaugeVisualization.draw_move_targets
