"""Water level measurement.

Ties calibration and line finding together: calibrate once from an image
of the bowtie target (or from known correspondence points), then measure
each new frame in world units and check whether the target has drifted
since calibration.
"""

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import numpy as np

from ..config import config
from .calibration import Calib, CalibrationModel
from .detection import FindLine
from .models import ErrorReason, FindLineResult, FindPointSet, Point, Result

logger = logging.getLogger(__name__)


@dataclass
class Measurement:
    """Water level of one frame."""

    level: float  # world y of the line center
    line_pixel: FindPointSet
    line_world: FindPointSet
    find_result: FindLineResult
    move_targets: Optional[FindPointSet] = None
    move_offset: Optional[float] = None  # largest marker offset in pixels
    target_moved: Optional[bool] = None
    messages: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "level": self.level,
            "line_pixel": self.line_pixel.to_dict(),
            "line_world": self.line_world.to_dict(),
            "find_result": self.find_result.to_dict(),
            "move_targets": self.move_targets.to_dict() if self.move_targets else None,
            "move_offset": self.move_offset,
            "target_moved": self.target_moved,
            "messages": list(self.messages),
        }


class WaterLevelMeasurer:
    """Calibrates against the bowtie target and measures water levels."""

    def __init__(
        self,
        grid_size: Optional[tuple[int, int]] = None,
        template_dim: Optional[int] = None,
    ) -> None:
        self.calib = Calib(template_dim)
        self.finder = FindLine(grid_size)
        self.target_min_score = config.get("vision.bowtie.min_score", 0.4)
        self.movement_threshold = config.get("vision.measurement.movement_threshold_px", 2.0)
        self._search_size: Optional[tuple[int, int]] = None

    @property
    def is_calibrated(self) -> bool:
        return self.calib.is_calibrated

    def calibrate(
        self,
        pixel_points: list[Point],
        world_points: list[Point],
        grid_size: tuple[int, int],
        image_size: tuple[int, int],
    ) -> Result[CalibrationModel]:
        return self.calib.calibrate(pixel_points, world_points, grid_size, image_size)

    def calibrate_from_image(
        self, image: np.ndarray, world_points: list[Point]
    ) -> Result[CalibrationModel]:
        """Find the target grid in an image and calibrate against it.

        Args:
            image: Image showing the whole bowtie target
            world_points: World coordinates of the markers, row-major from
                the top-left marker
        """
        if image is None or image.size == 0:
            message = "Cannot calibrate from an empty image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        ready = self._ensure_ready(image)
        if not ready.ok:
            return ready.forward()

        found = self.finder.bank.find_targets(image, self.target_min_score)
        if not found.ok:
            return found.forward()

        pixel_points = [item.point for row in found.value for item in row]
        return self.calib.calibrate(
            pixel_points,
            world_points,
            self.finder.bank.grid_size,
            (image.shape[1], image.shape[0]),
        )

    def load_calibration(self, filepath: str | Path) -> Result[CalibrationModel]:
        return self.calib.load(filepath)

    def save_calibration(self, filepath: str | Path) -> Result[Path]:
        return self.calib.save(filepath)

    def measure(self, image: np.ndarray, check_movement: bool = True) -> Result[Measurement]:
        """Measure the water level in one frame.

        A failed drift check does not fail the measurement; the result is
        downgraded to WARNING and the reason recorded in its messages.
        """
        if not self.calib.is_calibrated:
            message = "Cannot measure water level with an uncalibrated system"
            logger.error(message)
            return Result.invalid(ErrorReason.UNCALIBRATED, message)
        if image is None or image.size == 0:
            message = "Cannot measure water level in an empty image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        ready = self._ensure_ready(image)
        if not ready.ok:
            return ready.forward()

        found = self.finder.find(image, self.calib.model.search_lines)
        if not found.ok:
            return found.forward()
        line = found.value

        world = []
        for point in (line.line_points.left, line.line_points.center, line.line_points.right):
            converted = self.calib.pixel_to_world(point)
            if not converted.ok:
                return converted.forward()
            world.append(converted.value)
        line_world = FindPointSet(
            left=world[0],
            center=world[1],
            right=world[2],
            angle=math.degrees(
                math.atan2(world[2][1] - world[0][1], world[2][0] - world[0][0])
            ),
        )

        measurement = Measurement(
            level=world[1][1],
            line_pixel=line.line_points,
            line_world=line_world,
            find_result=line,
            messages=list(line.messages),
        )

        if check_movement:
            drift = self._check_movement(image, measurement)
            if not drift.ok:
                measurement.messages.append(f"Move target check failed: {drift.message}")
                logger.warning(f"Move target check failed: {drift.message}")
                return Result.warning(measurement, drift.reason, drift.message)

        logger.info(f"Water level {measurement.level:.3f}")
        return Result.success(measurement)

    def _check_movement(self, image: np.ndarray, measurement: Measurement) -> Result[float]:
        """Locate the move targets and record their offset from calibration."""
        refs = []
        for is_left in (True, False):
            roi = self.calib.move_search_roi(is_left)
            if not roi.ok:
                return roi.forward()
            applied = self.finder.set_move_target_roi(image, roi.value, is_left)
            if not applied.ok:
                return applied.forward()
            ref = self.calib.move_ref_point(is_left)
            if not ref.ok:
                return ref.forward()
            refs.append(ref.value)

        targets = self.finder.find_move_targets(image)
        if not targets.ok:
            return targets.forward()

        offset = max(
            math.dist(targets.value.left, refs[0]),
            math.dist(targets.value.right, refs[1]),
        )
        measurement.move_targets = targets.value
        measurement.move_offset = offset
        measurement.target_moved = offset > self.movement_threshold
        if measurement.target_moved:
            logger.warning(
                f"Target moved {offset:.2f} px since calibration "
                f"(threshold {self.movement_threshold} px)"
            )
        return Result.success(offset)

    def _ensure_ready(self, image: np.ndarray) -> Result[Any]:
        """Initialize the template bank for this image size if needed."""
        size = (image.shape[1], image.shape[0])
        if self.finder.is_initialized and self._search_size == size:
            return Result.success(size)
        result = self.finder.init_bowtie_search(self.calib.template_dim, size)
        if result.ok:
            self._search_size = size
        return result