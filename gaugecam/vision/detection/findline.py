"""Water line search.

The water line is searched along a band of near-vertical search lines
derived from the calibration grid. The band is split into swaths of
neighboring lines; in each swath the image intensity is summed along the
lines into one profile, the profile is median filtered, and the row of the
strongest intensity transition becomes one candidate point. A RANSAC line
fit over the candidates rejects swaths that locked onto debris, glare or
ripples.

The same object owns the bowtie template bank used to re-find the two
move-reference markers, so drift can be checked on every frame.
"""

import logging
import math
from typing import Optional

import cv2
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from ...config import config
from ..models import (
    ErrorReason,
    FindLineResult,
    FindPointSet,
    Point,
    Rect,
    Result,
    SearchLine,
)
from ..utils.visualization import draw_find_result
from .bowtie import BowtieTemplateBank, to_gray

logger = logging.getLogger(__name__)

MAX_ANGLE_BOUND = 89.0


class FindLine:
    """Water line finder with bowtie move target search.

    States:
        Uninitialized: no bowtie templates, ``find`` and
            ``find_move_targets`` fail with NOT_INITIALIZED
        Ready: after a successful ``init_bowtie_search``
    """

    def __init__(self, grid_size: Optional[tuple[int, int]] = None) -> None:
        self._bank = BowtieTemplateBank(grid_size)

        self.swath_count = config.get("vision.find_line.swath_count", 10)
        self.median_kernel = config.get("vision.find_line.median_kernel", 5)
        self.edge_span = config.get("vision.find_line.edge_span", 3)
        self.min_line_find_angle = config.get("vision.find_line.min_angle", -15.0)
        self.max_line_find_angle = config.get("vision.find_line.max_angle", 15.0)

        self.ransac_iterations = config.get("vision.find_line.ransac.iterations", 200)
        self.inlier_tolerance = config.get("vision.find_line.ransac.inlier_tolerance", 2.0)
        self.min_inliers = max(2, config.get("vision.find_line.ransac.min_inliers", 3))
        self._rng = np.random.default_rng(config.get("vision.find_line.ransac.seed"))

    @property
    def bank(self) -> BowtieTemplateBank:
        return self._bank

    @property
    def is_initialized(self) -> bool:
        return self._bank.is_initialized

    def init_bowtie_search(
        self, template_dim: int, search_image_size: tuple[int, int]
    ) -> Result[list[np.ndarray]]:
        """Create the bowtie templates, moving the finder to the Ready state."""
        result = self._bank.init_bowtie_template(template_dim, search_image_size)
        if result.ok:
            logger.info(f"Line finder ready for {search_image_size[0]}x{search_image_size[1]} images")
        return result

    def seed(self, seed: Optional[int]) -> None:
        """Reseed the RANSAC sampler."""
        self._rng = np.random.default_rng(seed)

    # -------------------------------------------------------------------------
    # Line search
    # -------------------------------------------------------------------------

    def find(self, image: np.ndarray, search_lines: list[SearchLine]) -> Result[FindLineResult]:
        """Find the water line along the search lines.

        Args:
            image: Gray or BGR image
            search_lines: Search band, ordered left to right

        Returns:
            Result holding the fitted line, its candidate points split into
            inliers and outliers, and one message per failed swath
        """
        if not self.is_initialized:
            message = "Cannot find line in an uninitialized object"
            logger.error(message)
            return Result.invalid(ErrorReason.NOT_INITIALIZED, message)
        gray = to_gray(image)
        if gray is None:
            message = "Cannot find line in an empty or unsupported image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if len(search_lines) < 2:
            message = f"Not enough search lines ({len(search_lines)}) to find a line"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        height, width = gray.shape
        for line in search_lines:
            if not all(0 <= p[0] < width and 0 <= p[1] < height for p in (line.top, line.bot)):
                message = f"Search line {line} outside a {width}x{height} image"
                logger.error(message)
                return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        intensity = gray.astype(np.float32)
        messages = []
        found_points = []
        swath_count = min(self.swath_count, len(search_lines))
        for index, swath in enumerate(np.array_split(np.arange(len(search_lines)), swath_count)):
            lines = [search_lines[i] for i in swath]
            try:
                result = self.evaluate_swath(intensity, lines)
            except cv2.error as e:
                logger.exception("Swath sampling failed")
                return Result.exception(f"Swath sampling failed: {e}")
            if result.ok:
                found_points.append(result.value)
            else:
                messages.append(f"Swath {index}: {result.message}")
                logger.debug(f"Swath {index} failed: {result.message}")

        middle = search_lines[len(search_lines) // 2]
        x_center = (middle.top[0] + middle.bot[0]) / 2.0

        fit = self.fit_line_ransac(found_points, x_center, gray.shape)
        if not fit.ok:
            return fit

        line = fit.value
        line.messages = messages
        logger.debug(
            f"Found line y={line.slope:.4f}x+{line.intercept:.2f} with "
            f"{len(line.inliers)}/{len(found_points)} inliers"
        )
        return Result.success(line)

    def evaluate_swath(self, gray: np.ndarray, lines: list[SearchLine]) -> Result[Point]:
        """Candidate water line point for one swath of search lines."""
        profile = self.calc_row_sums(gray, lines)
        if profile.size <= 2 * self.edge_span:
            return Result.invalid(
                ErrorReason.INSUFFICIENT_POINTS,
                f"Swath profile of {profile.size} samples is too short",
            )

        filtered = self.median_filter(self.median_kernel, profile)
        if not filtered.ok:
            return filtered.forward()

        return self.calc_swath_point(filtered.value, lines[len(lines) // 2])

    def calc_row_sums(self, gray: np.ndarray, lines: list[SearchLine]) -> np.ndarray:
        """Sum intensities across the lines of a swath, top to bottom.

        Every line is resampled (bilinear) to the length of the longest
        line, so sample i of each line sits at the same fraction of its
        length.
        """
        samples = max(2, int(round(max(line.length for line in lines))) + 1)
        fractions = np.linspace(0.0, 1.0, samples, dtype=np.float32)

        top = np.array([line.top for line in lines], dtype=np.float32)
        bot = np.array([line.bot for line in lines], dtype=np.float32)
        map_x = top[:, 0:1] + fractions * (bot[:, 0:1] - top[:, 0:1])
        map_y = top[:, 1:2] + fractions * (bot[:, 1:2] - top[:, 1:2])

        sampled = cv2.remap(
            np.asarray(gray, dtype=np.float32),
            map_x.astype(np.float32),
            map_y.astype(np.float32),
            cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_REPLICATE,
        )
        return sampled.sum(axis=0, dtype=np.float64)

    def median_filter(self, kernel_size: int, values: np.ndarray) -> Result[np.ndarray]:
        """Median filter a 1-D profile, replicating the edge values."""
        if kernel_size < 1 or kernel_size % 2 == 0:
            message = f"Median kernel size {kernel_size} must be odd and positive"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        values = np.asarray(values, dtype=np.float64)
        if values.size < kernel_size:
            message = f"Cannot median filter {values.size} values with kernel {kernel_size}"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if kernel_size == 1:
            return Result.success(values.copy())

        padded = np.pad(values, kernel_size // 2, mode="edge")
        return Result.success(np.median(sliding_window_view(padded, kernel_size), axis=-1))

    def calc_swath_point(self, profile: np.ndarray, center_line: SearchLine) -> Result[Point]:
        """Point of strongest intensity transition mapped onto the center line.

        The transition strength at sample i is the difference of the
        profile ``edge_span`` samples below and above it. The peak
        position is the centroid of the strength run around the maximum
        that stays above half of it, so a flat plateau resolves to its
        middle.
        """
        span = self.edge_span
        padded = np.pad(profile, span, mode="edge")
        strength = np.abs(padded[2 * span :] - padded[: -2 * span])

        peak = int(np.argmax(strength))
        if strength[peak] <= 0.0:
            return Result.invalid(ErrorReason.NO_MATCH, "No intensity transition in swath")

        half = strength[peak] / 2.0
        lo = peak
        while lo > 0 and strength[lo - 1] >= half:
            lo -= 1
        hi = peak
        while hi < strength.size - 1 and strength[hi + 1] >= half:
            hi += 1
        weights = strength[lo : hi + 1]
        position = float((np.arange(lo, hi + 1) * weights).sum() / weights.sum())

        return Result.success(center_line.point_at(position / (profile.size - 1)))

    # -------------------------------------------------------------------------
    # Robust fit
    # -------------------------------------------------------------------------

    def fit_line_ransac(
        self,
        points: list[Point],
        x_center: float,
        image_shape: Optional[tuple[int, ...]] = None,
    ) -> Result[FindLineResult]:
        """Fit y = slope * x + intercept with random sample consensus.

        Each iteration draws two distinct points; vertical pairs and lines
        steeper than the configured angle bounds are skipped. The hypothesis
        with the most points within ``inlier_tolerance`` wins, ties going to
        the smaller total residual, and the final line is a least squares
        refit over its inliers.

        Args:
            points: Candidate (x, y) points
            x_center: x at which the reported center point is evaluated
            image_shape: Optional image shape; x_center must lie inside it

        Returns:
            Result holding the fitted line with inliers and outliers
        """
        if image_shape is not None and not 0 <= x_center < image_shape[1]:
            message = f"Line center x={x_center} outside image width {image_shape[1]}"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if len(points) < self.min_inliers:
            message = f"Not enough points to fit a line ({len(points)} < {self.min_inliers})"
            logger.error(message)
            return Result.invalid(ErrorReason.INSUFFICIENT_POINTS, message)

        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        x, y = pts[:, 0], pts[:, 1]

        best_mask = None
        best_count = 0
        best_residual = math.inf
        best_model = (0.0, 0.0)
        for _ in range(self.ransac_iterations):
            i, j = self._rng.choice(len(pts), size=2, replace=False)
            dx = x[j] - x[i]
            if abs(dx) < 1e-9:
                continue
            slope = (y[j] - y[i]) / dx
            if not self._angle_in_bounds(slope):
                continue
            intercept = y[i] - slope * x[i]

            distances = np.abs(slope * x - y + intercept) / math.sqrt(slope * slope + 1.0)
            mask = distances <= self.inlier_tolerance
            count = int(mask.sum())
            residual = float(distances[mask].sum())
            if count > best_count or (count == best_count and residual < best_residual):
                best_mask, best_count, best_residual = mask, count, residual
                best_model = (slope, intercept)

        if best_mask is None or best_count < self.min_inliers:
            message = (
                f"Too few line inliers ({best_count}) within angle bounds "
                f"[{self.min_line_find_angle}, {self.max_line_find_angle}]"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INSUFFICIENT_POINTS, message)

        slope, intercept = best_model
        if np.ptp(x[best_mask]) > 0.0:
            refit_slope, refit_intercept = np.polyfit(x[best_mask], y[best_mask], 1)
            if self._angle_in_bounds(refit_slope):
                slope, intercept = float(refit_slope), float(refit_intercept)

        left_x = float(x.min())
        right_x = float(x.max())
        line_points = FindPointSet(
            left=(left_x, slope * left_x + intercept),
            center=(float(x_center), slope * x_center + intercept),
            right=(right_x, slope * right_x + intercept),
            angle=math.degrees(math.atan(slope)),
        )

        return Result.success(
            FindLineResult(
                slope=float(slope),
                intercept=float(intercept),
                line_points=line_points,
                found_points=[tuple(p) for p in pts.tolist()],
                inliers=[tuple(p) for p in pts[best_mask].tolist()],
                outliers=[tuple(p) for p in pts[~best_mask].tolist()],
            )
        )

    def set_line_find_angle_bounds(self, min_angle: float, max_angle: float) -> Result[tuple[float, float]]:
        """Set the accepted line angle range in degrees."""
        if not (
            -MAX_ANGLE_BOUND <= min_angle <= MAX_ANGLE_BOUND
            and -MAX_ANGLE_BOUND <= max_angle <= MAX_ANGLE_BOUND
            and min_angle < max_angle
        ):
            message = (
                f"Invalid line find angle bounds [{min_angle}, {max_angle}], "
                f"both must be in [-{MAX_ANGLE_BOUND}, {MAX_ANGLE_BOUND}] with min < max"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        self.min_line_find_angle = float(min_angle)
        self.max_line_find_angle = float(max_angle)
        return Result.success((self.min_line_find_angle, self.max_line_find_angle))

    def _angle_in_bounds(self, slope: float) -> bool:
        angle = math.degrees(math.atan(slope))
        return self.min_line_find_angle <= angle <= self.max_line_find_angle

    # -------------------------------------------------------------------------
    # Move targets
    # -------------------------------------------------------------------------

    def find_move_targets(
        self, image: np.ndarray, refine_min_score: Optional[float] = None
    ) -> Result[FindPointSet]:
        """Find the left and right move-reference markers."""
        result = self._bank.find_move_targets(image, refine_min_score)
        if not result.ok:
            return result.forward()
        left, right = result.value
        return Result.success(FindPointSet.from_ends(left, right))

    def set_move_target_roi(self, image: np.ndarray, rect: Rect, is_left: bool) -> Result[Rect]:
        return self._bank.set_move_target_roi(image, rect, is_left)

    def move_target_rois(self) -> tuple[Rect, Rect]:
        return self._bank.move_target_rois()

    def draw_result(self, image: np.ndarray, result: FindLineResult) -> Result[np.ndarray]:
        return draw_find_result(image, result)
