"""Bowtie calibration target detection.

A bowtie marker is two dark triangles meeting at a point on a light
background. Markers are located by normalized cross-correlation against a
bank of synthesized templates, one per small rotation angle, in two stages:
a coarse whole-image match with the unrotated template, then a refinement
of each candidate over a small window with every rotation in the bank.
"""

import logging
import math
from typing import Optional

import cv2
import numpy as np
from numpy.typing import NDArray

from ...config import config
from ..models import ErrorReason, Point, Rect, Result, TemplateMatchItem

logger = logging.getLogger(__name__)

TEMPLATE_COUNT = 15
TEMPLATE_ANGLE_STEP = 1.0  # degrees between neighboring templates
MIN_TEMPLATE_DIM = 20
MAX_TEMPLATE_DIM = 1000
MAX_MATCH_COUNT = 1000
BACKGROUND_INTENSITY = 224
MARKER_INTENSITY = 32


def draw_bowtie(size: int) -> NDArray[np.uint8]:
    """Draw an unrotated bowtie filling a size x size patch."""
    patch = np.full((size, size), BACKGROUND_INTENSITY, dtype=np.uint8)
    center = (size // 2, size // 2)
    left = np.array([(1, 1), (1, size - 2), center], dtype=np.int32)
    right = np.array([(size - 2, 1), (size - 2, size - 2), center], dtype=np.int32)
    cv2.fillConvexPoly(patch, left, MARKER_INTENSITY)
    cv2.fillConvexPoly(patch, right, MARKER_INTENSITY)
    return patch


def rotate_image(src: np.ndarray, angle: float) -> np.ndarray:
    """Rotate an image about its center by angle degrees (counterclockwise)."""
    rows, cols = src.shape[:2]
    rotation = cv2.getRotationMatrix2D((cols / 2.0, rows / 2.0), angle, 1.0)
    return cv2.warpAffine(src, rotation, (cols, rows), flags=cv2.INTER_CUBIC)


def template_angle(index: int) -> float:
    """Rotation angle in degrees of the bank template at index."""
    return (index - TEMPLATE_COUNT // 2) * TEMPLATE_ANGLE_STEP


class BowtieTemplateBank:
    """Rotated bowtie template bank and marker matcher.

    The correlation score buffers are owned by the instance and sized on
    ``init_bowtie_template``; an instance must not be used from more than
    one thread at a time.
    """

    def __init__(self, grid_size: Optional[tuple[int, int]] = None) -> None:
        """Initialize an empty bank.

        Args:
            grid_size: (columns, rows) of the calibration target marker grid
        """
        self.grid_size = grid_size or (
            config.get("vision.bowtie.grid_columns", 2),
            config.get("vision.bowtie.grid_rows", 4),
        )
        self.suppression_radius = config.get("vision.bowtie.suppression_radius", 17)
        self.move_search_min_score = config.get("vision.bowtie.min_score", 0.4)
        self.move_search_candidates = config.get("vision.bowtie.move_candidates", 8)

        self._templates: list[NDArray[np.uint8]] = []
        self._match_space: Optional[NDArray[np.float32]] = None
        self._match_space_small: Optional[NDArray[np.float32]] = None
        self._item_array: list[list[TemplateMatchItem]] = []

        self.move_search_left = Rect(0, 0, 5, 5)
        self.move_search_right = Rect(10, 0, 5, 5)

    @property
    def is_initialized(self) -> bool:
        return len(self._templates) == TEMPLATE_COUNT

    @property
    def templates(self) -> list[NDArray[np.uint8]]:
        return self._templates

    @property
    def template_dim(self) -> int:
        return self._templates[0].shape[0] if self._templates else 0

    @property
    def target_count(self) -> int:
        return self.grid_size[0] * self.grid_size[1]

    def init_bowtie_template(
        self, template_dim: int, search_image_size: tuple[int, int]
    ) -> Result[list[NDArray[np.uint8]]]:
        """Synthesize the template bank and allocate the score buffers.

        The bowtie is drawn at twice the template size and rotated before
        the center is cropped out, so rotated templates have no empty
        corners.

        Args:
            template_dim: Template side length, rounded up to even
            search_image_size: (width, height) of the images to be searched

        Returns:
            Result holding the templates, index TEMPLATE_COUNT // 2 unrotated
        """
        if not MIN_TEMPLATE_DIM <= template_dim <= MAX_TEMPLATE_DIM:
            message = (
                f"Invalid template dimension {template_dim}, must be in range "
                f"{MIN_TEMPLATE_DIM}-{MAX_TEMPLATE_DIM}"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        dim = template_dim + (template_dim % 2)
        width, height = search_image_size
        if width < dim + 2 or height < dim + 2:
            message = f"Search image size {search_image_size} too small for {dim}px templates"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        try:
            oversized = draw_bowtie(dim * 2)
            crop = slice(dim // 2, dim // 2 + dim)
            center = TEMPLATE_COUNT // 2

            templates: list[NDArray[np.uint8]] = [None] * TEMPLATE_COUNT
            templates[center] = oversized[crop, crop].copy()
            for i in range(TEMPLATE_COUNT):
                if i != center:
                    rotated = rotate_image(oversized, template_angle(i))
                    templates[i] = rotated[crop, crop].copy()

            match_space = np.zeros((height - dim + 1, width - dim + 1), np.float32)
            match_space_small = np.zeros((dim // 2 + 1, dim // 2 + 1), np.float32)
        except cv2.error as e:
            logger.exception("Bowtie template creation failed")
            return Result.exception(f"Bowtie template creation failed: {e}")

        self._templates = templates
        self._match_space = match_space
        self._match_space_small = match_space_small
        self._item_array = []

        logger.debug(
            f"Created {TEMPLATE_COUNT} bowtie templates of {dim}x{dim} px "
            f"for {width}x{height} search images"
        )
        return Result.success(templates)

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    def match_template(
        self, index: int, image: np.ndarray, min_score: float, num_to_find: int
    ) -> Result[list[TemplateMatchItem]]:
        """Coarse whole-image match of one template.

        Candidates are extracted greedily from the score map: take the
        global maximum, stop once it drops below min_score, record it
        unless it sits on the edge of the score map, then clear a disk of
        ``suppression_radius`` around it so the same marker is not
        reported twice.

        Returns:
            Result holding candidates in decreasing score order
        """
        check = self._check_match_args(index, image, min_score, num_to_find)
        if not check.ok:
            return check.forward()
        gray = check.value

        try:
            score_map = self._score_map(gray, self._templates[index])

            half = self.template_dim / 2.0
            map_rows, map_cols = score_map.shape
            items = []
            for _ in range(num_to_find):
                _, max_score, _, max_loc = cv2.minMaxLoc(score_map)
                if max_score < min_score:
                    break
                x, y = max_loc
                if 0 < x < map_cols - 1 and 0 < y < map_rows - 1:
                    items.append(TemplateMatchItem((x + half, y + half), float(max_score)))
                cv2.circle(score_map, max_loc, self.suppression_radius, 0.0, cv2.FILLED)
        except cv2.error as e:
            logger.exception("Template match failed")
            return Result.exception(f"Template match failed: {e}")

        if not items:
            message = f"No template matches found with score >= {min_score:.3f}"
            logger.error(message)
            return Result.invalid(ErrorReason.NO_MATCH, message)

        return Result.success(items)

    def match_refine(
        self,
        index: int,
        image: np.ndarray,
        min_score: float,
        item: TemplateMatchItem,
    ) -> Result[TemplateMatchItem]:
        """Re-match one template over a small window around a candidate.

        The window is one and a half templates wide, centered on the
        candidate and shifted to stay inside the image. When the best
        local score beats both the candidate's score and min_score, the
        candidate is replaced by the subpixel position of that peak.

        Returns:
            Result holding the refined (or unchanged) candidate
        """
        check = self._check_match_args(index, image, min_score, 1)
        if not check.ok:
            return check.forward()
        gray = check.value

        dim = self.template_dim
        window = dim + (dim >> 1)
        img_rows, img_cols = gray.shape
        if img_cols < window or img_rows < window:
            message = f"Image too small for a {window}px refinement window"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        x = max(0, round(item.point[0]) - (dim >> 1) - (dim >> 2))
        y = max(0, round(item.point[1]) - (dim >> 1) - (dim >> 2))
        x = min(x, img_cols - window)
        y = min(y, img_rows - window)

        try:
            roi = gray[y : y + window, x : x + window]
            score_map = cv2.matchTemplate(
                roi,
                self._templates[index],
                cv2.TM_CCOEFF_NORMED,
                result=self._match_space_small,
            )
            np.nan_to_num(score_map, copy=False)
            self._match_space_small = score_map
            _, max_score, _, max_loc = cv2.minMaxLoc(score_map)
        except cv2.error as e:
            logger.exception("Template refinement failed")
            return Result.exception(f"Template refinement failed: {e}")

        if max_score <= item.score or max_score < min_score:
            return Result.success(item)

        if _is_interior(score_map, max_loc):
            peak = _centroid(score_map, max_loc)
        else:
            peak = (float(max_loc[0]), float(max_loc[1]))

        return Result.success(
            TemplateMatchItem(
                (x + peak[0] + dim / 2.0, y + peak[1] + dim / 2.0), float(max_score)
            )
        )

    def subpixel_point_refine(
        self, score_map: np.ndarray, peak: tuple[int, int]
    ) -> Result[Point]:
        """Score weighted centroid of the 3x3 neighborhood around a peak.

        Args:
            score_map: float32 correlation score map
            peak: (x, y) integer location of the peak

        Returns:
            Result holding the subpixel (x, y) peak location in score map
            coordinates
        """
        if score_map is None or score_map.dtype != np.float32 or score_map.ndim != 2:
            message = "Invalid score map format for subpixel refinement"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if not _is_interior(score_map, peak):
            message = f"Peak {peak} is on the edge of the score map"
            logger.warning(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        neighborhood = score_map[peak[1] - 1 : peak[1] + 2, peak[0] - 1 : peak[0] + 2]
        if float(neighborhood.sum()) <= 0.0:
            return Result.numeric(
                ErrorReason.DEGENERATE_POINTS, "Score neighborhood sums to zero"
            )
        return Result.success(_centroid(score_map, peak))

    # -------------------------------------------------------------------------
    # Target grid
    # -------------------------------------------------------------------------

    def find_targets(
        self, image: np.ndarray, min_score: float
    ) -> Result[list[list[TemplateMatchItem]]]:
        """Find the calibration target marker grid.

        Coarse match with the unrotated template for twice the number of
        grid markers, refine every candidate against every rotation, then
        sort the best candidates into grid order.

        Returns:
            Result holding one list of markers per grid row, top to bottom,
            each ordered left to right
        """
        if not self.is_initialized:
            message = "Bowtie templates not defined"
            logger.error(message)
            return Result.invalid(ErrorReason.NOT_INITIALIZED, message)
        if not 0.05 <= min_score <= 1.0:
            message = f"Invalid minimum target score {min_score}"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        coarse = self.match_template(
            TEMPLATE_COUNT // 2, image, min_score, self.target_count * 2
        )
        if not coarse.ok:
            return coarse.forward()

        refined = []
        for item in coarse.value:
            for index in range(TEMPLATE_COUNT):
                result = self.match_refine(index, image, min_score, item)
                if not result.ok:
                    return result.forward()
                item = result.value
            refined.append(item)

        # refinement can pull two coarse candidates onto the same marker
        distinct: list[TemplateMatchItem] = []
        for item in sorted(refined, key=lambda item: item.score, reverse=True):
            if all(
                math.dist(item.point, kept.point) > self.suppression_radius
                for kept in distinct
            ):
                distinct.append(item)

        return self.sort_points(distinct, (image.shape[1], image.shape[0]))

    def sort_points(
        self, items: list[TemplateMatchItem], image_size: tuple[int, int]
    ) -> Result[list[list[TemplateMatchItem]]]:
        """Sort match candidates into grid rows and columns.

        Keeps the columns x rows best scoring candidates, splits them into
        rows by vertical position and orders each row by horizontal
        position. The move search regions are recentered on the two top
        corner markers.

        Args:
            items: Match candidates in any order
            image_size: (width, height) of the searched image

        Returns:
            Result holding the markers row by row
        """
        columns, rows = self.grid_size
        count = columns * rows
        if len(items) < count:
            message = f"Invalid found point count={len(items)}, should be at least {count}"
            logger.error(message)
            return Result.invalid(ErrorReason.INSUFFICIENT_POINTS, message)

        best = sorted(items, key=lambda item: item.score, reverse=True)[:count]
        best.sort(key=lambda item: item.point[1])
        grid = [
            sorted(best[row * columns : (row + 1) * columns], key=lambda item: item.point[0])
            for row in range(rows)
        ]

        half_size = self.template_dim or config.get("vision.bowtie.template_dim", 56)
        self._item_array = grid
        self.move_search_left = Rect.centered_box(grid[0][0].point, half_size, image_size)
        self.move_search_right = Rect.centered_box(grid[0][-1].point, half_size, image_size)

        return Result.success(grid)

    def found_points(self) -> Result[list[list[Point]]]:
        """Marker centers from the last successful target search, row by row."""
        columns, rows = self.grid_size
        if not self._item_array:
            message = "No points available in found points array"
            logger.error(message)
            return Result.invalid(ErrorReason.NO_MATCH, message)
        if len(self._item_array) != rows or any(len(r) != columns for r in self._item_array):
            message = f"Invalid found points array, should be {columns}x{rows}"
            logger.error(message)
            return Result.invalid(ErrorReason.COUNT_MISMATCH, message)
        return Result.success([[item.point for item in row] for row in self._item_array])

    # -------------------------------------------------------------------------
    # Movement detection
    # -------------------------------------------------------------------------

    def set_move_target_roi(
        self, image: np.ndarray, rect: Rect, is_left: bool
    ) -> Result[Rect]:
        """Set the left or right move target search region."""
        side = "left" if is_left else "right"
        if image is None or image.size == 0:
            message = f"Cannot validate {side} search ROI against an empty image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if rect.is_empty or not rect.fits_in(image.shape[1], image.shape[0]):
            message = f"Invalid {side} search ROI dimension {rect}"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        if is_left:
            self.move_search_left = rect
        else:
            self.move_search_right = rect
        return Result.success(rect)

    def move_target_rois(self) -> tuple[Rect, Rect]:
        return self.move_search_left, self.move_search_right

    def find_move_targets(
        self, image: np.ndarray, refine_min_score: Optional[float] = None
    ) -> Result[tuple[Point, Point]]:
        """Find the two move reference markers inside their search regions.

        Everything outside the two search regions is blanked before
        matching. The blanked border creates strong false matches along
        the region edges, so a marker only counts when its center is far
        enough inside its region that the whole template window sees
        unblanked pixels. Each region must hold exactly one such marker.

        Args:
            image: Image to search
            refine_min_score: Minimum score for rotation refinement
                (defaults to vision.bowtie.refine_min_score)

        Returns:
            Result holding (left, right) marker centers
        """
        if not self.is_initialized:
            message = "Cannot find move targets in an uninitialized object"
            logger.error(message)
            return Result.invalid(ErrorReason.NOT_INITIALIZED, message)
        gray = to_gray(image)
        if gray is None:
            message = "Cannot find move targets in an empty or unsupported image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        img_rows, img_cols = gray.shape
        for rect in (self.move_search_left, self.move_search_right):
            if rect.is_empty or not rect.fits_in(img_cols, img_rows):
                message = f"Move search region {rect} does not fit a {img_cols}x{img_rows} image"
                logger.error(message)
                return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        if refine_min_score is None:
            refine_min_score = config.get("vision.bowtie.refine_min_score", 0.5)

        scratch = np.zeros_like(gray)
        for rect in (self.move_search_left, self.move_search_right):
            region = (slice(rect.y, rect.y + rect.height), slice(rect.x, rect.x + rect.width))
            scratch[region] = gray[region]

        coarse = self.match_template(
            TEMPLATE_COUNT // 2, scratch, self.move_search_min_score, self.move_search_candidates
        )
        if not coarse.ok:
            return coarse.forward()

        items = []
        for item in coarse.value:
            for index in range(TEMPLATE_COUNT):
                result = self.match_refine(index, scratch, refine_min_score, item)
                if not result.ok:
                    return result.forward()
                item = result.value
            items.append(item)

        margin = self.template_dim // 2
        found = []
        for side, rect in (("left", self.move_search_left), ("right", self.move_search_right)):
            inner = rect.inset(margin)
            inside = [item for item in items if inner.contains(item.point)]
            if not inside:
                message = f"No move target found inside the {side} search region {rect}"
                logger.error(message)
                return Result.invalid(ErrorReason.NO_MATCH, message)
            found.append(max(inside, key=lambda item: item.score))

        if math.dist(found[0].point, found[1].point) <= self.suppression_radius:
            message = f"Left and right search regions found the same move target at {found[0].point}"
            logger.error(message)
            return Result.invalid(ErrorReason.COUNT_MISMATCH, message)

        found.sort(key=lambda item: item.point[0])
        return Result.success((found[0].point, found[1].point))

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _check_match_args(
        self, index: int, image: np.ndarray, min_score: float, num_to_find: int
    ) -> Result[np.ndarray]:
        if not self.is_initialized:
            message = "Bowtie templates not defined"
            logger.error(message)
            return Result.invalid(ErrorReason.NOT_INITIALIZED, message)
        if not 0 <= index < TEMPLATE_COUNT:
            message = (
                f"Attempted to find template index={index}, "
                f"must be in range 0-{TEMPLATE_COUNT - 1}"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if not 0.05 <= min_score <= 1.0:
            message = f"Min score {min_score:.3f} must be in range 0.05-1.0"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if not 1 <= num_to_find <= MAX_MATCH_COUNT:
            message = (
                f"Attempted to find {num_to_find} matches, "
                f"must be in range 1-{MAX_MATCH_COUNT}"
            )
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)

        gray = to_gray(image)
        if gray is None:
            message = "Cannot match templates in an empty or unsupported image"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        if gray.shape[0] < self.template_dim + 2 or gray.shape[1] < self.template_dim + 2:
            message = f"Image {gray.shape[1]}x{gray.shape[0]} smaller than the templates"
            logger.error(message)
            return Result.invalid(ErrorReason.INVALID_ARGUMENT, message)
        return Result.success(gray)

    def _score_map(self, gray: np.ndarray, template: np.ndarray) -> np.ndarray:
        """Correlate a template over the whole image into the owned buffer."""
        expected = (
            gray.shape[0] - template.shape[0] + 1,
            gray.shape[1] - template.shape[1] + 1,
        )
        if self._match_space is None or self._match_space.shape != expected:
            logger.debug(f"Resizing match space to {expected[1]}x{expected[0]}")
            self._match_space = np.zeros(expected, np.float32)

        score_map = cv2.matchTemplate(
            gray, template, cv2.TM_CCOEFF_NORMED, result=self._match_space
        )
        np.nan_to_num(score_map, copy=False)
        self._match_space = score_map
        return score_map


GRAY_CONVERSIONS = {3: cv2.COLOR_BGR2GRAY, 4: cv2.COLOR_BGRA2GRAY}


def to_gray(image: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """8-bit single channel view of a gray, BGR or BGRA image.

    Non 8-bit intensities are clipped to 0-255. Returns None for empty
    images and unsupported layouts (e.g. two channels).
    """
    if image is None or image.size == 0:
        return None
    if image.ndim == 3 and image.shape[2] == 1:
        image = image[:, :, 0]
    if image.ndim == 3:
        if image.shape[2] not in GRAY_CONVERSIONS:
            return None
    elif image.ndim != 2:
        return None
    if image.dtype.kind not in "uif":
        return None
    if image.dtype != np.uint8:
        image = np.clip(np.nan_to_num(image), 0, 255).astype(np.uint8)
    if image.ndim == 3:
        image = cv2.cvtColor(image, GRAY_CONVERSIONS[image.shape[2]])
    return image


def _is_interior(score_map: np.ndarray, peak: tuple[int, int]) -> bool:
    rows, cols = score_map.shape
    return 1 <= peak[0] <= cols - 2 and 1 <= peak[1] <= rows - 2


def _centroid(score_map: np.ndarray, peak: tuple[int, int]) -> Point:
    x, y = peak
    neighborhood = score_map[y - 1 : y + 2, x - 1 : x + 2].astype(np.float64)
    total = neighborhood.sum()
    if total <= 0.0:
        return (float(x), float(y))
    offsets = np.array([-1.0, 0.0, 1.0])
    dx = float((neighborhood.sum(axis=0) * offsets).sum() / total)
    dy = float((neighborhood.sum(axis=1) * offsets).sum() / total)
    return (x + dx, y + dy)
