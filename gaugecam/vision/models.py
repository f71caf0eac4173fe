"""Vision module data models.

Provides the data structures shared by calibration, bowtie target matching
and water line detection:
- Operation outcomes (status, error reason, result wrapper)
- Image geometry (rectangles, search lines)
- Template match candidates
- Line find results
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")

Point = tuple[float, float]

# 32-bit integer minimum, used for search line coordinates missing from a file
INT_MIN_SENTINEL = -(2**31)

# =============================================================================
# Operation Outcomes
# =============================================================================


class Status(Enum):
    """Outcome of a public operation."""

    OK = "ok"
    WARNING = "warning"
    VALIDATION_ERROR = "validation_error"
    NUMERIC_ERROR = "numeric_error"
    EXCEPTION = "exception"


class ErrorReason(Enum):
    """Refinement of a failed (or warned) outcome."""

    INVALID_ARGUMENT = "invalid_argument"
    UNCALIBRATED = "uncalibrated"
    NOT_INITIALIZED = "not_initialized"
    COUNT_MISMATCH = "count_mismatch"
    FILE_NOT_FOUND = "file_not_found"
    PARSE_ERROR = "parse_error"
    NO_MATCH = "no_match"
    INSUFFICIENT_POINTS = "insufficient_points"
    DEGENERATE_POINTS = "degenerate_points"
    IO_ERROR = "io_error"
    UNEXPECTED = "unexpected"


@dataclass
class Result(Generic[T]):
    """Tagged outcome of an operation.

    Public operations return a Result instead of raising: ``value`` is set
    on success (and on warnings), ``reason`` and ``message`` describe what
    went wrong otherwise.
    """

    status: Status
    value: Optional[T] = None
    reason: Optional[ErrorReason] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        """True for OK and WARNING outcomes."""
        return self.status in (Status.OK, Status.WARNING)

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(Status.OK, value=value)

    @classmethod
    def warning(
        cls, value: Optional[T], reason: ErrorReason, message: str
    ) -> "Result[T]":
        return cls(Status.WARNING, value=value, reason=reason, message=message)

    @classmethod
    def invalid(cls, reason: ErrorReason, message: str) -> "Result[T]":
        return cls(Status.VALIDATION_ERROR, reason=reason, message=message)

    @classmethod
    def numeric(cls, reason: ErrorReason, message: str) -> "Result[T]":
        return cls(Status.NUMERIC_ERROR, reason=reason, message=message)

    @classmethod
    def exception(
        cls, message: str, reason: ErrorReason = ErrorReason.UNEXPECTED
    ) -> "Result[T]":
        return cls(Status.EXCEPTION, reason=reason, message=message)

    def forward(self) -> "Result[Any]":
        """Re-tag a failure for a caller with a different value type."""
        return Result(self.status, value=None, reason=self.reason, message=self.message)


# =============================================================================
# Image Geometry
# =============================================================================


@dataclass
class Rect:
    """Axis aligned rectangle in pixel coordinates."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def fits_in(self, width: int, height: int) -> bool:
        """Whether the rectangle lies completely inside a width x height image."""
        return (
            self.x >= 0
            and self.y >= 0
            and self.x + self.width <= width
            and self.y + self.height <= height
        )

    def contains(self, point: Point) -> bool:
        return (
            self.x <= point[0] < self.x + self.width
            and self.y <= point[1] < self.y + self.height
        )

    def inset(self, margin: int) -> "Rect":
        """The rectangle shrunk by margin on every side (empty if nothing is left)."""
        return Rect(
            self.x + margin,
            self.y + margin,
            max(0, self.width - 2 * margin),
            max(0, self.height - 2 * margin),
        )

    @classmethod
    def centered_box(
        cls, center: Point, half_size: int, image_size: tuple[int, int]
    ) -> "Rect":
        """Square box of side 2 * half_size around center, clamped to the image."""
        cx = round(center[0])
        cy = round(center[1])
        x0 = max(0, cx - half_size)
        y0 = max(0, cy - half_size)
        x1 = min(image_size[0], cx + half_size)
        y1 = min(image_size[1], cy + half_size)
        return cls(x0, y0, max(0, x1 - x0), max(0, y1 - y0))

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Rect":
        return cls(
            x=int(data.get("x", 0)),
            y=int(data.get("y", 0)),
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
        )


@dataclass
class SearchLine:
    """Near-vertical line segment along which the water line is searched."""

    top: tuple[int, int]
    bot: tuple[int, int]

    @property
    def length(self) -> float:
        return math.hypot(self.bot[0] - self.top[0], self.bot[1] - self.top[1])

    def point_at(self, fraction: float) -> Point:
        """Point at a fraction (0=top, 1=bottom) of the way along the line."""
        return (
            self.top[0] + fraction * (self.bot[0] - self.top[0]),
            self.top[1] + fraction * (self.bot[1] - self.top[1]),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "topX": self.top[0],
            "topY": self.top[1],
            "botX": self.bot[0],
            "botY": self.bot[1],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SearchLine":
        return cls(
            top=(
                int(data.get("topX", INT_MIN_SENTINEL)),
                int(data.get("topY", INT_MIN_SENTINEL)),
            ),
            bot=(
                int(data.get("botX", INT_MIN_SENTINEL)),
                int(data.get("botY", INT_MIN_SENTINEL)),
            ),
        )


# =============================================================================
# Detection Results
# =============================================================================


@dataclass
class TemplateMatchItem:
    """Bowtie template match candidate."""

    point: Point  # subpixel marker center
    score: float  # normalized correlation


@dataclass
class FindPointSet:
    """Left, center and right points of a line plus its angle in degrees."""

    left: Point = (-1.0, -1.0)
    center: Point = (-1.0, -1.0)
    right: Point = (-1.0, -1.0)
    angle: float = 0.0

    @classmethod
    def from_ends(cls, left: Point, right: Point) -> "FindPointSet":
        return cls(
            left=left,
            center=((left[0] + right[0]) / 2.0, (left[1] + right[1]) / 2.0),
            right=right,
            angle=math.degrees(math.atan2(right[1] - left[1], right[0] - left[0])),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "left": list(self.left),
            "center": list(self.center),
            "right": list(self.right),
            "angle": self.angle,
        }


@dataclass
class FindLineResult:
    """Result of a water line search."""

    slope: float
    intercept: float
    line_points: FindPointSet
    found_points: list[Point] = field(default_factory=list)
    inliers: list[Point] = field(default_factory=list)
    outliers: list[Point] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)

    def y_at(self, x: float) -> float:
        return self.slope * x + self.intercept

    def to_dict(self) -> dict[str, Any]:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "line_points": self.line_points.to_dict(),
            "found_points": [list(p) for p in self.found_points],
            "inliers": [list(p) for p in self.inliers],
            "outliers": [list(p) for p in self.outliers],
            "messages": list(self.messages),
        }
