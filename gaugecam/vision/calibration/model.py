"""Calibration data model and its JSON layout."""

from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from ..models import Point, Rect, SearchLine

MIN_GRID_COLUMNS = 2
MIN_GRID_ROWS = 4


@dataclass
class CalibrationModel:
    """Pixel/world correspondence and the geometry derived from it.

    Points are row-major, top-left first. The two homographies are either
    both set (calibrated) or both None.
    """

    grid_size: tuple[int, int] = (MIN_GRID_COLUMNS, MIN_GRID_ROWS)  # (columns, rows)
    image_size: tuple[int, int] = (0, 0)  # (width, height)
    pixel_points: list[Point] = field(default_factory=list)
    world_points: list[Point] = field(default_factory=list)
    pixel_to_world: Optional[np.ndarray] = None
    world_to_pixel: Optional[np.ndarray] = None
    move_search_left: Rect = field(default_factory=Rect)
    move_search_right: Rect = field(default_factory=Rect)
    search_lines: list[SearchLine] = field(default_factory=list)

    @property
    def columns(self) -> int:
        return self.grid_size[0]

    @property
    def rows(self) -> int:
        return self.grid_size[1]

    @property
    def is_calibrated(self) -> bool:
        return self.pixel_to_world is not None and self.world_to_pixel is not None

    def has_valid_grid(self) -> bool:
        """Point arrays are non-empty, parallel and grid sized."""
        count = self.columns * self.rows
        return (
            len(self.pixel_points) > 0
            and len(self.pixel_points) == len(self.world_points) == count
        )

    def is_saveable(self) -> bool:
        return (
            self.has_valid_grid()
            and self.columns >= MIN_GRID_COLUMNS
            and self.rows >= MIN_GRID_ROWS
            and len(self.search_lines) > 0
        )

    def grid_index(self, row: int, column: int) -> int:
        return row * self.columns + column

    def to_dict(self) -> dict[str, Any]:
        """Convert to the calibration file layout."""
        return {
            "imageWidth": int(self.image_size[0]),
            "imageHeight": int(self.image_size[1]),
            "PixelToWorld": {
                "columns": int(self.columns),
                "rows": int(self.rows),
                "points": [
                    {
                        "pixelX": float(pixel[0]),
                        "pixelY": float(pixel[1]),
                        "worldX": float(world[0]),
                        "worldY": float(world[1]),
                    }
                    for pixel, world in zip(self.pixel_points, self.world_points)
                ],
            },
            "MoveSearchRegions": {
                "Left": self.move_search_left.to_dict(),
                "Right": self.move_search_right.to_dict(),
            },
            "SearchLines": [line.to_dict() for line in self.search_lines],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CalibrationModel":
        """Create an uncalibrated model from the calibration file layout.

        Raises:
            KeyError: If the PixelToWorld section is missing
        """
        calib = data["PixelToWorld"]
        pixel_points = []
        world_points = []
        for node in calib.get("points", []):
            pixel_points.append(
                (float(node.get("pixelX", 0.0)), float(node.get("pixelY", 0.0)))
            )
            world_points.append(
                (float(node.get("worldX", 0.0)), float(node.get("worldY", 0.0)))
            )

        regions = data.get("MoveSearchRegions", {})
        return cls(
            grid_size=(
                int(calib.get("columns", MIN_GRID_COLUMNS)),
                int(calib.get("rows", MIN_GRID_ROWS)),
            ),
            image_size=(int(data.get("imageWidth", 0)), int(data.get("imageHeight", 0))),
            pixel_points=pixel_points,
            world_points=world_points,
            move_search_left=Rect.from_dict(regions.get("Left", {})),
            move_search_right=Rect.from_dict(regions.get("Right", {})),
            search_lines=[SearchLine.from_dict(n) for n in data.get("SearchLines", [])],
        )
