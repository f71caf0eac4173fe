"""Vision utilities package.

Provides overlay drawing for calibration and line find results.
"""

from .visualization import (
    GaugeVisualization,
    draw_calibration,
    draw_find_result,
    draw_move_targets,
)

__all__ = [
    "GaugeVisualization",
    "draw_calibration",
    "draw_find_result",
    "draw_move_targets",
]
