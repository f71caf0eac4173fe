"""Target calibration.

Main Classes:
    Calib: Fits pixel/world homographies over the bowtie grid and derives
        the move search regions and water line search swath
    CalibrationModel: Calibration data and its JSON file layout
"""

from .calib import Calib, calc_search_lines
from .model import MIN_GRID_COLUMNS, MIN_GRID_ROWS, CalibrationModel

__all__ = [
    "Calib",
    "CalibrationModel",
    "calc_search_lines",
    "MIN_GRID_COLUMNS",
    "MIN_GRID_ROWS",
]
