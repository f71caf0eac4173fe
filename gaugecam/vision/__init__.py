"""Vision package for water level measurement.

Provides:
- Pixel/world calibration from a bowtie marker grid
- Bowtie marker matching and target drift detection
- Water line search with robust line fitting
- Measurement orchestration in world units
"""

from .calibration import Calib, CalibrationModel
from .detection import BowtieTemplateBank, FindLine
from .measurement import Measurement, WaterLevelMeasurer
from .models import (
    ErrorReason,
    FindLineResult,
    FindPointSet,
    Rect,
    Result,
    SearchLine,
    Status,
    TemplateMatchItem,
)

__all__ = [
    "Calib",
    "CalibrationModel",
    "BowtieTemplateBank",
    "FindLine",
    "Measurement",
    "WaterLevelMeasurer",
    "ErrorReason",
    "FindLineResult",
    "FindPointSet",
    "Rect",
    "Result",
    "SearchLine",
    "Status",
    "TemplateMatchItem",
]
