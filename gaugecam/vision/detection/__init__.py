"""Bowtie target and water line detection.

Main Classes:
    BowtieTemplateBank: Rotated bowtie templates with coarse to fine matching
    FindLine: Row sum and RANSAC water line search with move target checks
"""

from .bowtie import TEMPLATE_COUNT, BowtieTemplateBank
from .findline import FindLine

__all__ = ["BowtieTemplateBank", "FindLine", "TEMPLATE_COUNT"]
