"""
Shared utilities for the knitsketch pipeline.

Provides deterministic helpers used by every stage: unit expressions,
numerical tolerances and small planar geometry routines.
"""

from .geometry import (
    as_points,
    bounding_box,
    cumulative_length,
    point_at_length,
    polyline_length,
    project_to_polyline,
    segment_distances,
    signed_area,
)
from .tolerance import COORD_TOL, TIME_TOL, TIME_UNIT_MM, coords_close, times_close
from .units import (
    LENGTH_FACTORS,
    MM_PER_INCH,
    Unit,
    UnitError,
    UnitRatio,
    parse,
    parse_as,
    parse_as_ratio,
)

__all__ = [
    # units
    "LENGTH_FACTORS",
    "MM_PER_INCH",
    "Unit",
    "UnitError",
    "UnitRatio",
    "parse",
    "parse_as",
    "parse_as_ratio",
    # tolerance
    "COORD_TOL",
    "TIME_TOL",
    "TIME_UNIT_MM",
    "coords_close",
    "times_close",
    # geometry
    "as_points",
    "bounding_box",
    "cumulative_length",
    "point_at_length",
    "polyline_length",
    "project_to_polyline",
    "segment_distances",
    "signed_area",
]
