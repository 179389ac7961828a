"""
Numerical tolerances shared by the whole pipeline.

Sketch coordinates are compared in millimetres; time values are compared in
normalized time units, where one unit is ``TIME_UNIT_MM`` millimetres of
knitting along the flow.
"""

from __future__ import annotations

import math

COORD_TOL: float = 1e-6
TIME_TOL: float = 1e-3
TIME_UNIT_MM: float = 10.0


def coords_close(a: tuple[float, float], b: tuple[float, float], tol: float = COORD_TOL) -> bool:
    """True if two sketch points coincide within *tol* (mm)."""
    return math.hypot(a[0] - b[0], a[1] - b[1]) <= tol


def times_close(t0: float, t1: float, tol: float = TIME_TOL) -> bool:
    """True if two times (in mm) are equal within *tol* normalized units."""
    return abs(t0 - t1) <= tol * TIME_UNIT_MM
