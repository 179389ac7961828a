from .checks import run_checks
from .geodesic import GeodesicGraph
from .isoline import IsolineChain, isolines
from .layer import BORDER, INTERIOR, INTERMEDIATE, ConstraintCurve, Layer, MeshError
from .mesh import LinkPairs, Mesh
from .regions import ReducedRegion, Region, RegionGraph, build_regions
from .solver import TimeSolver, solve

__all__ = [
    "BORDER",
    "INTERIOR",
    "INTERMEDIATE",
    "ConstraintCurve",
    "GeodesicGraph",
    "IsolineChain",
    "Layer",
    "LinkPairs",
    "Mesh",
    "MeshError",
    "ReducedRegion",
    "Region",
    "RegionGraph",
    "TimeSolver",
    "build_regions",
    "isolines",
    "run_checks",
    "solve",
]
