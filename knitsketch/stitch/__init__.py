from .layers import (
    ImageLayer,
    LayerError,
    LayerParam,
    ParamType,
    PatternLayer,
    ProgramLayer,
    SketchLayer,
    YarnLayer,
    apply_layers,
    list_types,
)
from .sampler import IRREGULAR_TYPES, Course, Stitch, StitchCode, StitchSampler, StitchType
from .sampling import Sampling, sample_stitches, seam_points

__all__ = [
    "IRREGULAR_TYPES",
    "Course",
    "ImageLayer",
    "LayerError",
    "LayerParam",
    "ParamType",
    "PatternLayer",
    "ProgramLayer",
    "Sampling",
    "SketchLayer",
    "Stitch",
    "StitchCode",
    "StitchSampler",
    "StitchType",
    "YarnLayer",
    "apply_layers",
    "list_types",
    "sample_stitches",
    "seam_points",
]
