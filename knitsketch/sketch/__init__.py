from .io import load_json, load_svg, save_json, scene_from_dict, scene_to_dict
from .scene import Scene, SceneError
from .transform import Transform
from .types import (
    ConstraintType,
    Degree,
    FlowConstraint,
    Link,
    Node,
    NodeKind,
    PCurveSample,
    SeamMode,
    Segment,
    SegmentRef,
    Transmission,
)

__all__ = [
    "ConstraintType",
    "Degree",
    "FlowConstraint",
    "Link",
    "Node",
    "NodeKind",
    "PCurveSample",
    "Scene",
    "SceneError",
    "SeamMode",
    "Segment",
    "SegmentRef",
    "Transform",
    "Transmission",
    "load_json",
    "load_svg",
    "save_json",
    "scene_from_dict",
    "scene_to_dict",
]
