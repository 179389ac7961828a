"""
Scene graph records: nodes, segments, links and flow constraints.

Nodes form an arena keyed by stable integer ids (see
:class:`knitsketch.sketch.scene.Scene`); every cross reference is an id.  A
node is a tagged variant: ``kind`` says which of the optional fields are
meaningful.

* ``sketch``: closed polyline (``points`` + one ``Segment`` per vertex).
* ``curve``: open (or closed) polyline, typically a flow constraint.
* ``pcurve``: Bézier curve whose control points are sampled on other curves.
* ``image``: raster reference placed by its transform.
* ``anchor``: a single point.
* ``rect``: axis-aligned rectangle of ``width`` x ``height``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Optional

from .transform import Transform


class NodeKind(str, Enum):
    SKETCH = "sketch"
    CURVE = "curve"
    PCURVE = "pcurve"
    IMAGE = "image"
    ANCHOR = "anchor"
    RECT = "rect"


class SeamMode(str, Enum):
    AUTO = "auto"
    NONE = "none"
    SEAM = "seam"


class Degree(IntEnum):
    LINEAR = 1
    QUADRATIC = 2
    CUBIC = 3


class Transmission(str, Enum):
    """How a link relates the flow (and programs) of its two sides."""

    DEFAULT = "default"
    ALIGNED = "aligned"
    SAME = "same"
    REVERSE = "reverse"
    SYMMETRIC = "symmetric"
    UNRELATED = "unrelated"
    PARENT = "parent"


class ConstraintType(str, Enum):
    DIRECTION = "direction"
    ISOLINE = "isoline"
    SEAM = "seam"


FORWARD = 1
BACKWARD = -1
NO_DIRECTION = 0

# Valid pcurve sample slots per degree.
PCURVE_SLOTS: dict[int, tuple[int, ...]] = {
    Degree.LINEAR: (0, 3),
    Degree.QUADRATIC: (0, 1, 3),
    Degree.CUBIC: (0, 1, 2, 3),
}


@dataclass
class Segment:
    """Annotations of the segment starting at one vertex.

    ``controls`` holds the Bézier control points in node-local coordinates:
    none for lines, one for quadratic and two for cubic segments.
    """

    seam_mode: SeamMode = SeamMode.AUTO
    degree: Degree = Degree.LINEAR
    controls: list[tuple[float, float]] = field(default_factory=list)
    link_id: Optional[int] = None


@dataclass(frozen=True)
class SegmentRef:
    node_id: int
    seg_idx: int


@dataclass
class Link:
    """Symmetric association between two sketch segments.

    ``a`` is the side that created the link; it decides ``parent``
    transmission.  ``mirror`` makes the two segments run in the same
    direction (parameter ``t`` maps to ``t`` instead of ``1 - t``).
    """

    id: int
    a: SegmentRef
    b: SegmentRef
    transmission: Transmission = Transmission.DEFAULT
    mirror: bool = False

    def other(self, node_id: int, seg_idx: int) -> SegmentRef:
        if self.a == SegmentRef(node_id, seg_idx):
            return self.b
        if self.b == SegmentRef(node_id, seg_idx):
            return self.a
        raise KeyError(f"Segment ({node_id}, {seg_idx}) is not part of link {self.id}")

    def map_t(self, t: float) -> float:
        """Parameter on the other side for parameter *t* on this side."""
        return t if self.mirror else 1.0 - t


@dataclass
class FlowConstraint:
    """A child curve of a sketch that constrains its flow.

    ``weight <= 0`` means *auto*: normalised by the constraint length.
    """

    sketch_id: int
    target_id: int
    type: ConstraintType = ConstraintType.DIRECTION
    direction: int = FORWARD
    weight: float = 0.0


@dataclass(frozen=True)
class PCurveSample:
    curve_id: int
    seg_idx: int
    t: float


@dataclass
class Node:
    id: int
    kind: NodeKind
    name: str = ""
    parent: Optional[int] = None
    children: list[int] = field(default_factory=list)
    transform: Transform = field(default_factory=Transform)
    # sketch / curve / rect geometry (node-local)
    points: list[tuple[float, float]] = field(default_factory=list)
    segments: list[Segment] = field(default_factory=list)
    closed: bool = False
    # sketch-only
    constraints: dict[int, FlowConstraint] = field(default_factory=dict)
    layers: list[dict[str, Any]] = field(default_factory=list)
    # pcurve
    degree: Degree = Degree.LINEAR
    samples: list[Optional[PCurveSample]] = field(default_factory=lambda: [None] * 4)
    # image / rect
    src: str = ""
    width: float = 0.0
    height: float = 0.0
    opacity: float = 1.0

    @property
    def is_sketch(self) -> bool:
        return self.kind == NodeKind.SKETCH

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def segment_count(self) -> int:
        """Number of segments of a polyline node."""
        if self.closed:
            return len(self.points)
        return max(0, len(self.points) - 1)
