"""
Scene: the arena of sketch nodes and their editing operations.

Every node and link lives in one dict keyed by a stable integer id, so the
back references of the scene graph (parent / children, segment / link,
sketch / constraint target, pcurve / sampled curve) are plain ids.

Editing operations keep the graph invariants:

* segment count equals vertex count for closed nodes;
* a link is symmetric: both of its segments hold its id;
* a constraint targets a curve (or pcurve) child of the constraining sketch,
  at most one constraint per target;
* a pcurve never samples itself, directly or through other pcurves.

``validate()`` re-checks all of them and returns issues instead of raising.
"""

from __future__ import annotations

import copy
import logging
from typing import Iterable, Iterator, Optional, Sequence

import numpy as np

from knitsketch.schemas.issues import Issue
from knitsketch.sketch.segment import (
    bezier_point,
    control_polygon,
    default_controls,
    flatten_bezier,
    flatten_node,
    segment_length,
    split_bezier,
)
from knitsketch.sketch.transform import Transform
from knitsketch.sketch.types import (
    FORWARD,
    PCURVE_SLOTS,
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

logger = logging.getLogger(__name__)

_POLYLINE_KINDS = (NodeKind.SKETCH, NodeKind.CURVE, NodeKind.RECT)
_VERTEX_KINDS = (NodeKind.SKETCH, NodeKind.CURVE, NodeKind.RECT, NodeKind.ANCHOR)
_LINK_LENGTH_TOL = 0.05


class SceneError(ValueError):
    """Raised when an edit would break a scene graph invariant."""


def _as_point_list(points: Iterable[Sequence[float]]) -> list[tuple[float, float]]:
    return [(float(p[0]), float(p[1])) for p in points]


class Scene:
    """Arena of scene nodes and links."""

    def __init__(self) -> None:
        self.nodes: dict[int, Node] = {}
        self.links: dict[int, Link] = {}
        self._next_id = 1

    # ── Lookup ───────────────────────────────────────────────────────────────

    def _new_id(self) -> int:
        nid = self._next_id
        self._next_id += 1
        return nid

    def node(self, node_id: int) -> Node:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise SceneError(f"No node with id {node_id}") from None

    def link(self, link_id: int) -> Link:
        try:
            return self.links[link_id]
        except KeyError:
            raise SceneError(f"No link with id {link_id}") from None

    def __contains__(self, node_id: int) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def roots(self) -> list[Node]:
        return [n for n in self.nodes.values() if n.parent is None]

    def sketches(self, root_only: bool = False) -> list[Node]:
        return [
            n for n in self.nodes.values()
            if n.kind == NodeKind.SKETCH and (n.parent is None or not root_only)
        ]

    def descendants(self, node_id: int) -> Iterator[Node]:
        for cid in self.node(node_id).children:
            child = self.nodes[cid]
            yield child
            yield from self.descendants(cid)

    def copy(self) -> Scene:
        return copy.deepcopy(self)

    # ── Transforms ───────────────────────────────────────────────────────────

    def global_transform(self, node_id: int) -> Transform:
        node = self.node(node_id)
        xform = node.transform
        while node.parent is not None:
            node = self.nodes[node.parent]
            xform = node.transform.compose(xform)
        return xform

    def global_points(self, node_id: int) -> np.ndarray:
        node = self.node(node_id)
        if not node.points:
            return np.zeros((0, 2))
        return self.global_transform(node_id).apply(node.points)

    def to_frame(self, node_id: int, frame_id: Optional[int]) -> Transform:
        """Transform from the local frame of *node_id* to the local frame of *frame_id*."""
        glob = self.global_transform(node_id)
        if frame_id is None:
            return glob
        return self.global_transform(frame_id).inverse().compose(glob)

    # ── Creation ─────────────────────────────────────────────────────────────

    def _add(self, node: Node, parent: Optional[int]) -> int:
        self.nodes[node.id] = node
        if parent is not None:
            self.node(parent).children.append(node.id)
            node.parent = parent
        return node.id

    def create_sketch(
        self,
        points: Iterable[Sequence[float]],
        parent: Optional[int] = None,
        name: str = "",
        transform: Optional[Transform] = None,
    ) -> int:
        pts = _as_point_list(points)
        if len(pts) < 3:
            raise SceneError(f"A sketch needs at least 3 vertices, got {len(pts)}")
        node = Node(
            id=self._new_id(),
            kind=NodeKind.SKETCH,
            name=name or f"sketch{self._next_id - 1}",
            transform=transform or Transform(),
            points=pts,
            segments=[Segment() for _ in pts],
            closed=True,
        )
        return self._add(node, parent)

    def create_curve(
        self,
        points: Iterable[Sequence[float]],
        parent: Optional[int] = None,
        open: bool = True,
        name: str = "",
        transform: Optional[Transform] = None,
    ) -> int:
        pts = _as_point_list(points)
        if len(pts) < 2:
            raise SceneError(f"A curve needs at least 2 vertices, got {len(pts)}")
        node = Node(
            id=self._new_id(),
            kind=NodeKind.CURVE,
            name=name,
            transform=transform or Transform(),
            points=pts,
            closed=not open,
        )
        node.segments = [Segment() for _ in range(node.segment_count)]
        return self._add(node, parent)

    def create_pcurve(
        self,
        parent: Optional[int] = None,
        degree: int = Degree.LINEAR,
        samples: Optional[dict[int, PCurveSample]] = None,
        name: str = "",
    ) -> int:
        if degree not in PCURVE_SLOTS:
            raise SceneError(f"Invalid pcurve degree {degree}")
        node = Node(id=self._new_id(), kind=NodeKind.PCURVE, name=name, degree=Degree(degree))
        nid = self._add(node, parent)
        for slot, sample in (samples or {}).items():
            self.set_pcurve_sample(nid, slot, sample)
        return nid

    def create_image(
        self,
        src: str,
        width: float,
        height: float,
        parent: Optional[int] = None,
        transform: Optional[Transform] = None,
        opacity: float = 1.0,
    ) -> int:
        if width <= 0 or height <= 0:
            raise SceneError(f"Invalid image size {width}x{height}")
        node = Node(
            id=self._new_id(),
            kind=NodeKind.IMAGE,
            transform=transform or Transform(),
            src=src,
            width=float(width),
            height=float(height),
            opacity=float(opacity),
        )
        return self._add(node, parent)

    def create_anchor(self, point: Sequence[float], parent: Optional[int] = None) -> int:
        node = Node(id=self._new_id(), kind=NodeKind.ANCHOR, points=_as_point_list([point]))
        return self._add(node, parent)

    def create_rectangle(
        self, x: float, y: float, width: float, height: float, parent: Optional[int] = None
    ) -> int:
        if width <= 0 or height <= 0:
            raise SceneError(f"Invalid rectangle size {width}x{height}")
        pts = [(0.0, 0.0), (width, 0.0), (width, height), (0.0, height)]
        node = Node(
            id=self._new_id(),
            kind=NodeKind.RECT,
            transform=Transform(x=float(x), y=float(y)),
            points=_as_point_list(pts),
            segments=[Segment() for _ in pts],
            closed=True,
            width=float(width),
            height=float(height),
        )
        return self._add(node, parent)

    # ── Deletion and hierarchy ───────────────────────────────────────────────

    def delete(self, node_id: int) -> None:
        """Remove a node, its descendants and every reference to them."""
        node = self.node(node_id)
        for cid in list(node.children):
            self.delete(cid)
        for i, seg in enumerate(node.segments):
            if seg.link_id is not None:
                self.clear_link(node_id, i)
        if node.parent is not None:
            parent = self.nodes[node.parent]
            parent.children.remove(node_id)
            parent.constraints.pop(node_id, None)
        for other in self.nodes.values():
            if other.kind == NodeKind.PCURVE:
                other.samples = [
                    s if s is None or s.curve_id != node_id else None for s in other.samples
                ]
        del self.nodes[node_id]
        logger.debug("Deleted node %d", node_id)

    def _is_ancestor(self, ancestor_id: int, node_id: int) -> bool:
        node = self.nodes.get(node_id)
        while node is not None:
            if node.id == ancestor_id:
                return True
            node = self.nodes.get(node.parent) if node.parent is not None else None
        return False

    def set_parent(self, child_id: int, parent_id: Optional[int]) -> None:
        """Reparent a node, keeping its global geometry."""
        child = self.node(child_id)
        if parent_id is not None:
            self.node(parent_id)
            if self._is_ancestor(child_id, parent_id):
                raise SceneError(f"Cannot parent node {child_id} under its descendant {parent_id}")
        glob = self.global_transform(child_id)
        if child.parent is not None:
            old = self.nodes[child.parent]
            old.children.remove(child_id)
            old.constraints.pop(child_id, None)
        child.parent = None
        if parent_id is None:
            child.transform = glob
        else:
            self.nodes[parent_id].children.append(child_id)
            child.parent = parent_id
            child.transform = self.global_transform(parent_id).inverse().compose(glob)

    def unparent(self, child_id: int) -> None:
        self.set_parent(child_id, None)

    # ── Transform edits ──────────────────────────────────────────────────────

    def apply_scale(self, node_id: int, recursive: bool = False) -> None:
        """Commit the local transform into vertex coordinates.

        The node's transform becomes the identity and its children's
        transforms are pre-composed with the old one, so no global position
        changes.
        """
        node = self.node(node_id)
        if node.kind not in _VERTEX_KINDS:
            raise SceneError(f"Cannot apply the transform of a {node.kind.value} node")
        xform = node.transform
        if not xform.is_identity:
            node.points = _as_point_list(xform.apply(node.points))
            for seg in node.segments:
                if seg.controls:
                    seg.controls = _as_point_list(xform.apply(seg.controls))
            if node.kind == NodeKind.RECT:
                node.width *= xform.k
                node.height *= xform.k
            for cid in node.children:
                child = self.nodes[cid]
                child.transform = xform.compose(child.transform)
            node.transform = Transform()
        if recursive:
            for cid in node.children:
                if self.nodes[cid].kind in _VERTEX_KINDS:
                    self.apply_scale(cid, recursive=True)

    def mirror(self, node_id: int, axis: str) -> None:
        node = self.node(node_id)
        node.transform = node.transform.mirrored(axis)

    def set_transform(self, node_id: int, transform: Transform) -> None:
        self.node(node_id).transform = transform

    # ── Segments ─────────────────────────────────────────────────────────────

    def _segment(self, node_id: int, seg_idx: int) -> Segment:
        node = self.node(node_id)
        if node.kind not in _POLYLINE_KINDS:
            raise SceneError(f"Node {node_id} ({node.kind.value}) has no segments")
        if not 0 <= seg_idx < node.segment_count:
            raise SceneError(f"Segment {seg_idx} out of range for node {node_id}")
        return node.segments[seg_idx]

    def set_seam_mode(self, node_id: int, seg_idx: int, mode: SeamMode) -> None:
        self._segment(node_id, seg_idx).seam_mode = SeamMode(mode)

    def set_degree(self, node_id: int, seg_idx: int, degree: int) -> None:
        """Change a segment's degree, keeping its shape where possible."""
        seg = self._segment(node_id, seg_idx)
        degree = Degree(degree)
        if degree == seg.degree:
            return
        ctrl = control_polygon(self.nodes[node_id], seg_idx)
        p0, p1 = ctrl[0], ctrl[-1]
        if degree == Degree.LINEAR:
            controls: list[tuple[float, float]] = []
        elif seg.degree == Degree.QUADRATIC and degree == Degree.CUBIC:
            c = ctrl[1]
            controls = _as_point_list([p0 + 2.0 / 3.0 * (c - p0), p1 + 2.0 / 3.0 * (c - p1)])
        elif seg.degree == Degree.CUBIC and degree == Degree.QUADRATIC:
            c = (3.0 * (ctrl[1] + ctrl[2]) - (p0 + p1)) / 4.0
            controls = _as_point_list([c])
        else:
            controls = default_controls(p0, p1, degree)
        seg.degree = degree
        seg.controls = controls

    def set_control(self, node_id: int, seg_idx: int, index: int, point: Sequence[float]) -> None:
        seg = self._segment(node_id, seg_idx)
        if not 0 <= index < len(seg.controls):
            raise SceneError(f"Segment {seg_idx} of node {node_id} has no control {index}")
        seg.controls[index] = (float(point[0]), float(point[1]))

    def segment_length(self, node_id: int, seg_idx: int, global_frame: bool = True) -> float:
        self._segment(node_id, seg_idx)
        length = segment_length(self.nodes[node_id], seg_idx)
        if global_frame:
            length *= self.global_transform(node_id).k
        return length

    def _split_segment(self, node_id: int, seg_idx: int, t: float) -> None:
        node = self.nodes[node_id]
        left, right = split_bezier(control_polygon(node, seg_idx), t)
        seg = node.segments[seg_idx]
        for link in self.links.values():
            for side in ("a", "b"):
                ref = getattr(link, side)
                if ref.node_id == node_id and ref.seg_idx > seg_idx:
                    setattr(link, side, SegmentRef(node_id, ref.seg_idx + 1))
        new_seg = Segment(
            seam_mode=seg.seam_mode,
            degree=seg.degree,
            controls=_as_point_list(right[1:-1]),
        )
        seg.controls = _as_point_list(left[1:-1])
        node.points.insert(seg_idx + 1, (float(left[-1][0]), float(left[-1][1])))
        node.segments.insert(seg_idx + 1, new_seg)

    def divide_segment(self, node_id: int, seg_idx: int, t: float = 0.5) -> int:
        """Insert a vertex at parameter *t* of a segment.

        A linked segment is divided at the matching parameter on the other
        side, and its link is replaced by two links.

        Returns:
            The index of the new vertex.
        """
        seg = self._segment(node_id, seg_idx)
        if not 0.0 < t < 1.0:
            raise SceneError(f"Division parameter must be in (0, 1), got {t}")
        link = self.links.get(seg.link_id) if seg.link_id is not None else None
        if link is None:
            self._split_segment(node_id, seg_idx, t)
            return seg_idx + 1
        this_is_a = link.a == SegmentRef(node_id, seg_idx)
        other = link.other(node_id, seg_idx)
        transmission, mirror = link.transmission, link.mirror
        self.clear_link(node_id, seg_idx)
        i, j = seg_idx, other.seg_idx
        self._split_segment(node_id, i, t)
        if other.node_id == node_id and j > i:
            j += 1
        self._split_segment(other.node_id, j, t if mirror else 1.0 - t)
        if other.node_id == node_id and i > j:
            i += 1
        pairs = [(i, j), (i + 1, j + 1)] if mirror else [(i, j + 1), (i + 1, j)]
        for si, sj in pairs:
            if this_is_a:
                self.set_link(node_id, si, other.node_id, sj, transmission, mirror)
            else:
                self.set_link(other.node_id, sj, node_id, si, transmission, mirror)
        return i + 1

    # ── Links ────────────────────────────────────────────────────────────────

    def set_link(
        self,
        node_a: int,
        seg_a: int,
        node_b: int,
        seg_b: int,
        transmission: Transmission = Transmission.DEFAULT,
        mirror: bool = False,
    ) -> int:
        """Link two sketch segments; existing links on either side are cleared."""
        for nid, sid in ((node_a, seg_a), (node_b, seg_b)):
            self._segment(nid, sid)
            if self.nodes[nid].kind != NodeKind.SKETCH:
                raise SceneError(f"Only sketch segments can be linked (node {nid})")
        if (node_a, seg_a) == (node_b, seg_b):
            raise SceneError("Cannot link a segment to itself")
        self.clear_link(node_a, seg_a)
        self.clear_link(node_b, seg_b)
        link = Link(
            id=self._new_id(),
            a=SegmentRef(node_a, seg_a),
            b=SegmentRef(node_b, seg_b),
            transmission=Transmission(transmission),
            mirror=bool(mirror),
        )
        self.links[link.id] = link
        self.nodes[node_a].segments[seg_a].link_id = link.id
        self.nodes[node_b].segments[seg_b].link_id = link.id
        logger.debug("Linked (%d, %d) <-> (%d, %d)", node_a, seg_a, node_b, seg_b)
        return link.id

    def clear_link(self, node_id: int, seg_idx: int) -> None:
        seg = self._segment(node_id, seg_idx)
        if seg.link_id is None:
            return
        link = self.links.pop(seg.link_id, None)
        seg.link_id = None
        if link is not None:
            for ref in (link.a, link.b):
                other = self.nodes.get(ref.node_id)
                if other is not None and ref.seg_idx < len(other.segments):
                    if other.segments[ref.seg_idx].link_id == link.id:
                        other.segments[ref.seg_idx].link_id = None

    def get_link(self, node_id: int, seg_idx: int) -> Optional[Link]:
        seg = self._segment(node_id, seg_idx)
        return self.links.get(seg.link_id) if seg.link_id is not None else None

    def set_transmission(
        self,
        node_id: int,
        seg_idx: int,
        transmission: Transmission,
        mirror: Optional[bool] = None,
    ) -> None:
        link = self.get_link(node_id, seg_idx)
        if link is None:
            raise SceneError(f"Segment {seg_idx} of node {node_id} has no link")
        link.transmission = Transmission(transmission)
        if mirror is not None:
            link.mirror = bool(mirror)

    def resolve_transmission(self, link: Link) -> Transmission:
        """Concrete transmission of a link.

        ``default`` is ``unrelated`` across a seam and ``aligned`` otherwise.
        ``parent`` follows the seam mode of the creating side only and never
        alters the link's mirror flag.
        """
        seam_a = self.nodes[link.a.node_id].segments[link.a.seg_idx].seam_mode == SeamMode.SEAM
        seam_b = self.nodes[link.b.node_id].segments[link.b.seg_idx].seam_mode == SeamMode.SEAM
        if link.transmission == Transmission.DEFAULT:
            return Transmission.UNRELATED if seam_a or seam_b else Transmission.ALIGNED
        if link.transmission == Transmission.PARENT:
            return Transmission.UNRELATED if seam_a else Transmission.ALIGNED
        return link.transmission

    def linked_groups(self) -> list[list[int]]:
        """Connected groups of root sketches through links, ordered by smallest id."""
        roots = sorted(n.id for n in self.sketches(root_only=True))
        parent = {r: r for r in roots}

        def find(x: int) -> int:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for link in self.links.values():
            a, b = link.a.node_id, link.b.node_id
            if a in parent and b in parent:
                ra, rb = find(a), find(b)
                if ra != rb:
                    parent[max(ra, rb)] = min(ra, rb)
        groups: dict[int, list[int]] = {}
        for r in roots:
            groups.setdefault(find(r), []).append(r)
        return [groups[k] for k in sorted(groups)]

    # ── Constraints ──────────────────────────────────────────────────────────

    def set_constraint(
        self,
        sketch_id: int,
        target_id: int,
        type: ConstraintType = ConstraintType.DIRECTION,
        direction: int = FORWARD,
        weight: float = 0.0,
    ) -> FlowConstraint:
        sketch = self.node(sketch_id)
        target = self.node(target_id)
        if sketch.kind != NodeKind.SKETCH:
            raise SceneError(f"Constraints belong to sketches, node {sketch_id} is a {sketch.kind.value}")
        if target.kind not in (NodeKind.CURVE, NodeKind.PCURVE):
            raise SceneError(f"Constraint target {target_id} must be a curve")
        if target.parent != sketch_id:
            raise SceneError(f"Constraint target {target_id} is not a child of sketch {sketch_id}")
        if direction not in (-1, 0, 1):
            raise SceneError(f"Constraint direction must be -1, 0 or 1, got {direction}")
        constraint = FlowConstraint(
            sketch_id=sketch_id,
            target_id=target_id,
            type=ConstraintType(type),
            direction=int(direction),
            weight=float(weight),
        )
        sketch.constraints[target_id] = constraint
        return constraint

    def clear_constraint(self, sketch_id: int, target_id: int) -> None:
        self.node(sketch_id).constraints.pop(target_id, None)

    def constraints_of(self, sketch_id: int) -> list[FlowConstraint]:
        return list(self.node(sketch_id).constraints.values())

    # ── PCurves ──────────────────────────────────────────────────────────────

    def _samples_reach(self, pcurve_id: int, curve_id: int, seen: set[int]) -> bool:
        """True if *curve_id* (transitively) samples *pcurve_id*."""
        if curve_id == pcurve_id:
            return True
        if curve_id in seen:
            return False
        seen.add(curve_id)
        node = self.nodes.get(curve_id)
        if node is None or node.kind != NodeKind.PCURVE:
            return False
        return any(
            s is not None and self._samples_reach(pcurve_id, s.curve_id, seen)
            for s in node.samples
        )

    def set_pcurve_sample(self, pcurve_id: int, slot: int, sample: Optional[PCurveSample]) -> None:
        node = self.node(pcurve_id)
        if node.kind != NodeKind.PCURVE:
            raise SceneError(f"Node {pcurve_id} is not a pcurve")
        if slot not in PCURVE_SLOTS[node.degree]:
            raise SceneError(f"Slot {slot} is not valid for a degree-{int(node.degree)} pcurve")
        if sample is not None:
            target = self.node(sample.curve_id)
            if self._samples_reach(pcurve_id, sample.curve_id, set()):
                raise SceneError(f"PCurve {pcurve_id} cannot sample itself")
            if target.kind == NodeKind.PCURVE:
                if sample.seg_idx != 0:
                    raise SceneError("A pcurve has a single segment (index 0)")
            elif target.kind in _POLYLINE_KINDS:
                self._segment(sample.curve_id, sample.seg_idx)
            else:
                raise SceneError(f"Cannot sample a {target.kind.value} node")
            if not 0.0 <= sample.t <= 1.0:
                raise SceneError(f"Sample parameter must be in [0, 1], got {sample.t}")
        node.samples[slot] = sample

    def set_pcurve_degree(self, pcurve_id: int, degree: int) -> None:
        node = self.node(pcurve_id)
        if degree not in PCURVE_SLOTS:
            raise SceneError(f"Invalid pcurve degree {degree}")
        node.degree = Degree(degree)

    def sample_point(self, sample: PCurveSample) -> np.ndarray:
        """Global position of a pcurve sample."""
        target = self.node(sample.curve_id)
        if target.kind == NodeKind.PCURVE:
            local = bezier_point(self.pcurve_controls(target.id), sample.t)
        else:
            local = bezier_point(control_polygon(target, sample.seg_idx), sample.t)
        return self.global_transform(target.id).apply(local)

    def pcurve_controls(self, pcurve_id: int) -> np.ndarray:
        """Control polygon of a pcurve in its local frame.

        Raises:
            SceneError: If a slot required by the degree is empty.
        """
        node = self.node(pcurve_id)
        inv = self.global_transform(pcurve_id).inverse()
        ctrl = []
        for slot in PCURVE_SLOTS[node.degree]:
            sample = node.samples[slot]
            if sample is None:
                raise SceneError(f"PCurve {pcurve_id} is missing sample slot {slot}")
            ctrl.append(inv.apply(self.sample_point(sample)))
        return np.array(ctrl)

    def pcurve_is_valid(self, pcurve_id: int) -> bool:
        node = self.node(pcurve_id)
        return all(node.samples[slot] is not None for slot in PCURVE_SLOTS[node.degree])

    # ── Geometry ─────────────────────────────────────────────────────────────

    def polyline(
        self, node_id: int, tolerance: float = 0.1, frame: Optional[int] = None
    ) -> np.ndarray:
        """Flattened polyline of a curve, sketch, rect or pcurve in *frame*'s coordinates.

        *tolerance* is expressed in the target frame.  ``frame=None`` means global.
        """
        node = self.node(node_id)
        xform = self.to_frame(node_id, frame)
        local_tol = tolerance / xform.k
        if node.kind == NodeKind.PCURVE:
            pts, _ = flatten_bezier(self.pcurve_controls(node_id), local_tol)
        elif node.kind in _POLYLINE_KINDS:
            pts, _, _ = flatten_node(node, local_tol)
        else:
            raise SceneError(f"A {node.kind.value} node has no polyline")
        return xform.apply(pts)

    # ── Validation ───────────────────────────────────────────────────────────

    def validate(self) -> list[Issue]:
        """Check every graph invariant; errors for broken ones, warnings for suspicious links."""
        issues: list[Issue] = []

        def error(msg: str, nid: Optional[int] = None) -> None:
            issues.append(Issue.error(msg, source="scene", sketch_id=nid))

        for node in self.nodes.values():
            if node.parent is not None:
                parent = self.nodes.get(node.parent)
                if parent is None or node.id not in parent.children:
                    error(f"Node {node.id} has a dangling parent", node.id)
            for cid in node.children:
                if cid not in self.nodes or self.nodes[cid].parent != node.id:
                    error(f"Node {node.id} has a dangling child {cid}", node.id)
            if node.kind in _POLYLINE_KINDS and len(node.segments) != node.segment_count:
                error(f"Node {node.id} has {len(node.segments)} segments for {len(node.points)} vertices", node.id)
            for seg in node.segments:
                if len(seg.controls) != int(seg.degree) - 1:
                    error(f"Node {node.id} has a degree-{int(seg.degree)} segment with {len(seg.controls)} controls", node.id)
                if seg.link_id is not None and seg.link_id not in self.links:
                    error(f"Node {node.id} references missing link {seg.link_id}", node.id)
            for target_id, constraint in node.constraints.items():
                target = self.nodes.get(target_id)
                if target is None or target.parent != node.id or constraint.target_id != target_id:
                    error(f"Sketch {node.id} has a constraint on a curve it does not own", node.id)
            if node.kind == NodeKind.PCURVE:
                for slot, sample in enumerate(node.samples):
                    if sample is None:
                        continue
                    if slot not in PCURVE_SLOTS[node.degree]:
                        error(f"PCurve {node.id} uses invalid slot {slot}", node.id)
                    if sample.curve_id not in self.nodes:
                        error(f"PCurve {node.id} samples missing curve {sample.curve_id}", node.id)
                    elif self._samples_reach(node.id, sample.curve_id, set()):
                        error(f"PCurve {node.id} samples itself", node.id)

        for link in self.links.values():
            ok = True
            for ref in (link.a, link.b):
                node = self.nodes.get(ref.node_id)
                if (
                    node is None
                    or ref.seg_idx >= len(node.segments)
                    or node.segments[ref.seg_idx].link_id != link.id
                ):
                    error(f"Link {link.id} is not symmetric", ref.node_id)
                    ok = False
            if not ok:
                continue
            la = self.segment_length(link.a.node_id, link.a.seg_idx)
            lb = self.segment_length(link.b.node_id, link.b.seg_idx)
            if abs(la - lb) > _LINK_LENGTH_TOL * max(la, lb):
                issues.append(Issue.warning(
                    f"Linked segments have different lengths ({la:.1f} vs {lb:.1f})",
                    source="scene",
                    sketch_id=link.a.node_id,
                ))
        return issues
