"""
Mesh: the multi-level sample hierarchy of one group of linked sketches.

A group is a connected set of root sketches (through segment links).  Each
level holds one :class:`~knitsketch.mesh.layer.Layer` per sketch; level ``l``
uses the sample spacing ``eta0 / levelFactor**l`` where ``eta0`` is the
smallest bounding-box side of the group's sketches divided by
``minResolution``.  Geometry is expressed in millimetres in the global sketch
frame (global px times ``sizing.sketch.scale``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

import numpy as np

from knitsketch.config.params import Params
from knitsketch.schemas.issues import Issue, IssueLog
from knitsketch.sketch.scene import Scene
from knitsketch.sketch.segment import control_polygon, flatten_bezier
from knitsketch.sketch.transform import Transform
from knitsketch.sketch.types import ConstraintType, NodeKind, SeamMode, Transmission
from knitsketch.utilities.geometry import polyline_length

from .layer import ConstraintCurve, Layer, MeshError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkPairs:
    """Sample correspondence across one link at one level.

    ``samples_a[k]`` (in layer ``layer_a``) matches ``samples_b[k]`` (in
    layer ``layer_b``).  Without mirror the sides run in opposite directions.
    """

    link_id: int
    layer_a: int
    seg_a: int
    samples_a: np.ndarray
    layer_b: int
    seg_b: int
    samples_b: np.ndarray
    transmission: Transmission
    mirror: bool

    @property
    def coupled(self) -> bool:
        return self.transmission != Transmission.UNRELATED

    def map_frac(self, frac: float) -> float:
        return frac if self.mirror else 1.0 - frac


@dataclass
class _SketchGeometry:
    sketch_id: int
    transform: Transform
    segments: list[np.ndarray]
    constraints: list[ConstraintCurve] = field(default_factory=list)


class Mesh:
    """Layers of every level, link correspondences, and the issues found so far.

    Attributes:
        sketch_ids: Sketches of the group, in layer order.
        levels: ``levels[level][layer]`` layers, coarsest first.
        links: ``links[level]`` sample pairs of every internal link.
        scale: mm per px.
        issues: Problems found while meshing and solving.
        regions: Region graph, set once the time field is final.
    """

    def __init__(self, sketch_ids: list[int], params: Params) -> None:
        self.sketch_ids = list(sketch_ids)
        self.params = params
        self.scale = params.scale
        self.levels: list[list[Layer]] = []
        self.links: list[list[LinkPairs]] = []
        self.issues = IssueLog()
        self.transforms: dict[int, Transform] = {}
        self.seam_segments: dict[int, set[int]] = {}
        self.seam_curves: dict[int, list[np.ndarray]] = {}
        self.regions: Any = None
        self.eta0 = 0.0

    # ── Construction ─────────────────────────────────────────────────────────

    @classmethod
    def build(cls, scene: Scene, group: list[int], params: Params) -> Mesh:
        """Mesh the sketches of *group* at every level.

        Invalid sketch outlines are reported as error issues; the returned
        mesh then has no levels (``valid`` is false).
        """
        mesh = cls(group, params)
        geoms = [mesh._sketch_geometry(scene, sid) for sid in group]
        sides = []
        for g in geoms:
            pts = np.vstack(g.segments)
            extent = pts.max(axis=0) - pts.min(axis=0)
            sides.append(float(extent.min()))
        min_side = min(sides) if sides else 0.0
        if min_side <= 0:
            mesh.issues.add(Issue.error("Sketch has an empty outline", source="mesh", sketch_id=group[0]))
            return mesh
        mesh.eta0 = min_side / params.min_resolution

        internal = [
            link for link in scene.links.values()
            if link.a.node_id in group and link.b.node_id in group
        ]
        mesh._report_dangling(scene, group)
        for level in range(params.mesh_levels):
            eta = mesh.eta0 / params.level_factor ** level
            counts: dict[int, dict[int, int]] = {sid: {} for sid in group}
            for link in internal:
                ga = geoms[group.index(link.a.node_id)]
                gb = geoms[group.index(link.b.node_id)]
                la = polyline_length(ga.segments[link.a.seg_idx])
                lb = polyline_length(gb.segments[link.b.seg_idx])
                n = max(1, math.ceil(la / eta - 1e-9), math.ceil(lb / eta - 1e-9))
                counts[link.a.node_id][link.a.seg_idx] = n
                counts[link.b.node_id][link.b.seg_idx] = n
            layers = []
            try:
                for index, g in enumerate(geoms):
                    layers.append(Layer(
                        g.sketch_id, index, level, eta, g.segments,
                        constraints=g.constraints, seg_counts=counts[g.sketch_id],
                    ))
            except MeshError as exc:
                sid = geoms[len(layers)].sketch_id
                logger.debug("Meshing sketch %d failed: %s", sid, exc)
                mesh.issues.add(Issue.error(str(exc), center=exc.center, source="mesh", sketch_id=sid))
                mesh.levels = []
                mesh.links = []
                return mesh
            pairs = []
            for link in internal:
                la = layers[group.index(link.a.node_id)]
                lb = layers[group.index(link.b.node_id)]
                sa = la.segment_samples(link.a.seg_idx)
                sb = lb.segment_samples(link.b.seg_idx)
                if not link.mirror:
                    sb = sb[::-1].copy()
                pairs.append(LinkPairs(
                    link.id, la.index, link.a.seg_idx, sa, lb.index, link.b.seg_idx, sb,
                    scene.resolve_transmission(link), link.mirror,
                ))
            mesh.levels.append(layers)
            mesh.links.append(pairs)
            logger.debug(
                "Mesh level %d (eta=%.3f mm): %d samples",
                level, eta, sum(len(layer) for layer in layers),
            )
        return mesh

    def _sketch_geometry(self, scene: Scene, sketch_id: int) -> _SketchGeometry:
        node = scene.node(sketch_id)
        xform = scene.global_transform(sketch_id)
        self.transforms[sketch_id] = xform
        self.seam_segments[sketch_id] = {
            i for i, seg in enumerate(node.segments) if seg.seam_mode == SeamMode.SEAM
        }
        # flatten finely enough for the finest level
        bbox = scene.global_points(sketch_id) * self.scale
        side = float((bbox.max(axis=0) - bbox.min(axis=0)).min()) if len(bbox) else 1.0
        finest = side / self.params.min_resolution / self.params.level_factor ** (self.params.mesh_levels - 1)
        tol_px = max(finest / 4.0, 1e-6) / self.scale
        local_tol = tol_px / xform.k
        segments = []
        for i in range(node.segment_count):
            pts, _ = flatten_bezier(control_polygon(node, i), local_tol)
            segments.append(xform.apply(pts) * self.scale)
        geom = _SketchGeometry(sketch_id, xform, segments)
        for c in scene.constraints_of(sketch_id):
            target = scene.node(c.target_id)
            if target.kind == NodeKind.PCURVE and not scene.pcurve_is_valid(c.target_id):
                self.issues.add(Issue.warning(
                    "Constraint curve has missing samples", source="mesh", sketch_id=sketch_id,
                ))
                continue
            pts = scene.polyline(c.target_id, tolerance=tol_px) * self.scale
            if c.type == ConstraintType.SEAM:
                self.seam_curves.setdefault(sketch_id, []).append(pts)
                continue
            geom.constraints.append(ConstraintCurve(c.target_id, c.type, c.direction, c.weight, pts))
        return geom

    def update_seams(self, scene: Scene) -> None:
        """Refresh seam segments and seam curves from an edited *scene*.

        The meshed geometry is kept; only the seam annotations change.
        """
        tol_px = max(self.eta0 / 4.0, 1e-6) / self.scale
        self.seam_curves = {}
        for sid in self.sketch_ids:
            node = scene.node(sid)
            self.seam_segments[sid] = {
                i for i, seg in enumerate(node.segments) if seg.seam_mode == SeamMode.SEAM
            }
            for c in scene.constraints_of(sid):
                if c.type == ConstraintType.SEAM:
                    pts = scene.polyline(c.target_id, tolerance=tol_px) * self.scale
                    self.seam_curves.setdefault(sid, []).append(pts)

    def _report_dangling(self, scene: Scene, group: list[int]) -> None:
        for link in scene.links.values():
            for this, other in ((link.a, link.b), (link.b, link.a)):
                if this.node_id not in group:
                    continue
                other_node = scene.nodes.get(other.node_id)
                if other_node is not None and other_node.is_sketch and other_node.is_root:
                    continue
                pts = scene.global_points(this.node_id)
                a = pts[this.seg_idx]
                b = pts[(this.seg_idx + 1) % len(pts)]
                center = tuple(float(v) for v in (a + b) / 2 * self.scale)
                self.issues.add(Issue.warning(
                    "Linked border leads to a sketch outside the group",
                    center=center, source="mesh", sketch_id=this.node_id,
                ))

    # ── Queries ──────────────────────────────────────────────────────────────

    @property
    def valid(self) -> bool:
        return bool(self.levels)

    @property
    def finest(self) -> list[Layer]:
        return self.levels[-1]

    @property
    def finest_links(self) -> list[LinkPairs]:
        return self.links[-1]

    def layer_index(self, sketch_id: int) -> int:
        return self.sketch_ids.index(sketch_id)

    def link_at(self, layer: int, seg: int, level: int = -1) -> Optional[tuple[LinkPairs, bool]]:
        """Link pairs touching ``(layer, seg)`` and whether the layer is side ``a``."""
        for pairs in self.links[level]:
            if pairs.layer_a == layer and pairs.seg_a == seg:
                return pairs, True
            if pairs.layer_b == layer and pairs.seg_b == seg:
                return pairs, False
        return None

    def time_range(self) -> tuple[float, float]:
        times = np.concatenate([layer.time for layer in self.finest])
        return float(times.min()), float(times.max())

    def to_local(self, layer: int, points) -> np.ndarray:
        """Convert global mm points of *layer* into its sketch-local px."""
        xform = self.transforms[self.sketch_ids[layer]]
        return xform.inverse().apply(np.atleast_2d(points) / self.scale)

    def to_dict(self) -> dict[str, Any]:
        return {
            "sketches": list(self.sketch_ids),
            "eta0": self.eta0,
            "layers": [layer.to_dict() for layer in self.finest] if self.valid else [],
            "issues": [issue.to_dict() for issue in self.issues],
        }
