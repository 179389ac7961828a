"""
Scene import / export.

JSON document
-------------
``scene_to_dict`` / ``scene_from_dict`` convert a :class:`Scene` to a plain
dict (and back) without loss; ``save_json`` / ``load_json`` add file I/O::

    {"version": 1, "nextId": 9,
     "nodes": [{"id": 1, "kind": "sketch", "points": [[0, 0], ...],
                "segments": [{"seamMode": "auto", "degree": 1,
                              "controls": [], "link": null}, ...], ...}],
     "links": [{"id": 5, "a": [1, 0], "b": [2, 2],
                "transmission": "default", "mirror": false}]}

SVG
---
``load_svg`` turns ``<path>``, ``<polygon>``, ``<polyline>`` and ``<rect>``
elements into nodes: closed shapes become sketches, open ones curves.  SVG
has its y axis pointing down; imported coordinates are flipped so that the
drawing's "up" is the sketch's ``+y``.  Path data may use every command;
smooth curves reflect the previous control point and elliptical arcs become
cubic Béziers of at most a quarter turn each.
"""

from __future__ import annotations

import json
import logging
import math
import re
from pathlib import Path
from typing import Any, Optional, Union
from xml.etree import ElementTree as ET

from knitsketch.sketch.scene import Scene, SceneError
from knitsketch.sketch.transform import Transform
from knitsketch.sketch.types import (
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

FORMAT_VERSION = 1

# ── JSON ─────────────────────────────────────────────────────────────────────


def _segment_to_dict(seg: Segment) -> dict[str, Any]:
    return {
        "seamMode": seg.seam_mode.value,
        "degree": int(seg.degree),
        "controls": [list(c) for c in seg.controls],
        "link": seg.link_id,
    }


def _node_to_dict(node: Node) -> dict[str, Any]:
    return {
        "id": node.id,
        "kind": node.kind.value,
        "name": node.name,
        "parent": node.parent,
        "children": list(node.children),
        "transform": node.transform.to_dict(),
        "points": [list(p) for p in node.points],
        "segments": [_segment_to_dict(s) for s in node.segments],
        "closed": node.closed,
        "constraints": [
            {
                "target": c.target_id,
                "type": c.type.value,
                "direction": c.direction,
                "weight": c.weight,
            }
            for c in node.constraints.values()
        ],
        "layers": [dict(layer) for layer in node.layers],
        "degree": int(node.degree),
        "samples": [
            None if s is None else {"curve": s.curve_id, "segment": s.seg_idx, "t": s.t}
            for s in node.samples
        ],
        "src": node.src,
        "width": node.width,
        "height": node.height,
        "opacity": node.opacity,
    }


def scene_to_dict(scene: Scene) -> dict[str, Any]:
    return {
        "version": FORMAT_VERSION,
        "nextId": scene._next_id,
        "nodes": [_node_to_dict(n) for n in scene.nodes.values()],
        "links": [
            {
                "id": link.id,
                "a": [link.a.node_id, link.a.seg_idx],
                "b": [link.b.node_id, link.b.seg_idx],
                "transmission": link.transmission.value,
                "mirror": link.mirror,
            }
            for link in scene.links.values()
        ],
    }


def _node_from_dict(data: dict[str, Any]) -> Node:
    nid = int(data["id"])
    node = Node(
        id=nid,
        kind=NodeKind(data["kind"]),
        name=data.get("name", ""),
        parent=data.get("parent"),
        children=[int(c) for c in data.get("children", [])],
        transform=Transform.from_dict(data.get("transform", {})),
        points=[(float(p[0]), float(p[1])) for p in data.get("points", [])],
        segments=[
            Segment(
                seam_mode=SeamMode(s.get("seamMode", "auto")),
                degree=Degree(s.get("degree", 1)),
                controls=[(float(c[0]), float(c[1])) for c in s.get("controls", [])],
                link_id=s.get("link"),
            )
            for s in data.get("segments", [])
        ],
        closed=bool(data.get("closed", False)),
        layers=[dict(layer) for layer in data.get("layers", [])],
        degree=Degree(data.get("degree", 1)),
        src=data.get("src", ""),
        width=float(data.get("width", 0.0)),
        height=float(data.get("height", 0.0)),
        opacity=float(data.get("opacity", 1.0)),
    )
    for c in data.get("constraints", []):
        node.constraints[int(c["target"])] = FlowConstraint(
            sketch_id=nid,
            target_id=int(c["target"]),
            type=ConstraintType(c.get("type", "direction")),
            direction=int(c.get("direction", 1)),
            weight=float(c.get("weight", 0.0)),
        )
    samples = data.get("samples", [None] * 4)
    node.samples = [
        None if s is None else PCurveSample(int(s["curve"]), int(s["segment"]), float(s["t"]))
        for s in samples
    ]
    return node


def scene_from_dict(data: dict[str, Any]) -> Scene:
    """Rebuild a scene from :func:`scene_to_dict` output.

    Raises:
        SceneError: On an unsupported version or a malformed document.
    """
    version = data.get("version")
    if version != FORMAT_VERSION:
        raise SceneError(f"Unsupported scene document version {version!r}")
    scene = Scene()
    try:
        for nd in data.get("nodes", []):
            node = _node_from_dict(nd)
            scene.nodes[node.id] = node
        for ld in data.get("links", []):
            link = Link(
                id=int(ld["id"]),
                a=SegmentRef(int(ld["a"][0]), int(ld["a"][1])),
                b=SegmentRef(int(ld["b"][0]), int(ld["b"][1])),
                transmission=Transmission(ld.get("transmission", "default")),
                mirror=bool(ld.get("mirror", False)),
            )
            scene.links[link.id] = link
    except (KeyError, TypeError, ValueError) as exc:
        raise SceneError(f"Malformed scene document: {exc}") from exc
    used = list(scene.nodes) + list(scene.links)
    scene._next_id = max([int(data.get("nextId", 1)), *(i + 1 for i in used)])
    return scene


def save_json(scene: Scene, path: Union[str, Path]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(scene_to_dict(scene), f, indent=2)


def load_json(path: Union[str, Path]) -> Scene:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise SceneError(f"Failed to parse scene file {path}: {exc}") from exc
    return scene_from_dict(data)


# ── SVG ──────────────────────────────────────────────────────────────────────

_PATH_TOKEN = re.compile(r"[MmLlHhVvQqTtCcSsAaZz]|[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?")
_ARG_COUNT = {"M": 2, "L": 2, "H": 1, "V": 1, "Q": 4, "T": 2, "C": 6, "S": 4, "A": 7, "Z": 0}
_CLOSE_TOL = 1e-9

Point = tuple[float, float]


class _SubPath:
    def __init__(self, start: Point) -> None:
        self.points: list[Point] = [start]
        self.controls: list[list[Point]] = []
        self.closed = False

    def add(self, end: Point, controls: Optional[list[Point]] = None) -> None:
        self.controls.append(controls or [])
        self.points.append(end)

    def finish(self) -> None:
        first, last = self.points[0], self.points[-1]
        if self.closed and len(self.points) > 1 and (
            abs(first[0] - last[0]) <= _CLOSE_TOL and abs(first[1] - last[1]) <= _CLOSE_TOL
        ):
            # the explicit closing segment ends on the start vertex
            self.points.pop()
        elif self.closed:
            self.controls.append([])


def _reflect(control: Optional[Point], pos: Point) -> Point:
    """Reflection of the previous control point about the current point."""
    if control is None:
        return pos
    return (2 * pos[0] - control[0], 2 * pos[1] - control[1])


def _split_flags(tokens: list[str], i: int) -> None:
    """Split arc flags written without separators (``a5 5 0 0110 10``)."""
    for k in (i + 3, i + 4):
        if k < len(tokens):
            tok = tokens[k]
            if len(tok) > 1 and tok[0] in "01" and tok[1] not in ".eE":
                tokens[k:k + 1] = [tok[0], tok[1:]]


def arc_to_cubics(
    start: Point, rx: float, ry: float, rotation: float, large: bool, sweep: bool, end: Point,
) -> list[tuple[Point, Point, Point]]:
    """
    Convert an SVG elliptical arc into cubic Béziers ``(c1, c2, end)``.

    Follows the endpoint-to-center conversion of the SVG implementation
    notes: radii too small to reach *end* are scaled up, and the arc is cut
    into pieces of at most a quarter turn.  A zero radius gives a straight
    line, returned as a cubic with its controls on the chord.
    """
    x0, y0 = start
    x1, y1 = end
    if x0 == x1 and y0 == y1:
        return []
    rx, ry = abs(rx), abs(ry)
    if rx == 0 or ry == 0:
        return [(start, end, end)]
    phi = math.radians(rotation)
    cos_phi, sin_phi = math.cos(phi), math.sin(phi)
    dx, dy = (x0 - x1) / 2, (y0 - y1) / 2
    xp = cos_phi * dx + sin_phi * dy
    yp = -sin_phi * dx + cos_phi * dy
    scale = xp * xp / (rx * rx) + yp * yp / (ry * ry)
    if scale > 1:
        rx, ry = rx * math.sqrt(scale), ry * math.sqrt(scale)
    num = rx * rx * ry * ry - rx * rx * yp * yp - ry * ry * xp * xp
    den = rx * rx * yp * yp + ry * ry * xp * xp
    coef = math.sqrt(max(0.0, num / den))
    if large == sweep:
        coef = -coef
    cxp, cyp = coef * rx * yp / ry, -coef * ry * xp / rx
    cx = cos_phi * cxp - sin_phi * cyp + (x0 + x1) / 2
    cy = sin_phi * cxp + cos_phi * cyp + (y0 + y1) / 2
    theta = math.atan2((yp - cyp) / ry, (xp - cxp) / rx)
    delta = math.atan2((-yp - cyp) / ry, (-xp - cxp) / rx) - theta
    if sweep and delta < 0:
        delta += 2 * math.pi
    elif not sweep and delta > 0:
        delta -= 2 * math.pi

    def point(t: float) -> Point:
        ex, ey = rx * math.cos(t), ry * math.sin(t)
        return (cx + cos_phi * ex - sin_phi * ey, cy + sin_phi * ex + cos_phi * ey)

    def tangent(t: float) -> Point:
        ex, ey = -rx * math.sin(t), ry * math.cos(t)
        return (cos_phi * ex - sin_phi * ey, sin_phi * ex + cos_phi * ey)

    count = max(1, math.ceil(abs(delta) / (math.pi / 2) - 1e-9))
    step = delta / count
    k = 4.0 / 3.0 * math.tan(step / 4)
    out = []
    for j in range(count):
        a, b = theta + j * step, theta + (j + 1) * step
        pa, pb = point(a), point(b)
        ta, tb = tangent(a), tangent(b)
        c1 = (pa[0] + k * ta[0], pa[1] + k * ta[1])
        c2 = (pb[0] - k * tb[0], pb[1] - k * tb[1])
        out.append((c1, c2, end if j == count - 1 else pb))
    return out


def parse_path(d: str) -> list[_SubPath]:
    """Split an SVG path ``d`` attribute into sub-paths of absolute points."""
    tokens = _PATH_TOKEN.findall(d)
    paths: list[_SubPath] = []
    current: Optional[_SubPath] = None
    pos: Point = (0.0, 0.0)
    cmd = ""
    # last cubic / quadratic control, for the smooth S and T commands
    cubic_ctrl: Optional[Point] = None
    quad_ctrl: Optional[Point] = None
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok.isalpha():
            cmd = tok
            i += 1
            if cmd in "Zz":
                if current is None:
                    raise SceneError("Path closes before it starts")
                current.closed = True
                current.finish()
                pos = current.points[0]
                paths.append(current)
                current = None
                cubic_ctrl = quad_ctrl = None
                continue
        elif not cmd:
            raise SceneError(f"Path data starts with a number: {d[:20]!r}")
        upper = cmd.upper()
        count = _ARG_COUNT[upper]
        if upper == "A":
            _split_flags(tokens, i)
        args = tokens[i:i + count]
        if len(args) < count or any(a.isalpha() for a in args):
            raise SceneError(f"Command {cmd} expects {count} numbers")
        values = [float(a) for a in args]
        i += count
        rel = cmd.islower()
        ox, oy = pos if rel else (0.0, 0.0)
        prev_cubic, prev_quad = cubic_ctrl, quad_ctrl
        cubic_ctrl = quad_ctrl = None
        if upper == "M":
            if current is not None:
                current.finish()
                paths.append(current)
            pos = (values[0] + ox, values[1] + oy)
            current = _SubPath(pos)
            cmd = "l" if rel else "L"
            continue
        if current is None:
            current = _SubPath(pos)
        if upper == "L":
            pos = (values[0] + ox, values[1] + oy)
            current.add(pos)
        elif upper == "H":
            pos = (values[0] + (pos[0] if rel else 0.0), pos[1])
            current.add(pos)
        elif upper == "V":
            pos = (pos[0], values[0] + (pos[1] if rel else 0.0))
            current.add(pos)
        elif upper in "QT":
            if upper == "Q":
                c = (values[0] + ox, values[1] + oy)
                values = values[2:]
            else:
                c = _reflect(prev_quad, pos)
            pos = (values[0] + ox, values[1] + oy)
            current.add(pos, [c])
            quad_ctrl = c
        elif upper in "CS":
            if upper == "C":
                c1 = (values[0] + ox, values[1] + oy)
                values = values[2:]
            else:
                c1 = _reflect(prev_cubic, pos)
            c2 = (values[0] + ox, values[1] + oy)
            pos = (values[2] + ox, values[3] + oy)
            current.add(pos, [c1, c2])
            cubic_ctrl = c2
        elif upper == "A":
            end = (values[5] + ox, values[6] + oy)
            large, sweep = values[3] != 0, values[4] != 0
            for c1, c2, p in arc_to_cubics(pos, values[0], values[1], values[2], large, sweep, end):
                current.add(p, [c1, c2])
            pos = end
    if current is not None:
        current.finish()
        paths.append(current)
    return paths


def _numbers(text: str) -> list[float]:
    return [float(v) for v in re.findall(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?", text)]


def _flip(p: Point) -> Point:
    return (p[0], -p[1])


def _add_subpath(scene: Scene, sub: _SubPath, name: str) -> Optional[int]:
    points = [_flip(p) for p in sub.points]
    if sub.closed and len(points) >= 3:
        nid = scene.create_sketch(points, name=name)
    elif len(points) >= 2:
        if sub.closed:
            nid = scene.create_curve(points, open=False, name=name)
        else:
            nid = scene.create_curve(points, name=name)
    else:
        logger.debug("Skipping degenerate SVG element %s", name or "<unnamed>")
        return None
    node = scene.node(nid)
    for seg, controls in zip(node.segments, sub.controls):
        if controls:
            seg.degree = Degree(len(controls) + 1)
            seg.controls = [_flip(c) for c in controls]
    return nid


def load_svg(text: str, scene: Optional[Scene] = None) -> Scene:
    """Import the shapes of an SVG document into *scene* (or a new one).

    Raises:
        SceneError: If the document or a path is malformed.
    """
    scene = scene if scene is not None else Scene()
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise SceneError(f"Invalid SVG document: {exc}") from exc
    for elem in root.iter():
        tag = elem.tag.rsplit("}", 1)[-1]
        name = elem.get("id", "")
        if tag == "path":
            for sub in parse_path(elem.get("d", "")):
                _add_subpath(scene, sub, name)
        elif tag in ("polygon", "polyline"):
            values = _numbers(elem.get("points", ""))
            pts = list(zip(values[0::2], values[1::2]))
            if not pts:
                continue
            sub = _SubPath(pts[0])
            for p in pts[1:]:
                sub.add(p)
            sub.closed = tag == "polygon"
            sub.finish()
            _add_subpath(scene, sub, name)
        elif tag == "rect":
            x = float(elem.get("x", 0.0))
            y = float(elem.get("y", 0.0))
            w = float(elem.get("width", 0.0))
            h = float(elem.get("height", 0.0))
            if w <= 0 or h <= 0:
                continue
            # counter-clockwise once flipped
            sub = _SubPath((x, y + h))
            for p in ((x + w, y + h), (x + w, y), (x, y)):
                sub.add(p)
            sub.closed = True
            sub.finish()
            _add_subpath(scene, sub, name)
    logger.debug("Imported %d SVG nodes", len(scene))
    return scene
