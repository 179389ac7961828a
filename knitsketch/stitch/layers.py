"""
Sketch layers: per-stitch programs and yarn masks applied after sampling.

A sketch carries its layers as plain dicts in ``Node.layers``::

    {"type": "pattern", "params": {"pattern": "KT\\nTK"}, "zindex": 0}

Layer types self-register at import time by calling :func:`register`; each
declares its parameter schema as a list of :class:`LayerParam`.  Layers of
every sketch of a mesh are applied in ``zindex`` order, later layers
overriding earlier ones.

Usage
-----
::

    from knitsketch.stitch.layers import apply_layers, list_types

    apply_layers(sampler, scene)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

import numpy as np
import shapely
from PIL import Image
from shapely.geometry import Polygon

from knitsketch.sketch.scene import Scene, SceneError

from .sampler import StitchCode, StitchSampler

logger = logging.getLogger(__name__)


class LayerError(ValueError):
    """Invalid layer type or parameter value."""


class ParamType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    BOOLEAN = "boolean"
    ENUM = "enum"
    IMAGE = "image"
    MAPPING = "mapping"
    REFERENCE = "reference"
    YARN = "yarn"
    YARNMASK = "yarnmask"


@dataclass(frozen=True)
class LayerParam:
    name: str
    type: ParamType
    default: Any = None
    values: tuple = ()

    def validate(self, value: Any) -> Any:
        """Return *value* if it fits this parameter, else raise :class:`LayerError`."""
        ok = {
            ParamType.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            ParamType.STRING: lambda v: isinstance(v, str),
            ParamType.BOOLEAN: lambda v: isinstance(v, bool),
            ParamType.ENUM: lambda v: v in self.values,
            ParamType.IMAGE: lambda v: isinstance(v, str),
            ParamType.MAPPING: lambda v: isinstance(v, dict),
            ParamType.REFERENCE: lambda v: v is None or isinstance(v, int),
            ParamType.YARN: lambda v: isinstance(v, int) and 0 <= v < 10,
            ParamType.YARNMASK: lambda v: isinstance(v, int) and 0 <= v < 1 << 10,
        }[self.type](value)
        if not ok:
            raise LayerError(f"Invalid value for {self.type.value} parameter {self.name!r}: {value!r}")
        return value

    def to_dict(self) -> dict[str, Any]:
        out = {"name": self.name, "type": self.type.value, "default": self.default}
        if self.values:
            out["values"] = list(self.values)
        return out


# ── Registry ─────────────────────────────────────────────────────────────────

_REGISTRY: dict[str, type[SketchLayer]] = {}


def register(layer_type: str, cls: type[SketchLayer]) -> type[SketchLayer]:
    """Register *cls* under *layer_type* and return it."""
    cls.layer_type = layer_type
    _REGISTRY[layer_type] = cls
    return cls


def get(layer_type: str) -> type[SketchLayer]:
    """Return the layer class registered under *layer_type*.

    Raises
    ------
    KeyError
        If *layer_type* has not been registered.
    """
    if layer_type not in _REGISTRY:
        raise KeyError(f"Unknown layer type: {layer_type!r}")
    return _REGISTRY[layer_type]


def list_types() -> list[str]:
    """Return a sorted list of all registered layer types."""
    return sorted(_REGISTRY.keys())


def schema(layer_type: str) -> list[dict[str, Any]]:
    return [p.to_dict() for p in get(layer_type).params]


# ── Base layer ───────────────────────────────────────────────────────────────


class SketchLayer:
    """A layer attached to one sketch; subclasses implement :meth:`apply`."""

    layer_type = "layer"
    params: list[LayerParam] = []

    def __init__(self, sketch_id: int, values: Optional[dict[str, Any]] = None, zindex: int = 0) -> None:
        self.sketch_id = sketch_id
        self.zindex = zindex
        self.values: dict[str, Any] = {}
        declared = {p.name: p for p in self.params}
        for name, value in (values or {}).items():
            if name not in declared:
                raise LayerError(f"Unknown parameter {name!r} for {self.layer_type} layer")
            self.values[name] = declared[name].validate(value)

    @classmethod
    def from_dict(cls, sketch_id: int, data: dict[str, Any]) -> SketchLayer:
        if "type" not in data:
            raise LayerError("Layer data without a type")
        return get(data["type"])(sketch_id, data.get("params"), int(data.get("zindex", 0)))

    def get(self, name: str) -> Any:
        if name in self.values:
            return self.values[name]
        for p in self.params:
            if p.name == name:
                return p.default
        raise LayerError(f"Unknown parameter {name!r} for {self.layer_type} layer")

    def select(self, sampler: StitchSampler, scene: Scene) -> np.ndarray:
        """Indices of the stitches of this sketch inside its outline (and mask, if any)."""
        layer = sampler.sketch_ids.index(self.sketch_id)
        ids = np.array([s.index for s in sampler if s.layer == layer], dtype=int)
        if not len(ids):
            return ids
        pos = np.array([sampler[i].position for i in ids], dtype=float)
        inside = shapely.intersects_xy(_outline(scene, self.sketch_id, self.sketch_id), pos[:, 0], pos[:, 1])
        mask_id = self.get("mask") if any(p.name == "mask" for p in self.params) else None
        if mask_id is not None:
            inside &= shapely.intersects_xy(_outline(scene, mask_id, self.sketch_id), pos[:, 0], pos[:, 1])
        return ids[inside]

    def apply(self, sampler: StitchSampler, scene: Scene) -> int:
        """Apply the layer; returns the number of stitches changed."""
        raise NotImplementedError


def _outline(scene: Scene, node_id: int, frame: int) -> Polygon:
    try:
        pts = scene.polyline(node_id, frame=frame)
    except (KeyError, SceneError) as exc:
        raise LayerError(f"Invalid layer mask {node_id}: {exc}") from exc
    if len(pts) < 3:
        raise LayerError(f"Layer mask {node_id} is not a region")
    return Polygon(pts).buffer(0)


def _grid(sampler: StitchSampler, ids: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Column (index within course) and row (rank of course) of every selected stitch."""
    courses = sorted({sampler[i].course for i in ids})
    rank = {c: k for k, c in enumerate(courses)}
    cols = np.array([sampler.courses[sampler[i].course].stitches.index(int(i)) for i in ids], dtype=int)
    rows = np.array([rank[sampler[i].course] for i in ids], dtype=int)
    return cols, rows


def _relative(sampler: StitchSampler, ids: np.ndarray) -> np.ndarray:
    """Stitch positions normalised to the bounding box of the selection."""
    pos = np.array([sampler[i].position for i in ids], dtype=float)
    lo, hi = pos.min(axis=0), pos.max(axis=0)
    return (pos - lo) / np.maximum(hi - lo, 1e-9)


def _set_program(sampler: StitchSampler, ids, codes) -> int:
    changed = 0
    for i, code in zip(ids, codes):
        if code is None:
            continue
        stitch = sampler[int(i)]
        if stitch.program != code:
            stitch.program = code
            changed += 1
    return changed


# ── Layer types ──────────────────────────────────────────────────────────────

_PROGRAM_CODES = tuple(c.value for c in StitchCode)

PATTERN_CHARS = {
    "K": StitchCode.KNIT,
    ".": StitchCode.KNIT,
    "T": StitchCode.TUCK,
    "M": StitchCode.MISS,
    "S": StitchCode.SPLIT,
}


class PatternLayer(SketchLayer):
    """Program codes from a character grid.

    The last row of ``pattern`` applies to the first course.  ``tiled``
    repeats the grid over (stitch in course, course) indices; ``scaled``
    stretches it over the bounding box of the selected stitches.  Unknown
    characters leave the stitch untouched.
    """

    params = [
        LayerParam("pattern", ParamType.STRING, "K"),
        LayerParam("spreadMode", ParamType.ENUM, "tiled", ("tiled", "scaled")),
        LayerParam("mask", ParamType.REFERENCE, None),
    ]

    def apply(self, sampler: StitchSampler, scene: Scene) -> int:
        rows = [r for r in self.get("pattern").splitlines() if r]
        ids = self.select(sampler, scene)
        if not rows or not len(ids):
            return 0
        h, w = len(rows), max(len(r) for r in rows)
        if self.get("spreadMode") == "scaled":
            rel = _relative(sampler, ids)
            gx = np.minimum((rel[:, 0] * w).astype(int), w - 1)
            gy = np.minimum((rel[:, 1] * h).astype(int), h - 1)
        else:
            cols, rws = _grid(sampler, ids)
            gx, gy = cols % w, rws % h
        codes = []
        for x, y in zip(gx, gy):
            row = rows[h - 1 - int(y)]
            codes.append(PATTERN_CHARS.get(row[x].upper()) if x < len(row) else None)
        return _set_program(sampler, ids, codes)


class ImageLayer(SketchLayer):
    """Program codes from a greyscale raster stretched over the sketch.

    Pixels darker than ``threshold`` apply ``dark``, the others ``light``.
    """

    params = [
        LayerParam("image", ParamType.IMAGE, ""),
        LayerParam("threshold", ParamType.NUMBER, 128),
        LayerParam("dark", ParamType.ENUM, "tuck", _PROGRAM_CODES),
        LayerParam("light", ParamType.ENUM, "knit", _PROGRAM_CODES),
        LayerParam("mask", ParamType.REFERENCE, None),
    ]

    def load(self) -> np.ndarray:
        path = self.get("image")
        try:
            with Image.open(path) as img:
                return np.asarray(img.convert("L"), dtype=float)
        except OSError as exc:
            raise LayerError(f"Cannot read layer image {path!r}: {exc}") from exc

    def apply(self, sampler: StitchSampler, scene: Scene) -> int:
        ids = self.select(sampler, scene)
        if not len(ids):
            return 0
        pixels = self.load()
        h, w = pixels.shape
        rel = _relative(sampler, ids)
        px = np.minimum((rel[:, 0] * w).astype(int), w - 1)
        # image rows run top to bottom
        py = np.minimum(((1.0 - rel[:, 1]) * h).astype(int), h - 1)
        dark = pixels[py, px] < float(self.get("threshold"))
        on, off = StitchCode(self.get("dark")), StitchCode(self.get("light"))
        codes = [on if d else off for d in dark]
        return _set_program(sampler, ids, codes)


class ProgramLayer(SketchLayer):
    """One program code for every stitch inside the sketch (or its mask)."""

    params = [
        LayerParam("program", ParamType.ENUM, "knit", _PROGRAM_CODES),
        LayerParam("mask", ParamType.REFERENCE, None),
    ]

    def apply(self, sampler: StitchSampler, scene: Scene) -> int:
        ids = self.select(sampler, scene)
        code = StitchCode(self.get("program"))
        return _set_program(sampler, ids, [code] * len(ids))


class YarnLayer(SketchLayer):
    params = [
        LayerParam("yarnMask", ParamType.YARNMASK, 1),
        LayerParam("mask", ParamType.REFERENCE, None),
    ]

    def apply(self, sampler: StitchSampler, scene: Scene) -> int:
        mask = self.get("yarnMask")
        changed = 0
        for i in self.select(sampler, scene):
            stitch = sampler[int(i)]
            if stitch.yarn_mask != mask:
                stitch.yarn_mask = mask
                changed += 1
        return changed


register("pattern", PatternLayer)
register("image", ImageLayer)
register("program", ProgramLayer)
register("yarn", YarnLayer)


# ── Application ──────────────────────────────────────────────────────────────


def layers_of(scene: Scene, sketch_ids: list[int]) -> list[SketchLayer]:
    """Layers of the given sketches, in application order."""
    layers = []
    for sid in sketch_ids:
        for data in scene.node(sid).layers:
            layers.append(SketchLayer.from_dict(sid, data))
    layers.sort(key=lambda layer: layer.zindex)
    return layers


def apply_layers(sampler: StitchSampler, scene: Scene) -> list[SketchLayer]:
    """Apply every sketch layer of the sampled sketches to *sampler*."""
    layers = layers_of(scene, sampler.sketch_ids)
    for layer in layers:
        changed = layer.apply(sampler, scene)
        logger.debug("%s layer of sketch %d changed %d stitches", layer.layer_type, layer.sketch_id, changed)
    return layers
