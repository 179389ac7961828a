"""
Pipeline configuration: YAML defaults merged with user overrides.

The defaults live in ``data/defaults.yaml`` and are loaded once.  User
overrides are deep-merged on top; nested keys may also be given in dotted
form (``{"sizing.default.wale": "5 stitches / mm"}``).  The merged mapping
is validated and flattened into a frozen :class:`Params` used by every stage.

Sizing values are unit expressions (see :mod:`knitsketch.utilities.units`)
or plain numbers.  ``sizing.default.wale`` and ``sizing.default.course`` are
densities (stitches per mm); ``sizing.sketch.scale`` is mm per px.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional, cast

import yaml

from knitsketch.utilities.units import parse_as_ratio

_DATA_DIR = Path(__file__).parent / "data"

_SEAM_STOPS = ("none", "sampling", "tracing", "nodes")
_SR_ALIGNMENTS = ("bottom", "middle", "top")
_GAUGES = ("full", "half")


class ConfigError(ValueError):
    """Raised when a configuration value is missing or invalid."""


_defaults: Optional[MappingProxyType] = None


def load_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            return cast(dict[str, Any], yaml.safe_load(f))
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {path}") from None
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse configuration file {path}: {exc}") from exc


def get_defaults() -> MappingProxyType:
    """Return the read-only default options (loaded on first call)."""
    global _defaults
    if _defaults is None:
        _defaults = MappingProxyType(load_yaml(_DATA_DIR / "defaults.yaml"))
    return _defaults


def merge_options(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge *overrides* (possibly with dotted keys) into a copy of *base*."""
    merged = copy.deepcopy(dict(base))
    for key, value in overrides.items():
        path = key.split(".")
        target = merged
        for part in path[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        leaf = path[-1]
        if isinstance(value, Mapping) and isinstance(target.get(leaf), dict) and leaf != "carriers":
            target[leaf] = merge_options(target[leaf], value)
        else:
            target[leaf] = copy.deepcopy(value)
    return merged


def _density(value: Any, name: str) -> float:
    """Stitches per mm from a number or a unit expression."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        density = float(value)
    elif isinstance(value, str):
        ratio = parse_as_ratio(value, "stitch", "mm")
        if ratio is None:
            raise ConfigError(f"{name}: cannot read {value!r} as stitches per mm")
        density = ratio.as_scalar()
    else:
        raise ConfigError(f"{name}: expected a number or unit string, got {value!r}")
    if density <= 0:
        raise ConfigError(f"{name}: density must be positive, got {density}")
    return density


def _scale(value: Any) -> float:
    """mm per px from a number or a unit expression."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        scale = float(value)
    elif isinstance(value, str):
        ratio = parse_as_ratio(value, "mm", "px")
        if ratio is None:
            raise ConfigError(f"sizing.sketch.scale: cannot read {value!r} as mm per px")
        scale = ratio.as_scalar()
    else:
        raise ConfigError(f"sizing.sketch.scale: expected a number or unit string, got {value!r}")
    if scale <= 0:
        raise ConfigError(f"sizing.sketch.scale must be positive, got {scale}")
    return scale


def _number(options: Mapping[str, Any], key: str, minimum: float = 0.0) -> float:
    value = options.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key}: expected a number, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return float(value)


def _integer(options: Mapping[str, Any], key: str, minimum: int = 0) -> int:
    value = options.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{key} must be >= {minimum}, got {value}")
    return value


def _choice(options: Mapping[str, Any], key: str, choices: tuple[str, ...]) -> str:
    value = options.get(key)
    if value not in choices:
        raise ConfigError(f"{key} must be one of {choices}, got {value!r}")
    return cast(str, value)


@dataclass(frozen=True)
class Params:
    """Validated pipeline options.

    Attributes:
        wale_dist: Distance between neighbouring wales (along a course), mm.
        course_dist: Distance between neighbouring courses (along the flow), mm.
        scale: Sketch scale in mm per px.
        min_region_dt / max_region_dt: Region interval bounds in time units.
        options: The full merged option mapping (read-only), as sent to workers.
    """

    wale_dist: float
    course_dist: float
    scale: float
    mesh_levels: int
    level_factor: float
    min_resolution: int
    flow_accuracy: float
    time_accuracy: float
    max_time_iter: int
    constraint_support: float
    invert_time: bool
    min_region_dt: float
    max_region_dt: float
    uniform_region_split: bool
    ss_threshold: float
    sr_alignment: str
    seam_weight: float
    seam_stop: str
    max_racking: int
    cast_on_type: str
    cast_off_type: str
    stitch_number: int
    machine: str
    needle_count: int
    gauge: str
    subdiv: int
    verbose: bool
    carriers: MappingProxyType
    options: MappingProxyType

    @property
    def needle_step(self) -> int:
        """Needle offset between neighbouring stitches (2 for half gauge)."""
        return 2 if self.gauge == "half" else 1

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, Any]] = None) -> Params:
        """Merge *overrides* into the defaults and validate the result.

        Raises:
            ConfigError: If any option is missing or invalid.
        """
        options = merge_options(get_defaults(), overrides or {})
        sizing = options.get("sizing") or {}
        default_sizing = sizing.get("default") or {}
        sketch_sizing = sizing.get("sketch") or {}
        if "wale" not in default_sizing or "course" not in default_sizing:
            raise ConfigError("sizing.default requires both 'wale' and 'course'")
        carriers = options.get("carriers")
        if not isinstance(carriers, Mapping) or "default" not in carriers:
            raise ConfigError("carriers must be a mapping with a 'default' entry")
        max_dt = _number(options, "maxRegionDT", 0.0)
        min_dt = _number(options, "minRegionDT", 0.0)
        if max_dt <= min_dt:
            raise ConfigError(f"maxRegionDT ({max_dt}) must exceed minRegionDT ({min_dt})")
        return cls(
            wale_dist=1.0 / _density(default_sizing["wale"], "sizing.default.wale"),
            course_dist=1.0 / _density(default_sizing["course"], "sizing.default.course"),
            scale=_scale(sketch_sizing.get("scale", 1.0)),
            mesh_levels=_integer(options, "meshLevels", 1),
            level_factor=_number(options, "levelFactor", 1.0),
            min_resolution=_integer(options, "minResolution", 1),
            flow_accuracy=_number(options, "flowAccuracy"),
            time_accuracy=_number(options, "timeAccuracy"),
            max_time_iter=_integer(options, "maxTimeIter", 1),
            constraint_support=_number(options, "constraintSupport"),
            invert_time=bool(options.get("invertTime", False)),
            min_region_dt=min_dt,
            max_region_dt=max_dt,
            uniform_region_split=bool(options.get("uniformRegionSplit", False)),
            ss_threshold=_number(options, "ssThreshold"),
            sr_alignment=_choice(options, "srAlignment", _SR_ALIGNMENTS),
            seam_weight=_number(options, "seamWeight"),
            seam_stop=_choice(options, "seamStop", _SEAM_STOPS),
            max_racking=_integer(options, "maxRacking", 1),
            cast_on_type=_choice(options, "castOnType", ("interlock", "tuck")),
            cast_off_type=_choice(options, "castOffType", ("pickup", "drop")),
            stitch_number=_integer(options, "stitchNumber"),
            machine=str(options.get("machine", "")),
            needle_count=_integer(options, "needleCount", 1),
            gauge=_choice(options, "gauge", _GAUGES),
            subdiv=_integer(options, "subdiv", 1),
            verbose=bool(options.get("verbose", False)),
            carriers=MappingProxyType(dict(carriers)),
            options=MappingProxyType(options),
        )
