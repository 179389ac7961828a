"""
Physical units: lengths, stitch counts and ratios between them.

Expressions follow the grammar ``<number> <unit> [/ <number> <unit>]`` where
``per`` is a synonym of ``/`` and a missing number defaults to 1, e.g.
``"5 stitches / mm"``, ``"135 mm per 100 stitches"`` or ``"2in"``.

Length units convert through exact millimetre factors.  Count units
(``stitch``, ``wale``, ``course``) only convert to themselves; a ratio whose
units do not match the requested ones may be inverted unless ``strict``.

The three public entry points (:func:`parse`, :func:`parse_as`,
:func:`parse_as_ratio`) never raise on bad input: they log the reason and
return ``None``.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Optional, Union

logger = logging.getLogger(__name__)

MM_PER_INCH: float = 25.4

LENGTH_FACTORS: MappingProxyType = MappingProxyType(
    {
        "mm": 1.0,
        "cm": 10.0,
        "dm": 100.0,
        "m": 1000.0,
        "in": MM_PER_INCH,
    }
)

_ALIASES: MappingProxyType = MappingProxyType(
    {
        "s": "stitch",
        "st": "stitch",
        "sts": "stitch",
        "stitch": "stitch",
        "stitches": "stitch",
        "w": "wale",
        "wale": "wale",
        "wales": "wale",
        "c": "course",
        "crs": "course",
        "course": "course",
        "courses": "course",
        "mm": "mm",
        "millimeter": "mm",
        "millimeters": "mm",
        "cm": "cm",
        "centimeter": "cm",
        "centimeters": "cm",
        "dm": "dm",
        "m": "m",
        "meter": "m",
        "meters": "m",
        "metre": "m",
        "metres": "m",
        "in": "in",
        "inch": "in",
        "inches": "in",
        '"': "in",
        "px": "px",
        "pixel": "px",
        "pixels": "px",
        "%": "%",
        "percent": "%",
    }
)

_TOKEN_RE = re.compile(r'\s*(?:([0-9]*\.?[0-9]+(?:[eE][-+]?[0-9]+)?)|([a-zA-Z%"]+)|(/))')


class UnitError(ValueError):
    """Raised internally when a unit expression cannot be parsed or converted."""


def unit_name(unit: str) -> str:
    """Canonical name of *unit*; unknown names are returned lower-cased."""
    key = unit.lower()
    return _ALIASES.get(key, key)


def is_length_unit(unit: str) -> bool:
    return unit_name(unit) in LENGTH_FACTORS


def dist_to_mm(unit: str) -> float:
    """Millimetres per *unit*, or NaN if *unit* is not a length unit."""
    return LENGTH_FACTORS.get(unit_name(unit), math.nan)


# ── Values ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Unit:
    """A scalar with an optional unit (``""`` when unitless)."""

    value: float
    unit: str = ""

    def has_unit(self) -> bool:
        return bool(self.unit)

    def is_length(self) -> bool:
        return is_length_unit(self.unit) if self.unit else False

    def as_unit(self, unit: str, strict: bool = False) -> Optional[Unit]:
        """Convert to *unit*.

        A matching unit (or alias) returns ``self``.  A unitless value takes
        the unit when not *strict*.  Lengths convert through mm factors.
        Anything else returns ``None``.
        """
        if not unit or unit == self.unit or unit_name(unit) == unit_name(self.unit):
            return self
        if not strict and not self.has_unit():
            return Unit(self.value, unit)
        target = dist_to_mm(unit)
        if not math.isnan(target):
            current = dist_to_mm(self.unit)
            if math.isnan(current):
                return None
            return Unit(self.value * current / target, unit)
        return None

    def as_ratio(
        self, top: str, bottom: str, strict: bool = False, compact: bool = False
    ) -> Optional[UnitRatio]:
        return UnitRatio(self).as_ratio(top, bottom, strict, compact)

    def as_scalar(self) -> float:
        return self.value

    def inverse(self) -> UnitRatio:
        return UnitRatio(Unit(1.0), self)

    def scaled_by(self, alpha: float) -> Unit:
        return Unit(self.value * alpha, self.unit)

    def matches(self, *units: str) -> bool:
        """True if any of *units* is an alias of this unit (or both are lengths)."""
        name = unit_name(self.unit)
        for u in units:
            if self.is_length() and is_length_unit(u):
                return True
            if unit_name(u) == name:
                return True
        return False

    def __str__(self) -> str:
        return f"{self.value:g} {self.unit}".rstrip()


@dataclass(frozen=True)
class UnitRatio:
    """A ratio ``top / bottom`` of two units, e.g. ``5 stitch / 1 mm``."""

    top: Unit
    bottom: Unit = Unit(1.0)

    def compact(self, as_ratio: bool = False) -> Union[Unit, UnitRatio]:
        """Simplify the ratio.

        Identical or length-length units collapse to a unitless scalar (or a
        unitless ratio when *as_ratio*); a unitless bottom collapses to the
        top unit.  Otherwise the ratio is returned unchanged.
        """
        if self.top.has_unit() and self.bottom.has_unit():
            if unit_name(self.top.unit) == unit_name(self.bottom.unit):
                if as_ratio:
                    return UnitRatio(Unit(self.top.value), Unit(self.bottom.value))
                return Unit(self.top.value / self.bottom.value)
            tf = dist_to_mm(self.top.unit)
            bf = dist_to_mm(self.bottom.unit)
            if not math.isnan(tf) and not math.isnan(bf):
                if as_ratio:
                    return UnitRatio(Unit(self.top.value * tf), Unit(self.bottom.value * bf))
                return Unit(self.top.value * tf / (self.bottom.value * bf))
        elif not self.bottom.has_unit() and not as_ratio:
            return Unit(self.top.value / self.bottom.value, self.top.unit)
        return self

    def as_unit(self, unit: str, strict: bool = False) -> Optional[Unit]:
        """Convert the compacted ratio to a single unit.

        A ratio that does not compact fails when *strict*; otherwise its
        inverse is tried (strictly).
        """
        compacted = self.compact()
        if isinstance(compacted, Unit):
            return compacted.as_unit(unit, strict)
        if strict:
            return None
        return compacted.inverse().as_unit(unit, True)

    def as_ratio(
        self, top: str, bottom: str, strict: bool = False, compact: bool = False
    ) -> Optional[UnitRatio]:
        """Convert both parts of the ratio, or (non-strict) of its inverse."""
        base = self.compact(True) if compact else self
        if not isinstance(base, UnitRatio):
            base = UnitRatio(base)
        t = base.top.as_unit(top)
        b = base.bottom.as_unit(bottom)
        if t is not None and b is not None:
            return UnitRatio(t, b)
        if strict:
            return None
        return base.inverse().as_ratio(top, bottom, True)

    def as_scalar(self) -> float:
        return self.top.value / self.bottom.value

    def inverse(self) -> UnitRatio:
        return UnitRatio(self.bottom, self.top)

    def scaled_by(self, alpha: float) -> UnitRatio:
        return UnitRatio(self.top.scaled_by(alpha), self.bottom)

    def __str__(self) -> str:
        return f"{self.top} / {self.bottom}"


# ── Parsing ───────────────────────────────────────────────────────────────────


def tokenize(text: str) -> list[Union[float, str]]:
    """Split *text* into numbers, unit names and ``/`` markers.

    Raises:
        UnitError: If *text* contains characters outside the grammar.
    """
    tokens: list[Union[float, str]] = []
    pos = 0
    stripped = text.rstrip()
    while pos < len(stripped):
        match = _TOKEN_RE.match(stripped, pos)
        if match is None or match.end() == pos:
            raise UnitError(f"Malformed token at {pos} in {text!r}")
        number, word, slash = match.groups()
        if number is not None:
            tokens.append(float(number))
        elif slash is not None or word.lower() == "per":
            tokens.append("/")
        else:
            tokens.append(word)
        pos = match.end()
    if not tokens:
        raise UnitError(f"Empty unit expression {text!r}")
    return tokens


def _single(nums: list[float], units: list[str], what: str) -> Unit:
    if len(nums) > 1 or len(units) > 1:
        raise UnitError(f"{what} has multiple numbers or units")
    unit = units[0] if units else ""
    if unit and unit_name(unit) not in _ALIASES.values():
        raise UnitError(f"Unknown unit {unit!r}")
    return Unit(nums[0] if nums else 1.0, unit)


def from_tokens(tokens: list[Union[float, str]]) -> Union[Unit, UnitRatio]:
    """Build a :class:`Unit` or :class:`UnitRatio` from parsed tokens.

    Raises:
        UnitError: On double division or multi-number parts.
    """
    parts: list[tuple[list[float], list[str]]] = [([], [])]
    for token in tokens:
        if token == "/":
            if len(parts) > 1:
                raise UnitError("Unsupported double division")
            parts.append(([], []))
        elif isinstance(token, float):
            parts[-1][0].append(token)
        else:
            parts[-1][1].append(token)
    if len(parts) == 1:
        return _single(*parts[0], what="Expression")
    top = _single(*parts[0], what="Numerator")
    bottom = _single(*parts[1], what="Divisor")
    if bottom.value == 0:
        raise UnitError("Division by zero")
    return UnitRatio(top, bottom)


def parse(text: str) -> Optional[Union[Unit, UnitRatio]]:
    """Parse *text* into a unit or a ratio, or ``None`` if invalid."""
    try:
        return from_tokens(tokenize(text))
    except UnitError as exc:
        logger.debug("Cannot parse unit %r: %s", text, exc)
        return None


def parse_as(text: str, unit: str, strict: bool = False) -> Optional[Unit]:
    """Parse *text* and convert it to *unit*."""
    value = parse(text)
    return value.as_unit(unit, strict) if value is not None else None


def parse_as_ratio(text: str, top: str, bottom: str, strict: bool = False) -> Optional[UnitRatio]:
    """Parse *text* and convert it to a ``top / bottom`` ratio."""
    value = parse(text)
    return value.as_ratio(top, bottom, strict) if value is not None else None
