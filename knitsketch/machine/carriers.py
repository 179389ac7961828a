"""
Yarn carrier configuration.

A configuration maps device names to carrier devices::

    {"default": "1",
     "1": {"type": "knit", "DSCS": False, "carriers": ["1"]},
     "7": {"type": "elastic", "carriers": ["7"]}}

Every device inherits the fields of the default device and overrides them
with its own.  Devices without a colour get one from a fixed colour circle.
A device's ``bitmask`` is the front-yarn bitmask of its carriers, which is
also how stitches refer to yarns (see :mod:`knitsketch.machine.yarnstack`).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Mapping, Optional, Sequence, Union

from knitsketch.config.params import get_defaults

from .yarnstack import as_front_bits

CARRIERS: tuple[str, ...] = tuple(str(i + 1) for i in range(10))

COLORS: tuple[str, ...] = (
    "#0075dc", "#ffff80", "#2bce48",
    "#990000", "#808080", "#f0a3ff",
    "#993f00", "#4c005c", "#005c31",
    "#ffcc99", "#94ffb5", "#8f7c00",
    "#9dcc00", "#c20088", "#003380",
    "#ffa405", "#ffa8bb", "#426600",
    "#ff0010", "#5ef1f2", "#00998f",
    "#e0ff66", "#740aff", "#ffff00",
    "#ff5005", "#191919",
)


class CarrierType(str, Enum):
    KNIT = "knit"
    INLAY = "inlay"
    ELASTIC = "elastic"
    PLATING = "plating"


class CarrierConfigError(ValueError):
    """Raised by strict configurations on invalid device entries."""


@dataclass(frozen=True)
class CarrierDevice:
    """One named yarn device made of one or more carriers."""

    name: str
    type: CarrierType
    dscs: bool
    carriers: tuple[str, ...]
    color: str

    @property
    def bitmask(self) -> int:
        return as_front_bits(self.carriers)

    def matches(self, carriers: Sequence[Union[str, int]]) -> bool:
        names = {str(c) for c in carriers}
        return len(names) == len(self.carriers) and names == set(self.carriers)


def _make_device(name: Any, data: Mapping[str, Any], strict: bool) -> CarrierDevice:
    raw_type = data.get("type", CarrierType.KNIT.value)
    dscs = data.get("DSCS", False)
    carriers = data.get("carriers", ["1"])
    color = data.get("color")
    if strict:
        if not isinstance(name, str):
            raise CarrierConfigError(f"Device name must be a string, got {name!r}")
        if raw_type not in {t.value for t in CarrierType}:
            raise CarrierConfigError(f"Invalid carrier type {raw_type!r} for device {name!r}")
        if not isinstance(dscs, bool):
            raise CarrierConfigError(f"DSCS must be a boolean for device {name!r}")
        if not isinstance(color, str) or not color.startswith("#"):
            raise CarrierConfigError(f"Color must be a string starting with '#', got {color!r}")
        if not all(str(c) in CARRIERS for c in carriers):
            raise CarrierConfigError(f"Device {name!r} references an unknown carrier: {carriers}")
    try:
        carrier_type = CarrierType(raw_type)
    except ValueError:
        carrier_type = CarrierType.KNIT
    return CarrierDevice(
        name=str(name),
        type=carrier_type,
        dscs=bool(dscs),
        carriers=tuple(str(c) for c in carriers if str(c) in CARRIERS),
        color=str(color),
    )


class CarrierConfig:
    """Registry of carrier devices built from a configuration mapping.

    Use :meth:`check` (or ``strict=True``) to reject invalid entries instead
    of silently repairing them.
    """

    def __init__(self, config: Mapping[str, Any], strict: bool = False) -> None:
        default_key = config.get("default")
        if default_key not in config:
            raise CarrierConfigError(f"Invalid default key {default_key!r}")
        self.config = config
        default_data = config[default_key]
        self._devices: dict[str, CarrierDevice] = {}
        for name, data in config.items():
            if name == "default":
                continue
            merged = {**default_data, **data}
            merged["color"] = data.get("color") or COLORS[len(self._devices) % len(COLORS)]
            self._devices[str(name)] = _make_device(name, merged, strict)
        self.default_device = self._devices.get(str(default_key)) or next(iter(self._devices.values()))

    @classmethod
    def check(cls, config: Mapping[str, Any]) -> CarrierConfig:
        return cls(config, strict=True)

    @classmethod
    def default(cls) -> CarrierConfig:
        return cls(get_defaults()["carriers"])

    @property
    def default_yarn_mask(self) -> int:
        return self.default_device.bitmask

    def devices(self) -> Iterator[CarrierDevice]:
        return iter(self._devices.values())

    def get_device(self, key: Union[str, int, Sequence[Union[str, int]]]) -> Optional[CarrierDevice]:
        """Device by name (str), bitmask (int) or carrier list."""
        if isinstance(key, str):
            return self._devices.get(key)
        if isinstance(key, bool):
            raise TypeError(f"Invalid device key {key!r}")
        if isinstance(key, int):
            return next((d for d in self._devices.values() if d.bitmask == key), None)
        if isinstance(key, (list, tuple)):
            return next((d for d in self._devices.values() if d.matches(key)), None)
        raise TypeError(f"Invalid device key {key!r}")

    def get_device_info(self, key: Union[str, int, Sequence[Union[str, int]]], prop: str, default: Any = None) -> Any:
        device = self.get_device(key)
        return getattr(device, prop) if device is not None else default

    def carriers_of_mask(self, mask: int) -> tuple[str, ...]:
        """Carrier ids of a yarn bitmask, resolved through a device if one matches."""
        device = self.get_device(mask)
        if device is not None:
            return device.carriers
        return tuple(c for i, c in enumerate(CARRIERS) if mask & (1 << i))
