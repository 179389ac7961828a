"""
Similarity transforms of scene nodes.

A transform maps local coordinates ``p`` to parent coordinates::

    p' = (sx * p.x + x, sy * p.y + y)   with sx = ±k, sy = ±k

The family (translation, uniform positive scale ``k`` and independent axis
mirrors) is closed under composition and inversion.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Transform:
    x: float = 0.0
    y: float = 0.0
    k: float = 1.0
    mirror_x: bool = False
    mirror_y: bool = False

    def __post_init__(self) -> None:
        if not self.k > 0:
            raise ValueError(f"Transform scale must be positive, got {self.k}")

    @property
    def sx(self) -> float:
        return -self.k if self.mirror_x else self.k

    @property
    def sy(self) -> float:
        return -self.k if self.mirror_y else self.k

    @property
    def is_identity(self) -> bool:
        return (
            self.x == 0.0
            and self.y == 0.0
            and self.k == 1.0
            and not self.mirror_x
            and not self.mirror_y
        )

    @property
    def flips(self) -> bool:
        """True when the transform reverses orientation."""
        return self.mirror_x != self.mirror_y

    @classmethod
    def from_scales(cls, sx: float, sy: float, x: float = 0.0, y: float = 0.0) -> Transform:
        if abs(abs(sx) - abs(sy)) > 1e-12 * max(abs(sx), abs(sy)):
            raise ValueError(f"Non-uniform scale ({sx}, {sy})")
        return cls(x=x, y=y, k=abs(sx), mirror_x=sx < 0, mirror_y=sy < 0)

    def apply(self, points) -> np.ndarray:
        """Map an ``(n, 2)`` array (or a single point) to parent coordinates."""
        p = np.asarray(points, dtype=float)
        return p * np.array([self.sx, self.sy]) + np.array([self.x, self.y])

    def apply_point(self, point: tuple[float, float]) -> tuple[float, float]:
        return (self.sx * point[0] + self.x, self.sy * point[1] + self.y)

    def apply_vector(self, vector) -> np.ndarray:
        """Map directions (no translation)."""
        return np.asarray(vector, dtype=float) * np.array([self.sx, self.sy])

    def compose(self, inner: Transform) -> Transform:
        """Transform that applies *inner* first, then ``self``."""
        return Transform.from_scales(
            self.sx * inner.sx,
            self.sy * inner.sy,
            self.sx * inner.x + self.x,
            self.sy * inner.y + self.y,
        )

    def inverse(self) -> Transform:
        return Transform.from_scales(
            1.0 / self.sx,
            1.0 / self.sy,
            -self.x / self.sx,
            -self.y / self.sy,
        )

    def mirrored(self, axis: str) -> Transform:
        if axis == "x":
            return Transform(self.x, self.y, self.k, not self.mirror_x, self.mirror_y)
        if axis == "y":
            return Transform(self.x, self.y, self.k, self.mirror_x, not self.mirror_y)
        raise ValueError(f"Mirror axis must be 'x' or 'y', got {axis!r}")

    def to_dict(self) -> dict:
        return {
            "x": self.x,
            "y": self.y,
            "k": self.k,
            "mirrorX": self.mirror_x,
            "mirrorY": self.mirror_y,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Transform:
        return cls(
            x=float(data.get("x", 0.0)),
            y=float(data.get("y", 0.0)),
            k=float(data.get("k", 1.0)),
            mirror_x=bool(data.get("mirrorX", False)),
            mirror_y=bool(data.get("mirrorY", False)),
        )
