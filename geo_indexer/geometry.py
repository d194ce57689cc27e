from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Tuple

import numpy as np
from shapely.geometry import box


# ------------------------------- Rectangle -----------------------------------

@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned 2-D rectangle. Used for shape MBRs and the whole-input MBR."""
    x1: float
    y1: float
    x2: float
    y2: float

    def __post_init__(self):
        x1, x2 = sorted((float(self.x1), float(self.x2)))
        y1, y2 = sorted((float(self.y1), float(self.y2)))
        object.__setattr__(self, "x1", x1)
        object.__setattr__(self, "y1", y1)
        object.__setattr__(self, "x2", x2)
        object.__setattr__(self, "y2", y2)

    @classmethod
    def from_bounds(cls, bounds: Iterable[float]) -> "Rectangle":
        x1, y1, x2, y2 = (float(v) for v in bounds)
        return cls(x1, y1, x2, y2)

    @classmethod
    def parse(cls, text: str) -> "Rectangle":
        """Parse ``"x1,y1,x2,y2"``."""
        parts = [p.strip() for p in text.split(",")]
        if len(parts) != 4:
            raise ValueError(f"Rectangle needs 4 comma-separated numbers, got {text!r}")
        try:
            return cls(*(float(p) for p in parts))
        except ValueError as e:
            raise ValueError(f"Invalid rectangle {text!r}: {e}") from e

    @property
    def width(self) -> float:
        return self.x2 - self.x1

    @property
    def height(self) -> float:
        return self.y2 - self.y1

    def area(self) -> float:
        return self.width * self.height

    def is_empty(self) -> bool:
        return not np.isfinite([self.x1, self.y1, self.x2, self.y2]).all()

    def merge(self, other: "Rectangle") -> "Rectangle":
        return Rectangle(min(self.x1, other.x1), min(self.y1, other.y1),
                         max(self.x2, other.x2), max(self.y2, other.y2))

    def intersects(self, other: "Rectangle") -> bool:
        # closed boxes: touching edges count as an intersection
        return not (other.x2 < self.x1 or other.x1 > self.x2 or
                    other.y2 < self.y1 or other.y1 > self.y2)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)

    def to_shapely(self):
        return box(self.x1, self.y1, self.x2, self.y2)

    def __str__(self) -> str:
        return f"{self.x1!r},{self.y1!r},{self.x2!r},{self.y2!r}"


def mbr_of_bounds(bounds: np.ndarray) -> Rectangle | None:
    """
    Reduce an (N, 4) array of ``minx, miny, maxx, maxy`` rows to one Rectangle.
    Rows containing NaN (empty geometries) are ignored; returns None if nothing is left.
    """
    bounds = np.asarray(bounds, dtype=np.float64).reshape(-1, 4)
    bounds = bounds[~np.isnan(bounds).any(axis=1)]
    if bounds.shape[0] == 0:
        return None
    mins = bounds[:, :2].min(axis=0)
    maxs = bounds[:, 2:].max(axis=0)
    return Rectangle(mins[0], mins[1], maxs[0], maxs[1])
