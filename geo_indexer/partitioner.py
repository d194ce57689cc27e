from __future__ import annotations
from enum import Enum
from typing import Any, FrozenSet, Protocol
import logging
import math

import numpy as np

from .errors import ConfigurationError
from .geometry import Rectangle

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SIZE = 128 * 1024 * 1024
DEFAULT_REPLICATION_OVERHEAD = 0.1


class Partitioner(Protocol):
    """What the assignment stage needs from a spatial partitioning."""
    def overlap_partitions(self, shape: Any) -> FrozenSet[int]: ...
    def partition_count(self) -> int: ...
    def partition_mbr(self, partition_id: int) -> Rectangle: ...


class IndexType(str, Enum):
    GRID = "grid"
    RTREE = "rtree"
    RPLUS_TREE = "r+tree"
    STR = "str"
    STR_PLUS = "str+"

    @classmethod
    def parse(cls, text: str) -> "IndexType":
        s = (text or "").strip().lower()
        for member in cls:
            if member.value == s:
                return member
        raise ConfigurationError(
            f"Unknown index type '{text}', expected one of: {', '.join(m.value for m in cls)}"
        )

    @property
    def is_supported(self) -> bool:
        return self is IndexType.GRID


# ------------------------------- Grid ----------------------------------------

class GridPartitioner:
    """
    Uniform ``columns x rows`` grid over the input MBR.

    Cell ``(col, row)`` has partition id ``row * columns + col``. A shape overlaps
    every cell its bounding box touches, so shapes on a grid line are replicated
    into the cells on both sides. Shapes beyond the MBR land in the edge cells.
    """

    def __init__(self, mbr: Rectangle, columns: int, rows: int):
        if columns < 1 or rows < 1:
            raise ValueError(f"Grid needs at least 1x1 cells, got {columns}x{rows}")
        self.mbr = mbr
        self.columns = int(columns)
        self.rows = int(rows)
        self._cell_w = mbr.width / self.columns
        self._cell_h = mbr.height / self.rows

    @classmethod
    def for_cells(cls, mbr: Rectangle, num_cells: int) -> "GridPartitioner":
        n = max(1, int(num_cells))
        if mbr.width > 0 and mbr.height > 0:
            columns = max(1, math.ceil(math.sqrt(n * mbr.width / mbr.height)))
        elif mbr.width > 0:
            columns = n
        elif mbr.height > 0:
            columns = 1
        else:
            # all shapes share one point
            return cls(mbr, 1, 1)
        columns = min(columns, n)
        rows = max(1, math.ceil(n / columns))
        return cls(mbr, columns, rows)

    @classmethod
    def for_indexing(
        cls,
        input_size: int,
        mbr: Rectangle,
        block_size: int = DEFAULT_BLOCK_SIZE,
        replication_overhead: float = DEFAULT_REPLICATION_OVERHEAD,
    ) -> "GridPartitioner":
        num_cells = max(1, math.ceil(input_size * (1.0 + replication_overhead) / block_size))
        part = cls.for_cells(mbr, num_cells)
        logger.info("Grid partitioner: input_size=%d block_size=%d -> %d cells (%dx%d) over %s",
                    input_size, block_size, part.partition_count(), part.columns, part.rows, mbr)
        return part

    def partition_count(self) -> int:
        return self.columns * self.rows

    def partition_mbr(self, partition_id: int) -> Rectangle:
        if not 0 <= partition_id < self.partition_count():
            raise IndexError(f"Partition {partition_id} out of range [0, {self.partition_count()})")
        row, col = divmod(partition_id, self.columns)
        x1 = self.mbr.x1 + col * self._cell_w
        y1 = self.mbr.y1 + row * self._cell_h
        return Rectangle(x1, y1, x1 + self._cell_w, y1 + self._cell_h)

    def _span(self, lo: float, hi: float, origin: float, step: float, n: int) -> range:
        if step <= 0:
            # no extent on this axis: every cell coincides, use the first
            return range(0, 1)
        first = int(np.clip(math.ceil((lo - origin) / step) - 1, 0, n - 1))
        last = int(np.clip(math.floor((hi - origin) / step), 0, n - 1))
        return range(first, last + 1)

    def overlap_partitions(self, shape: Any) -> FrozenSet[int]:
        if shape is None or shape.is_empty:
            return frozenset()
        minx, miny, maxx, maxy = shape.bounds
        if not np.isfinite([minx, miny, maxx, maxy]).all():
            return frozenset()
        cols = self._span(minx, maxx, self.mbr.x1, self._cell_w, self.columns)
        rows = self._span(miny, maxy, self.mbr.y1, self._cell_h, self.rows)
        return frozenset(r * self.columns + c for r in rows for c in cols)

    def __repr__(self) -> str:
        return f"GridPartitioner(mbr={self.mbr}, columns={self.columns}, rows={self.rows})"


def create_partitioner(
    index_type: IndexType,
    input_size: int,
    mbr: Rectangle,
    block_size: int = DEFAULT_BLOCK_SIZE,
    replication_overhead: float = DEFAULT_REPLICATION_OVERHEAD,
) -> Partitioner:
    if index_type is IndexType.GRID:
        return GridPartitioner.for_indexing(input_size, mbr, block_size, replication_overhead)
    raise ConfigurationError(f"Unknown index type '{index_type.value}'")
