from __future__ import annotations
from enum import Enum
from itertools import islice
from typing import Any, List, Optional
import logging
import os

import pyarrow.parquet as pq
import shapely
from shapely import from_wkb, from_wkt
from shapely.errors import GEOSException
from shapely.geometry import Point, box

from .errors import ConfigurationError
from .geometry import Rectangle, mbr_of_bounds

logger = logging.getLogger(__name__)


class ShapeType(str, Enum):
    POINT = "point"
    RECTANGLE = "rectangle"
    POLYGON = "polygon"

    @classmethod
    def parse(cls, text: str) -> "ShapeType":
        s = (text or "").strip().lower()
        for member in cls:
            if member.value == s:
                return member
        raise ConfigurationError(f"Unsupported shape type '{text}' (point|rectangle|polygon)")


class DataSource:
    """
    Input split into independently readable chunks. ``read_split(i)`` can be
    called again for the same ``i`` and returns the same shapes.
    """
    def splits(self) -> List[int]:
        raise NotImplementedError

    def read_split(self, split: int) -> List[Any]:
        raise NotImplementedError

    def size_bytes(self) -> int:
        raise NotImplementedError


# ------------------------- GeoParquet source ------------------------- #
class GeoParquetSource(DataSource):
    def __init__(self, path: str, geom_col: str = "geometry"):
        self.path = str(path)
        self.geom_col = geom_col
        self._pf = pq.ParquetFile(self.path)
        if geom_col not in self._pf.schema_arrow.names:
            raise ConfigurationError(f"Missing geometry column '{geom_col}' in {self.path}")
        self._num_row_groups = self._pf.num_row_groups
        logger.info("GeoParquetSource opened %s with %d row groups", self.path, self._num_row_groups)

    def splits(self) -> List[int]:
        return list(range(self._num_row_groups))

    def read_split(self, split: int) -> List[Any]:
        logger.debug("Reading row group %d/%d", split, self._num_row_groups)
        # ParquetFile handles are not shared across map threads
        pf = pq.ParquetFile(self.path)
        col = pf.read_row_group(split, columns=[self.geom_col])[self.geom_col]
        geoms = from_wkb(col.to_numpy(zero_copy_only=False))
        return [g for g in geoms if g is not None and not g.is_empty]

    def size_bytes(self) -> int:
        return os.path.getsize(self.path)


# ------------------------- Text source ------------------------- #
class TextShapeSource(DataSource):
    """
    One shape per line:
      - point:     ``x,y``
      - rectangle: ``x1,y1,x2,y2``
      - polygon:   WKT
    Splits are fixed ranges of ``lines_per_split`` lines.
    """

    def __init__(self, path: str, shape_type: ShapeType, lines_per_split: int = 100_000):
        self.path = str(path)
        self.shape_type = shape_type
        self.lines_per_split = max(1, int(lines_per_split))
        # byte offset of the first line of every split
        self._offsets: List[int] = []
        self._num_lines = 0
        offset = 0
        with open(self.path, "rb") as fin:
            for line in fin:
                if self._num_lines % self.lines_per_split == 0:
                    self._offsets.append(offset)
                offset += len(line)
                self._num_lines += 1
        logger.info("TextShapeSource opened %s (%d lines, shape=%s)",
                    self.path, self._num_lines, shape_type.value)

    def splits(self) -> List[int]:
        return list(range(len(self._offsets)))

    def read_split(self, split: int) -> List[Any]:
        first = split * self.lines_per_split
        out: List[Any] = []
        with open(self.path, "rb") as fin:
            fin.seek(self._offsets[split])
            for lineno, raw in enumerate(islice(fin, self.lines_per_split), start=first):
                line = raw.decode("utf-8").strip()
                if not line:
                    continue
                try:
                    out.append(self._parse_line(line))
                except (ValueError, GEOSException) as e:
                    logger.warning("Skipping malformed line %d in %s: %s", lineno + 1, self.path, e)
        return out

    def _parse_line(self, line: str):
        if self.shape_type is ShapeType.POLYGON:
            return from_wkt(line)
        coords = [float(v) for v in line.split(",")]
        if self.shape_type is ShapeType.POINT:
            if len(coords) != 2:
                raise ValueError(f"expected x,y but got {len(coords)} values")
            return Point(coords[0], coords[1])
        if len(coords) != 4:
            raise ValueError(f"expected x1,y1,x2,y2 but got {len(coords)} values")
        return box(*Rectangle(*coords).as_tuple())

    def size_bytes(self) -> int:
        return os.path.getsize(self.path)


# ------------------------- Helpers ------------------------- #
def is_parquet_path(path: str) -> bool:
    return str(path).lower().endswith((".parquet", ".geoparquet"))


def open_source(path: str, shape_type: ShapeType, geom_col: str = "geometry") -> DataSource:
    if is_parquet_path(path):
        logger.info("Using GeoParquetSource for %s", path)
        return GeoParquetSource(path, geom_col=geom_col)
    logger.info("Using TextShapeSource for %s", path)
    return TextShapeSource(path, shape_type)


def compute_mbr(source: DataSource) -> Rectangle:
    """Scan every split once and return the MBR of all shapes."""
    mbr: Optional[Rectangle] = None
    n_shapes = 0
    for split in source.splits():
        geoms = source.read_split(split)
        if not geoms:
            continue
        n_shapes += len(geoms)
        part = mbr_of_bounds(shapely.bounds(geoms))
        if part is not None:
            mbr = part if mbr is None else mbr.merge(part)
    if mbr is None:
        raise ValueError("Cannot compute MBR: input contains no shapes")
    logger.info("Computed input MBR %s over %d shapes", mbr, n_shapes)
    return mbr

