from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, List

import pyarrow as pa
import pyarrow.parquet as pq
import pytest
import shapely
from shapely.geometry import Point

from geo_indexer.datasource import DataSource
from geo_indexer.geometry import Rectangle


class StubPartitioner:
    """Looks up the overlap set of a shape by its WKT."""

    def __init__(self, overlaps: Dict[str, Iterable[int]], count: int):
        self._overlaps = {k: frozenset(v) for k, v in overlaps.items()}
        self._count = count

    def overlap_partitions(self, shape: Any) -> FrozenSet[int]:
        return self._overlaps.get(shape.wkt, frozenset())

    def partition_count(self) -> int:
        return self._count

    def partition_mbr(self, partition_id: int) -> Rectangle:
        return Rectangle(0, 0, 1, 1)


class ListSource(DataSource):
    def __init__(self, chunks: List[List[Any]]):
        self.chunks = chunks

    def splits(self) -> List[int]:
        return list(range(len(self.chunks)))

    def read_split(self, split: int) -> List[Any]:
        return list(self.chunks[split])

    def size_bytes(self) -> int:
        return 1


def read_partition(path: Path) -> List[Any]:
    col = pq.read_table(path)["geometry"].to_pylist()
    return list(shapely.from_wkb(col))


def write_geoparquet(path: Path, geoms: List[Any], row_group_size: int = 2) -> Path:
    col = pa.array(shapely.to_wkb(geoms).tolist(), type=pa.binary())
    pq.write_table(pa.table({"geometry": col}), path, row_group_size=row_group_size)
    return path


@pytest.fixture
def abcd():
    """Four shapes: A -> {0}, B -> {1}, C -> {0, 2}, D -> {}."""
    a, b, c, d = Point(0, 0), Point(1, 1), Point(2, 2), Point(3, 3)
    part = StubPartitioner({a.wkt: [0], b.wkt: [1], c.wkt: [0, 2], d.wkt: []}, count=3)
    return (a, b, c, d), part


@pytest.fixture
def points_file(tmp_path: Path) -> Path:
    path = tmp_path / "points.txt"
    lines = [f"{x},{y}" for x in range(10) for y in range(10)]
    path.write_text("\n".join(lines) + "\n")
    return path
