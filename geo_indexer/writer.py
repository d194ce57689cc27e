from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq
import shapely

from .geometry import Rectangle, mbr_of_bounds
from .records import Data, End, Record

logger = logging.getLogger(__name__)

MASTER_FILE = "_master.grid"
_MASTER_COLUMNS = ["id", "filename", "record_count", "minx", "miny", "maxx", "maxy"]


@dataclass(frozen=True)
class PartitionInfo:
    partition_id: int
    filename: str
    record_count: int
    mbr: Optional[Rectangle]


def partition_filename(partition_id: int) -> str:
    return f"part-{partition_id:05d}.parquet"


def geoparquet_schema(geom_col: str = "geometry") -> pa.Schema:
    """
    Single WKB column with a minimal GeoParquet 'geo' block:
      - version: 1.1.0
      - primary_column: <geom_col>
      - columns.<geom_col>.encoding: WKB
    """
    geo = {
        "version": "1.1.0",
        "primary_column": geom_col,
        "columns": {geom_col: {"encoding": "WKB", "geometry_types": []}},
    }
    md = {b"geo": json.dumps(geo, separators=(",", ":")).encode("utf-8")}
    return pa.schema([(geom_col, pa.binary())], metadata=md)


# ---------------------------------------------------------------------------
# One open partition file
# ---------------------------------------------------------------------------
class _OpenPartition:
    def __init__(self, path: Path, schema: pa.Schema, compression: str):
        self.path = path
        self._schema = schema
        self._writer = pq.ParquetWriter(str(path), schema, compression=compression)
        self._buffer: List[Any] = []
        self.record_count = 0
        self.mbr: Optional[Rectangle] = None

    def append(self, shape: Any) -> None:
        self._buffer.append(shape)
        self.record_count += 1

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def flush(self) -> None:
        if not self._buffer:
            return
        part = mbr_of_bounds(shapely.bounds(self._buffer))
        if part is not None:
            self.mbr = part if self.mbr is None else self.mbr.merge(part)
        col = pa.array(shapely.to_wkb(self._buffer).tolist(), type=pa.binary())
        self._writer.write_table(pa.table([col], schema=self._schema))
        self._buffer = []

    def close(self) -> None:
        self.flush()
        self._writer.close()

    def abort(self) -> None:
        self._buffer = []
        self._writer.close()
        self.path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Partition writer
# ---------------------------------------------------------------------------
class PartitionWriter:
    """
    Consumes the closer's record stream. A partition file is opened on its first
    ``Data`` record and finalized on its ``End``; nothing else closes it.
    """

    def __init__(
        self,
        outdir: str | Path,
        geom_col: str = "geometry",
        compression: str = "zstd",
        flush_rows: int = 65536,
    ):
        self.outdir = Path(outdir)
        self.outdir.mkdir(parents=True, exist_ok=True)
        self.compression = compression
        self.flush_rows = max(1, int(flush_rows))
        self._schema = geoparquet_schema(geom_col)
        self._open: Dict[int, _OpenPartition] = {}
        self._closed: Dict[int, PartitionInfo] = {}

    def collect(self, record: Record) -> None:
        if isinstance(record, Data):
            self._write(record.partition_id, record.shape)
        elif isinstance(record, End):
            self._finish(record.partition_id)
        else:
            raise TypeError(f"Unexpected record type {type(record).__name__}")

    def _write(self, pid: int, shape: Any) -> None:
        if pid in self._closed:
            raise ValueError(f"Partition {pid} received data after its end marker")
        part = self._open.get(pid)
        if part is None:
            path = self.outdir / partition_filename(pid)
            part = _OpenPartition(path, self._schema, self.compression)
            self._open[pid] = part
            logger.debug("Opened %s", path)
        part.append(shape)
        if part.buffered >= self.flush_rows:
            part.flush()

    def _finish(self, pid: int) -> None:
        part = self._open.pop(pid, None)
        if part is None:
            raise ValueError(f"End marker for partition {pid} which has no open file")
        part.close()
        self._closed[pid] = PartitionInfo(pid, part.path.name, part.record_count, part.mbr)
        logger.debug("Closed %s (%d records)", part.path, part.record_count)

    @property
    def partitions(self) -> List[PartitionInfo]:
        return [self._closed[pid] for pid in sorted(self._closed)]

    def close(self) -> List[PartitionInfo]:
        """Drop any partition still open and return the finalized ones."""
        for pid, part in self._open.items():
            logger.warning("Partition %d was never closed, discarding %s", pid, part.path)
            part.abort()
        self._open.clear()
        return self.partitions


# ---------------------------------------------------------------------------
# Master file
# ---------------------------------------------------------------------------
def write_master_file(outdir: str | Path, infos: List[PartitionInfo]) -> Path:
    rows = []
    for info in sorted(infos, key=lambda i: i.partition_id):
        mbr = info.mbr.as_tuple() if info.mbr is not None else (float("nan"),) * 4
        rows.append((info.partition_id, info.filename, info.record_count, *mbr))
    df = pd.DataFrame(rows, columns=_MASTER_COLUMNS)
    path = Path(outdir) / MASTER_FILE
    df.to_csv(path, index=False)
    logger.info("Wrote master file %s with %d partitions", path, len(rows))
    return path


def read_master_file(outdir: str | Path) -> List[PartitionInfo]:
    df = pd.read_csv(Path(outdir) / MASTER_FILE)
    missing = set(_MASTER_COLUMNS) - set(df.columns)
    if missing:
        raise ValueError(f"Master file missing columns: {missing}")
    out: List[PartitionInfo] = []
    for r in df.itertuples(index=False):
        bounds = (r.minx, r.miny, r.maxx, r.maxy)
        mbr = None if pd.isna(list(bounds)).any() else Rectangle.from_bounds(bounds)
        out.append(PartitionInfo(int(r.id), str(r.filename), int(r.record_count), mbr))
    return out
