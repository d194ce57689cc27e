from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .datasource import ShapeType
from .errors import ConfigurationError
from .geometry import Rectangle
from .partitioner import DEFAULT_BLOCK_SIZE, DEFAULT_REPLICATION_OVERHEAD, IndexType

INDEX_TYPES_HELP = "grid, rtree, r+tree, str, str+"


@dataclass(frozen=True)
class JobConfig:
    input_path: Optional[str]
    output_path: Optional[str]
    shape_type: Optional[str]
    index_type: Optional[str]
    mbr: Optional[Rectangle] = None
    overwrite: bool = False
    background: bool = False
    block_size: int = DEFAULT_BLOCK_SIZE
    replication_overhead: float = DEFAULT_REPLICATION_OVERHEAD
    max_attempts: int = 4
    geom_col: str = "geometry"
    compression: str = "zstd"

    def validate(self) -> None:
        """Raise ConfigurationError for anything that would fail the job later."""
        if not self.input_path:
            raise ConfigurationError("Input path is not set")
        if not self.output_path:
            raise ConfigurationError("Output path is not set")
        if not self.shape_type:
            raise ConfigurationError("Shape type is not set")
        ShapeType.parse(self.shape_type)
        if not self.index_type:
            raise ConfigurationError(f"Index type is not set, expected one of: {INDEX_TYPES_HELP}")
        index = IndexType.parse(self.index_type)
        if not index.is_supported:
            raise ConfigurationError(f"Unknown index type '{self.index_type}'")
        if not Path(self.input_path).exists():
            raise ConfigurationError(f"Input path {self.input_path} does not exist")
        if self.block_size <= 0:
            raise ConfigurationError(f"Block size must be positive, got {self.block_size}")
        if self.replication_overhead < 0:
            raise ConfigurationError(f"Replication overhead must be >= 0, got {self.replication_overhead}")
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")

    @property
    def index(self) -> IndexType:
        return IndexType.parse(self.index_type or "")

    @property
    def shape(self) -> ShapeType:
        return ShapeType.parse(self.shape_type or "")
