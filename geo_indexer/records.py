"""
Records travelling between the assignment, shuffle and closure stages.

A partition's output stream is a run of ``Data`` records terminated by exactly one
``End``. On the wire the two are told apart by the sign of the key: data records
carry the partition id itself, the end marker of partition ``p`` carries
``-(p + 1)``.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Optional, Union


def encode_sentinel(partition_id: int) -> int:
    if partition_id < 0:
        raise ValueError(f"Partition id must be non-negative, got {partition_id}")
    return -(partition_id + 1)


def decode_sentinel(key: int) -> int:
    if key >= 0:
        raise ValueError(f"Not a sentinel key: {key}")
    return -key - 1


def is_sentinel(key: int) -> bool:
    return key < 0


@dataclass(frozen=True)
class Data:
    partition_id: int
    shape: Any

    @property
    def key(self) -> int:
        return self.partition_id

    @property
    def value(self) -> Any:
        return self.shape


@dataclass(frozen=True)
class End:
    partition_id: int

    @property
    def key(self) -> int:
        return encode_sentinel(self.partition_id)

    @property
    def value(self) -> None:
        return None


Record = Union[Data, End]


def record_from_key(key: int, value: Optional[Any] = None) -> Record:
    if is_sentinel(key):
        if value is not None:
            raise ValueError(f"Sentinel key {key} must not carry a value")
        return End(decode_sentinel(key))
    return Data(key, value)
