from __future__ import annotations
from typing import Any, Callable, Iterable, Optional
import logging

from .records import Data, End, Record


class Closer:
    """
    Reduce stage: write out one partition's group, then close it with ``End``.

    Called once per partition id that received at least one record, so an empty
    partition never produces an ``End`` (nor a file).
    """

    def __init__(self, logger: Optional[logging.Logger | logging.LoggerAdapter] = None) -> None:
        self._log = logger or logging.getLogger(__name__)
        self.groups_closed = 0
        self.records_written = 0

    def reduce(self, partition_id: int, shapes: Iterable[Any], emit: Callable[[Record], None]) -> int:
        written = 0
        for shape in shapes:
            emit(Data(partition_id, shape))
            written += 1
        emit(End(partition_id))

        self.groups_closed += 1
        self.records_written += written
        self._log.debug("Closed partition %d after %d records", partition_id, written)
        return written
