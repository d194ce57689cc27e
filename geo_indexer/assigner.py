from __future__ import annotations
from typing import Any, Callable, Iterable, Optional
import logging
from time import perf_counter

from .partitioner import Partitioner
from .records import Data, Record

# shapes between two progress() heartbeats
PROGRESS_INTERVAL = 0x10000


class Assigner:
    """
    Map stage: replicate every shape into each partition it overlaps.

    ``emit`` receives one ``Data`` record per (shape, overlapping partition). An
    ``OSError`` raised by ``emit`` drops that single replica and is counted in
    ``dropped``; the rest of the batch continues.
    """

    def __init__(
        self,
        partitioner: Partitioner,
        logger: Optional[logging.Logger | logging.LoggerAdapter] = None,
        progress_interval: int = PROGRESS_INTERVAL,
    ) -> None:
        self._part = partitioner
        self._log = logger or logging.getLogger(__name__)
        self._progress_interval = max(1, int(progress_interval))
        self.shapes_read = 0
        self.records_emitted = 0
        self.dropped = 0

    def map(
        self,
        shapes: Iterable[Any],
        emit: Callable[[Record], None],
        progress: Optional[Callable[[], None]] = None,
    ) -> int:
        start_time = perf_counter()
        emitted = 0
        n = 0
        for n, shape in enumerate(shapes, start=1):
            for pid in sorted(self._part.overlap_partitions(shape)):
                try:
                    emit(Data(pid, shape))
                except OSError as e:
                    self.dropped += 1
                    self._log.warning("Dropped replica for partition %d: %s", pid, e, exc_info=True)
                    continue
                emitted += 1
            self.shapes_read += 1
            if progress is not None and n % self._progress_interval == 0:
                progress()

        self.records_emitted += emitted
        self._log.debug("Assigned %d shapes -> %d records (%d dropped so far) in %.3f seconds",
                        n, emitted, self.dropped, perf_counter() - start_time)
        return emitted
