from __future__ import annotations
from typing import Optional, Protocol, Tuple
import logging
import os

logger = logging.getLogger(__name__)

# map tasks per advertised map slot
MAP_OVERSUBSCRIPTION = 5
MIN_TASKS = 1


class ResourcePool(Protocol):
    def map_slots(self) -> int: ...
    def reduce_slots(self) -> int: ...


class LocalResourcePool:
    """Advertises one map and one reduce slot per CPU unless told otherwise."""

    def __init__(self, map_slots: Optional[int] = None, reduce_slots: Optional[int] = None):
        cpus = os.cpu_count() or 1
        self._map_slots = cpus if map_slots is None else int(map_slots)
        self._reduce_slots = cpus if reduce_slots is None else int(reduce_slots)

    def map_slots(self) -> int:
        return self._map_slots

    def reduce_slots(self) -> int:
        return self._reduce_slots


def plan_tasks(pool: ResourcePool) -> Tuple[int, int]:
    """Return ``(num_map_tasks, num_reduce_tasks)`` for one job."""
    map_slots = pool.map_slots()
    reduce_slots = pool.reduce_slots()
    num_maps = MAP_OVERSUBSCRIPTION * max(MIN_TASKS, map_slots)
    num_reduces = max(MIN_TASKS, reduce_slots)
    logger.info("Cluster advertises %d map / %d reduce slots -> %d map tasks, %d reduce tasks",
                map_slots, reduce_slots, num_maps, num_reduces)
    return num_maps, num_reduces
