from __future__ import annotations
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from time import monotonic, perf_counter
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, TypeVar
import logging
import os
import shutil
import threading
import uuid
from datetime import datetime

from .assigner import Assigner
from .closer import Closer
from .datasource import DataSource
from .errors import JobCancelledError, JobFailedError, OutputExistsError, TaskFailedError
from .partitioner import Partitioner
from .records import Data
from .writer import PartitionInfo, PartitionWriter, write_master_file

logger = logging.getLogger(__name__)

T = TypeVar("T")
TEMP_DIR = "_temporary"


# ---------------------------------------------------------------------------
# Job bookkeeping
# ---------------------------------------------------------------------------
class JobCounters:
    NAMES = (
        "map_input_records",
        "map_output_records",
        "dropped_records",
        "reduce_input_groups",
        "reduce_output_records",
        "partitions_closed",
        "failed_task_attempts",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._values: Dict[str, int] = {name: 0 for name in self.NAMES}

    def incr(self, name: str, n: int = 1) -> None:
        with self._lock:
            self._values[name] += n

    def __getitem__(self, name: str) -> int:
        with self._lock:
            return self._values[name]

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


class JobLogAdapter(logging.LoggerAdapter):
    """Prefixes messages with ``[job_id]`` or ``[job_id/task_id]``."""

    def process(self, msg, kwargs):
        job_id = self.extra.get("job_id", "?")
        task_id = self.extra.get("task_id")
        prefix = f"{job_id}/{task_id}" if task_id else job_id
        return f"[{prefix}] {msg}", kwargs

    def for_task(self, task_id: str) -> "JobLogAdapter":
        return JobLogAdapter(self.logger, {**self.extra, "task_id": task_id})


def new_job_id() -> str:
    return f"job_{datetime.now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:6]}"


@dataclass
class JobSpec:
    source: DataSource
    partitioner: Partitioner
    output_path: Path
    overwrite: bool = False
    geom_col: str = "geometry"
    compression: str = "zstd"
    job_id: str = field(default_factory=new_job_id)


@dataclass(frozen=True)
class JobResult:
    job_id: str
    elapsed_ms: int
    counters: Dict[str, int]
    partitions: List[PartitionInfo]


class RunningJob:
    """Handle on a submitted job; safe to poll from any thread."""

    def __init__(self, job_id: str, future: "Future[JobResult]", cancel: threading.Event,
                 counters: JobCounters):
        self.job_id = job_id
        self._future = future
        self._cancel = cancel
        self._started = perf_counter()
        self.counters = counters

    def is_complete(self) -> bool:
        return self._future.done()

    def is_successful(self) -> bool:
        return self._future.done() and self._future.exception() is None

    def wait_for_completion(self, timeout: Optional[float] = None) -> JobResult:
        """Block until the job ends. Raises JobFailedError if it failed."""
        return self._future.result(timeout=timeout)

    def failure(self) -> Optional[BaseException]:
        """The exception the job ended with, or None while running or on success."""
        if not self._future.done():
            return None
        return self._future.exception()

    def add_done_callback(self, fn: Callable[["RunningJob"], None]) -> None:
        self._future.add_done_callback(lambda _: fn(self))

    def kill(self) -> None:
        logger.info("Kill requested for %s", self.job_id)
        self._cancel.set()

    @property
    def elapsed_ms(self) -> int:
        if self._future.done() and self._future.exception() is None:
            return self._future.result().elapsed_ms
        return int((perf_counter() - self._started) * 1000)


# ---------------------------------------------------------------------------
# Shuffle
# ---------------------------------------------------------------------------
def group_by_partition(records: Iterable[Data]) -> Dict[int, List[Any]]:
    """Group shapes by partition id; keys come back in ascending order."""
    groups: Dict[int, List[Any]] = {}
    for rec in records:
        groups.setdefault(rec.partition_id, []).append(rec.shape)
    return {pid: groups[pid] for pid in sorted(groups)}


def deal_splits(splits: List[int], num_tasks: int) -> List[List[int]]:
    """Round-robin splits over at most ``num_tasks`` non-empty tasks."""
    n = max(1, min(num_tasks, len(splits)))
    tasks: List[List[int]] = [[] for _ in range(n)]
    for i, split in enumerate(splits):
        tasks[i % n].append(split)
    return [t for t in tasks if t]


# ---------------------------------------------------------------------------
# Local job runner
# ---------------------------------------------------------------------------
class LocalJobRunner:
    """
    In-process map/shuffle/reduce engine on thread pools.

    Map attempts buffer their output and hand it to the shuffle only when they
    succeed. Reduce attempts write into a private attempt directory that is moved
    into the output directory on success. Failed attempts are retried up to
    ``max_attempts`` times, after which the job fails.
    """

    def __init__(
        self,
        num_map_tasks: int,
        num_reduce_tasks: int,
        max_attempts: int = 4,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.num_map_tasks = max(1, int(num_map_tasks))
        self.num_reduce_tasks = max(1, int(num_reduce_tasks))
        self.max_attempts = max(1, int(max_attempts))
        self.max_workers = max_workers or os.cpu_count() or 1
        self._base_logger = logger or logging.getLogger(__name__)
        self._heartbeats: Dict[str, float] = {}

    # ------------------------------------------------------------------
    def submit(self, spec: JobSpec) -> RunningJob:
        cancel = threading.Event()
        counters = JobCounters()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=spec.job_id)
        future = executor.submit(self.run, spec, cancel, counters)
        executor.shutdown(wait=False)
        logger.info("Submitted %s", spec.job_id)
        return RunningJob(spec.job_id, future, cancel, counters)

    def run(self, spec: JobSpec, cancel: Optional[threading.Event] = None,
            counters: Optional[JobCounters] = None) -> JobResult:
        cancel = cancel or threading.Event()
        counters = counters or JobCounters()
        log = JobLogAdapter(self._base_logger, {"job_id": spec.job_id})
        start_time = perf_counter()

        out = Path(spec.output_path)
        self._prepare_output(spec, out, log)
        tmp = out / TEMP_DIR
        tmp.mkdir(parents=True, exist_ok=True)
        try:
            shuffled = self._map_phase(spec, cancel, counters, log)
            infos = self._reduce_phase(spec, shuffled, tmp, out, cancel, counters, log)
            write_master_file(out, infos)
        except JobCancelledError:
            log.warning("Job killed")
            raise
        except Exception as e:
            log.error("Job failed: %s", e)
            raise JobFailedError(str(e), spec.job_id) from e
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

        elapsed_ms = int((perf_counter() - start_time) * 1000)
        log.info("Job completed in %d ms: %s", elapsed_ms, counters.snapshot())
        return JobResult(spec.job_id, elapsed_ms, counters.snapshot(), infos)

    def _prepare_output(self, spec: JobSpec, out: Path, log: JobLogAdapter) -> None:
        if out.exists():
            if not spec.overwrite:
                raise OutputExistsError(f"Output path {out} already exists", spec.job_id)
            log.info("Overwriting existing output %s", out)
            if out.is_dir():
                shutil.rmtree(out)
            else:
                out.unlink()
        out.mkdir(parents=True)

    # ------------------------------------------------------------------
    def _check_cancelled(self, cancel: threading.Event) -> None:
        if cancel.is_set():
            raise JobCancelledError("Job was killed")

    def _cancellable(self, items: Iterable[T], cancel: threading.Event) -> Iterator[T]:
        for item in items:
            self._check_cancelled(cancel)
            yield item

    def _with_retry(self, task_id: str, fn: Callable[[int], T], cancel: threading.Event,
                    counters: JobCounters, log: JobLogAdapter) -> T:
        last: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            self._check_cancelled(cancel)
            try:
                return fn(attempt)
            except JobCancelledError:
                raise
            except Exception as e:
                last = e
                counters.incr("failed_task_attempts")
                log.warning("Task %s attempt %d/%d failed: %s",
                            task_id, attempt, self.max_attempts, e, exc_info=True)
        raise TaskFailedError(task_id, self.max_attempts, last)

    def _run_tasks(self, fn: Callable[..., T], task_args: List[tuple], cancel: threading.Event) -> List[T]:
        """
        Run one phase on a thread pool. The first task that fails for good stops
        its siblings at their next shape or group, and its error is raised.
        """
        workers = max(1, min(self.max_workers, len(task_args)))
        with ThreadPoolExecutor(max_workers=workers) as ex:
            futures = [ex.submit(fn, *args) for args in task_args]
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            if any(f.exception() is not None for f in done):
                cancel.set()
                for f in futures:
                    f.cancel()

        errors = [f.exception() for f in futures if not f.cancelled() and f.exception() is not None]
        for e in errors:
            if not isinstance(e, JobCancelledError):
                raise e
        if errors:
            raise errors[0]
        return [f.result() for f in futures]

    def last_heartbeat(self, task_id: str) -> Optional[float]:
        return self._heartbeats.get(task_id)

    def _progress(self, task_id: str, log: JobLogAdapter) -> Callable[[], None]:
        def report() -> None:
            self._heartbeats[task_id] = monotonic()
            log.debug("Task %s is alive", task_id)
        return report

    # ------------------------------------------------------------------
    def _map_phase(self, spec: JobSpec, cancel: threading.Event, counters: JobCounters,
                   log: JobLogAdapter) -> List[Dict[int, List[Any]]]:
        tasks = deal_splits(spec.source.splits(), self.num_map_tasks)
        log.info("Map phase: %d tasks over %d partitions, %d reducers",
                 len(tasks), spec.partitioner.partition_count(), self.num_reduce_tasks)

        def run_task(task_idx: int, splits: List[int]) -> List[List[Data]]:
            task_id = f"m_{task_idx:05d}"
            task_log = log.for_task(task_id)

            def attempt(n: int) -> List[List[Data]]:
                buffers: List[List[Data]] = [[] for _ in range(self.num_reduce_tasks)]

                def emit(rec: Data) -> None:
                    buffers[rec.partition_id % self.num_reduce_tasks].append(rec)

                assigner = Assigner(spec.partitioner, logger=task_log)
                for split in splits:
                    shapes = spec.source.read_split(split)
                    assigner.map(self._cancellable(shapes, cancel), emit,
                                 progress=self._progress(task_id, task_log))
                counters.incr("map_input_records", assigner.shapes_read)
                counters.incr("map_output_records", assigner.records_emitted)
                counters.incr("dropped_records", assigner.dropped)
                return buffers

            return self._with_retry(task_id, attempt, cancel, counters, task_log)

        outputs = self._run_tasks(run_task, list(enumerate(tasks)), cancel)

        shuffled = []
        for r in range(self.num_reduce_tasks):
            shuffled.append(group_by_partition(rec for output in outputs for rec in output[r]))
        return shuffled

    def _reduce_phase(self, spec: JobSpec, shuffled: List[Dict[int, List[Any]]], tmp: Path,
                      out: Path, cancel: threading.Event, counters: JobCounters,
                      log: JobLogAdapter) -> List[PartitionInfo]:
        log.info("Reduce phase: %d tasks, %d partitions with data",
                 len(shuffled), sum(len(g) for g in shuffled))

        def run_task(task_idx: int, groups: Dict[int, List[Any]]) -> List[PartitionInfo]:
            task_id = f"r_{task_idx:05d}"
            task_log = log.for_task(task_id)

            def attempt(n: int) -> List[PartitionInfo]:
                attempt_dir = tmp / f"{task_id}_{n}"
                writer = PartitionWriter(attempt_dir, geom_col=spec.geom_col,
                                         compression=spec.compression)
                closer = Closer(logger=task_log)
                try:
                    for pid in self._cancellable(groups, cancel):
                        closer.reduce(pid, groups[pid], writer.collect)
                    infos = writer.close()
                    for info in infos:
                        os.replace(attempt_dir / info.filename, out / info.filename)
                finally:
                    writer.close()
                    shutil.rmtree(attempt_dir, ignore_errors=True)
                counters.incr("reduce_input_groups", closer.groups_closed)
                counters.incr("reduce_output_records", closer.records_written)
                counters.incr("partitions_closed", len(infos))
                return infos

            return self._with_retry(task_id, attempt, cancel, counters, task_log)

        results = self._run_tasks(run_task, list(enumerate(shuffled)), cancel)
        return [info for infos in results for info in infos]
