from __future__ import annotations
from pathlib import Path
from time import perf_counter
from typing import Optional
import logging

from .config import JobConfig
from .datasource import compute_mbr, open_source
from .errors import JobFailedError
from .partitioner import create_partitioner
from .resources import LocalResourcePool, ResourcePool, plan_tasks
from .runner import JobSpec, LocalJobRunner, RunningJob


def repartition(
    config: JobConfig,
    resources: Optional[ResourcePool] = None,
    logger: Optional[logging.Logger] = None,
) -> RunningJob:
    """
    Build the spatial index described by ``config``.

    Configuration errors are raised before the input is read. In background mode
    the running job handle is returned right away; otherwise this blocks until
    the job ends and raises JobFailedError if it failed.
    """
    log = logger or logging.getLogger(__name__)
    config.validate()

    source = open_source(config.input_path, config.shape, geom_col=config.geom_col)

    # Set input file MBR if not already set
    mbr = config.mbr
    if mbr is None:
        try:
            mbr = compute_mbr(source)
        except ValueError as e:
            raise JobFailedError(f"Cannot index {config.input_path}: {e}") from e
    else:
        log.info("Using MBR %s from configuration", mbr)

    partitioner = create_partitioner(
        config.index,
        source.size_bytes(),
        mbr,
        block_size=config.block_size,
        replication_overhead=config.replication_overhead,
    )

    num_maps, num_reduces = plan_tasks(resources or LocalResourcePool())
    runner = LocalJobRunner(num_maps, num_reduces, max_attempts=config.max_attempts, logger=log)
    spec = JobSpec(
        source=source,
        partitioner=partitioner,
        output_path=Path(config.output_path),
        overwrite=config.overwrite,
        geom_col=config.geom_col,
        compression=config.compression,
    )

    job = runner.submit(spec)
    if config.background:
        log.info("Running %s in background", job.job_id)
        return job
    job.wait_for_completion()
    return job


def index(
    config: JobConfig,
    resources: Optional[ResourcePool] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Run the indexing job to completion and return the wall-clock time in ms."""
    t1 = perf_counter()
    repartition(config, resources=resources, logger=logger).wait_for_completion()
    t2 = perf_counter()
    return int((t2 - t1) * 1000)
