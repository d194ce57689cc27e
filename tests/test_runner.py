import threading
import time

import pytest
from shapely.geometry import Point

from geo_indexer.errors import JobCancelledError, JobFailedError, OutputExistsError
from geo_indexer.records import Data
from geo_indexer.runner import (
    JobCounters,
    JobSpec,
    LocalJobRunner,
    deal_splits,
    group_by_partition,
)
from geo_indexer.writer import MASTER_FILE, partition_filename, read_master_file

from conftest import ListSource, read_partition


def wkts(path):
    return sorted(g.wkt for g in read_partition(path))


class TestShuffleHelpers:
    def test_group_by_partition(self):
        recs = [Data(2, "c"), Data(0, "a"), Data(2, "d"), Data(1, "b")]
        groups = group_by_partition(recs)
        assert list(groups) == [0, 1, 2]
        assert groups[2] == ["c", "d"]

    def test_deal_splits(self):
        assert deal_splits([0, 1, 2, 3, 4], 2) == [[0, 2, 4], [1, 3]]
        assert deal_splits([0, 1], 10) == [[0], [1]]
        assert deal_splits([], 3) == []

    def test_counters(self):
        c = JobCounters()
        c.incr("map_input_records", 3)
        c.incr("map_input_records")
        assert c["map_input_records"] == 4
        assert c.snapshot()["dropped_records"] == 0


class TestLocalJobRunner:
    @pytest.mark.parametrize("reducers", [1, 2, 3])
    def test_end_to_end_scenario(self, tmp_path, abcd, reducers):
        (a, b, c, d), part = abcd
        out = tmp_path / "out"
        spec = JobSpec(source=ListSource([[a, b], [c, d]]), partitioner=part, output_path=out)

        result = LocalJobRunner(num_map_tasks=2, num_reduce_tasks=reducers).run(spec)

        assert wkts(out / partition_filename(0)) == sorted([a.wkt, c.wkt])
        assert wkts(out / partition_filename(1)) == [b.wkt]
        assert wkts(out / partition_filename(2)) == [c.wkt]
        assert sorted(p.name for p in out.glob("part-*")) == [partition_filename(i) for i in range(3)]
        assert result.counters["map_input_records"] == 4
        assert result.counters["map_output_records"] == 4
        assert result.counters["reduce_output_records"] == 4
        assert result.counters["partitions_closed"] == 3
        assert [p.record_count for p in result.partitions] == [2, 1, 1]
        assert [i.partition_id for i in read_master_file(out)] == [0, 1, 2]
        assert not (out / "_temporary").exists()
        assert result.elapsed_ms >= 0

    def test_empty_partitions_produce_no_file(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        out = tmp_path / "out"
        LocalJobRunner(1, 1).run(JobSpec(ListSource([[d]]), part, out))
        assert list(out.glob("part-*")) == []
        assert (out / MASTER_FILE).exists()

    def test_failed_map_attempt_is_retried_without_duplicates(self, tmp_path, abcd):
        (a, b, c, d), part = abcd

        class FlakySource(ListSource):
            failures = 1

            def read_split(self, split):
                if split == 1 and self.failures:
                    self.failures -= 1
                    raise OSError("lost connection")
                return super().read_split(split)

        out = tmp_path / "out"
        result = LocalJobRunner(1, 1).run(JobSpec(FlakySource([[a, b], [c]]), part, out))

        assert result.counters["failed_task_attempts"] == 1
        assert result.counters["map_output_records"] == 4
        assert wkts(out / partition_filename(0)) == sorted([a.wkt, c.wkt])

    def test_task_failing_every_attempt_fails_job(self, tmp_path, abcd):
        (a, b, c, d), part = abcd

        class BrokenSource(ListSource):
            def read_split(self, split):
                raise OSError("gone")

        out = tmp_path / "out"
        with pytest.raises(JobFailedError, match="failed after 2 attempt"):
            LocalJobRunner(1, 1, max_attempts=2).run(JobSpec(BrokenSource([[a]]), part, out))
        assert list(out.glob("part-*")) == []
        assert not (out / "_temporary").exists()

    def test_existing_output_is_a_job_failure(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        out = tmp_path / "out"
        out.mkdir()
        with pytest.raises(OutputExistsError):
            LocalJobRunner(1, 1).run(JobSpec(ListSource([[a]]), part, out))

    def test_overwrite_replaces_output(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        out = tmp_path / "out"
        out.mkdir()
        (out / "stale.txt").write_text("old")
        LocalJobRunner(1, 1).run(JobSpec(ListSource([[a]]), part, out, overwrite=True))
        assert not (out / "stale.txt").exists()
        assert (out / partition_filename(0)).exists()

    def test_submit_returns_handle(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        release = threading.Event()

        class SlowSource(ListSource):
            def read_split(self, split):
                release.wait(timeout=10)
                return super().read_split(split)

        job = LocalJobRunner(1, 1).submit(JobSpec(SlowSource([[a, b, c]]), part, tmp_path / "out"))
        assert not job.is_complete()
        release.set()
        result = job.wait_for_completion(timeout=30)
        assert job.is_complete()
        assert job.is_successful()
        assert result.job_id == job.job_id
        assert job.elapsed_ms == result.elapsed_ms

    def test_kill_cancels_job_without_partial_output(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        started = threading.Event()
        release = threading.Event()

        class SlowSource(ListSource):
            def read_split(self, split):
                started.set()
                release.wait(timeout=10)
                return super().read_split(split)

        out = tmp_path / "out"
        job = LocalJobRunner(1, 1).submit(JobSpec(SlowSource([[a, b, c]]), part, out))
        assert started.wait(timeout=10)
        job.kill()
        release.set()
        with pytest.raises(JobCancelledError):
            job.wait_for_completion(timeout=30)
        assert not job.is_successful()
        assert list(out.glob("part-*")) == []
        assert not (out / MASTER_FILE).exists()

    def test_progress_heartbeat_recorded(self, tmp_path):
        from geo_indexer.geometry import Rectangle
        from geo_indexer.partitioner import GridPartitioner

        shapes = [Point(i % 7, i % 5) for i in range(0x10000)]
        runner = LocalJobRunner(1, 1)
        grid = GridPartitioner(Rectangle(0, 0, 7, 5), 1, 1)
        runner.run(JobSpec(ListSource([shapes]), grid, tmp_path / "out"))
        assert runner.last_heartbeat("m_00000") is not None

    def test_done_callback_receives_handle(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        done = threading.Event()
        seen = []

        def on_done(job):
            seen.append((job.is_complete(), job.failure()))
            done.set()

        job = LocalJobRunner(1, 1).submit(JobSpec(ListSource([[a]]), part, tmp_path / "out"))
        job.add_done_callback(on_done)
        assert done.wait(timeout=30)
        assert seen == [(True, None)]

    def test_failure_exposes_job_error(self, tmp_path, abcd):
        (a, b, c, d), part = abcd
        out = tmp_path / "out"
        out.mkdir()
        job = LocalJobRunner(1, 1).submit(JobSpec(ListSource([[a]]), part, out))
        with pytest.raises(OutputExistsError):
            job.wait_for_completion(timeout=30)
        assert isinstance(job.failure(), OutputExistsError)

    def test_permanent_map_failure_stops_sibling_tasks(self, tmp_path):
        from geo_indexer.geometry import Rectangle
        from geo_indexer.partitioner import GridPartitioner

        class SlowGrid(GridPartitioner):
            def overlap_partitions(self, shape):
                time.sleep(0.005)
                return super().overlap_partitions(shape)

        class HalfBrokenSource(ListSource):
            def read_split(self, split):
                if split == 0:
                    raise OSError("gone")
                return super().read_split(split)

        shapes = [Point(i % 10, i % 7) for i in range(1000)]
        grid = SlowGrid(Rectangle(0, 0, 10, 7), 2, 2)
        counters = JobCounters()
        runner = LocalJobRunner(2, 1, max_attempts=1, max_workers=2)

        started = time.monotonic()
        with pytest.raises(JobFailedError, match="failed after 1 attempt"):
            runner.run(JobSpec(HalfBrokenSource([[], shapes]), grid, tmp_path / "out"), counters=counters)

        assert counters["map_output_records"] == 0
        assert time.monotonic() - started < 4
        assert list((tmp_path / "out").glob("part-*")) == []
