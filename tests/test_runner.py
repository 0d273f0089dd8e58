import io
import json
import logging

import numpy as np
import pytest

from dedistort_backend.parallel import chunked, parallel_for_rows, parallel_map
from dedistort_backend.progress import ProgressCounter, ProgressOperation
from dedistort_runner.error_handling import (
    AcceleratorError,
    MemoryManagementError,
    PreconditionError,
    ResourceAllocationError,
    log_exception,
    require,
    robust_processing,
)
from dedistort_runner.events import EventBroadcaster, emit, json_dumps_canonical
from dedistort_runner.fallback_mechanism import FallbackMechanism
from dedistort_runner.fits_utils import (
    discover_fits_files,
    fits_image_shape,
    is_fits_image_path,
    read_fits_float,
    write_fits_float,
)
from dedistort_runner.logging_config import setup_logging
from dedistort_runner.resources import ResourceManager, default_worker_count, total_host_memory


class TestErrorHandling:
    def test_require(self):
        require(True, "unused")
        with pytest.raises(PreconditionError, match="bad input"):
            require(False, "bad input")

    def test_precondition_error_is_a_value_error(self):
        assert issubclass(PreconditionError, ValueError)

    def test_robust_processing_translates_memory_errors(self):
        @robust_processing
        def allocate():
            raise MemoryError("too big")

        @robust_processing
        def leak():
            raise ResourceWarning("handles")

        with pytest.raises(MemoryManagementError):
            allocate()
        with pytest.raises(ResourceAllocationError):
            leak()

    def test_log_exception_reraises(self, caplog):
        @log_exception
        def broken():
            raise RuntimeError("boom")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(RuntimeError):
                broken()
        assert "boom" in caplog.text

    def test_log_exception_passes_preconditions_silently(self, caplog):
        @log_exception
        def invalid():
            raise PreconditionError("empty list")

        with caplog.at_level(logging.ERROR):
            with pytest.raises(PreconditionError):
                invalid()
        assert "Fehler in invalid" not in caplog.text


class TestFallbackMechanism:
    def test_primary_result(self):
        fallback = FallbackMechanism()
        assert fallback.execute_with_fallback(lambda x: x * 2, None, None, 3) == 6
        assert fallback.fallback_count == 0

    def test_fallback_function(self):
        def primary(x):
            raise AcceleratorError("kernel failed")

        fallback = FallbackMechanism()
        assert fallback.execute_with_fallback(primary, lambda x: x + 1, None, 3) == 4
        assert fallback.fallback_count == 1

    def test_handler_after_failed_fallback(self):
        def fail(*_):
            raise RuntimeError("nope")

        result = FallbackMechanism().execute_with_fallback(fail, fail, lambda e: str(e))
        assert result == "nope"

    def test_preconditions_are_not_caught(self):
        def invalid():
            raise PreconditionError("bad tile size")

        fallback = FallbackMechanism()
        with pytest.raises(PreconditionError):
            fallback.execute_with_fallback(invalid, lambda: 0)
        assert fallback.fallback_count == 0

    def test_primary_error_is_raised_without_alternatives(self):
        def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            FallbackMechanism().execute_with_fallback(fail)


class TestEvents:
    def test_emit_writes_canonical_lines(self):
        stream, log_fp = io.StringIO(), io.StringIO()
        emit({"b": 1, "a": 2}, log_fp, stream)
        assert stream.getvalue() == '{"a":2,"b":1}\n'
        assert log_fp.getvalue() == stream.getvalue()
        assert json_dumps_canonical({"x": [1, 2]}) == '{"x":[1,2]}'

    def test_progress_is_throttled(self):
        stream = io.StringIO()
        broadcaster = EventBroadcaster("run", stream=stream, min_delta=0.1)
        operation = ProgressOperation.root("Stacking")
        counter = ProgressCounter(broadcaster, operation, 100)

        for _ in range(100):
            counter.increment()

        events = [json.loads(line) for line in stream.getvalue().splitlines()]
        assert 5 <= len(events) <= 12
        assert events[-1]["progress"] == 1.0
        assert all(e["task"] == "Stacking" and e["run_id"] == "run" for e in events)

    def test_child_operations_name_their_parent(self):
        stream = io.StringIO()
        root = ProgressOperation.root("Dedistort")
        child = root.create_child("Iterations").update(0.5, "half way")
        EventBroadcaster("run", stream=stream).broadcast(child)
        event = json.loads(stream.getvalue())
        assert event["parent"] == root.id
        assert event["message"] == "half way"


class TestProgressOperation:
    def test_update_is_clamped_and_immutable(self):
        operation = ProgressOperation.root("task")
        updated = operation.update(1.5)
        assert updated.progress == 1.0
        assert operation.progress == 0.0
        assert updated.id == operation.id
        assert operation.update(-1).progress == 0.0


class TestParallel:
    def test_parallel_map_keeps_order(self):
        assert parallel_map(lambda x: x * x, range(20), max_workers=4) == [x * x for x in range(20)]
        assert parallel_map(lambda x: x, []) == []

    def test_parallel_map_propagates_errors(self):
        def fail(x):
            if x == 3:
                raise ValueError("three")
            return x

        with pytest.raises(ValueError):
            parallel_map(fail, range(5), max_workers=2)

    def test_chunked(self):
        assert [list(c) for c in chunked(range(5), 2)] == [[0, 1], [2, 3], [4]]

    def test_parallel_for_rows_covers_every_row(self):
        covered = np.zeros(70, dtype=int)

        def band(y0, y1):
            covered[y0:y1] += 1

        parallel_for_rows(band, 70, max_workers=3, rows_per_item=16)
        assert np.all(covered == 1)


class TestResources:
    def test_resource_status(self):
        manager = ResourceManager(memory_threshold=100.0)
        assert manager.check_resources() is True
        status = manager.get_resource_status()
        assert status["memory_total_gb"] > 0
        assert status["cpu_count"] >= 1
        assert status["peak_memory_usage_percent"] > 0

    def test_low_threshold_fails_check(self):
        assert ResourceManager(memory_threshold=0.0).check_resources() is False

    def test_worker_count(self):
        assert default_worker_count() >= 1
        assert default_worker_count(1) == 1
        assert total_host_memory() > 0


class TestFitsUtils:
    def test_round_trip_and_discovery(self, tmp_path):
        data = np.arange(12, dtype=np.float64).reshape(3, 4)
        write_fits_float(tmp_path / "b.fits", data)
        write_fits_float(tmp_path / "a.fit", data)
        (tmp_path / "notes.txt").write_text("x")

        loaded, header = read_fits_float(tmp_path / "b.fits")

        assert loaded.dtype == np.float32
        assert np.array_equal(loaded, data)
        assert header["NAXIS1"] == 4
        assert fits_image_shape(tmp_path / "b.fits") == (3, 4)
        assert [p.name for p in discover_fits_files(tmp_path)] == ["a.fit", "b.fits"]
        assert is_fits_image_path(tmp_path / "x.FTS")


def test_setup_logging_writes_log_file(tmp_path):
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        setup_logging(logging.INFO, str(tmp_path), log_prefix="run")
        logging.getLogger("dedistort_backend.test").info("hello")
        for handler in root.handlers:
            handler.flush()
        (log_file,) = tmp_path.glob("run_*.log")
        assert "hello" in log_file.read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])
