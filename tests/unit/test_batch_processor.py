# tests/unit/test_batch_processor.py
# ------------------------------------------------------------
# Purpose: Batch executor accounting, retry/backoff and timeout
#          behaviour. Sleeps are injected so nothing waits.
# ------------------------------------------------------------

import threading
import time

from src.pipeline.batch_processor import BatchProcessor
from src.pipeline.errors import BatchTimeoutError


def test_create_batches_keeps_order_and_remainder():
    bp = BatchProcessor(batch_size=2)
    assert bp.create_batches([1, 2, 3, 4, 5]) == [[1, 2], [3, 4], [5]]


def test_empty_or_non_list_input_returns_zero_result():
    bp = BatchProcessor()
    expected = {"success": 0, "failed": 0, "total": 0, "batches_processed": 0}
    assert bp.process([], lambda b, i: {"success": len(b), "failed": 0}) == expected
    assert bp.process(None, lambda b, i: {"success": 0, "failed": 0}) == expected


def test_retry_then_success_sleeps_with_growing_delay():
    sleeps = []
    attempts = {"n": 0}

    def flaky(batch, idx):
        attempts["n"] += 1
        if attempts["n"] <= 2:
            raise ConnectionError("transient")
        return {"success": len(batch), "failed": 0}

    bp = BatchProcessor(batch_size=10, retry_attempts=3, retry_delay_ms=100, timeout_ms=0, sleep=sleeps.append)
    result = bp.process([1, 2, 3], flaky)

    # First retry waits >= 100ms, second >= 200ms
    assert sleeps == [0.1, 0.2]
    assert result == {"success": 3, "failed": 0, "total": 3, "batches_processed": 1}


def test_exhausted_retries_count_whole_batch_failed_and_call_on_error():
    errors = []

    def broken(batch, idx):
        raise RuntimeError("boom")

    bp = BatchProcessor(
        batch_size=2,
        retry_attempts=2,
        retry_delay_ms=0,
        timeout_ms=0,
        sleep=lambda s: None,
        on_error=lambda e, batch, idx: errors.append((str(e), list(batch), idx)),
    )
    result = bp.process([1, 2, 3], broken)

    assert result["success"] == 0
    assert result["failed"] == 3
    assert result["batches_processed"] == 2
    assert sorted(e[2] for e in errors) == [0, 1]


def test_partial_failures_keep_success_plus_failed_equal_to_total():
    # Reported success is ignored: success is always batch size minus failed
    def half(batch, idx):
        return {"success": 999, "failed": len(batch) // 2}

    bp = BatchProcessor(batch_size=4, parallel_limit=3, timeout_ms=0)
    result = bp.process(list(range(10)), half)

    assert result["failed"] == 2 + 2 + 1
    assert result["success"] + result["failed"] == result["total"] == 10


def test_timeout_marks_batch_failed():
    release = threading.Event()

    def slow(batch, idx):
        release.wait(2)
        return {"success": len(batch), "failed": 0}

    errors = []
    bp = BatchProcessor(
        batch_size=5, retry_attempts=1, timeout_ms=50, on_error=lambda e, batch, idx: errors.append(e)
    )
    started = time.monotonic()
    result = bp.process([1, 2], slow)
    release.set()

    assert result["failed"] == 2
    assert time.monotonic() - started < 2
    (err,) = errors
    assert isinstance(err, BatchTimeoutError)
    assert err.timeout_ms == 50
    assert "timed out after 50ms" in str(err)


def test_parallel_limit_bounds_concurrency_and_reports_progress():
    lock = threading.Lock()
    state = {"running": 0, "peak": 0}
    progress = []

    def fn(batch, idx):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.01)
        with lock:
            state["running"] -= 1
        return {"success": len(batch), "failed": 0}

    bp = BatchProcessor(batch_size=1, parallel_limit=2, timeout_ms=0, on_progress=lambda p, s: progress.append(p))
    result = bp.process(list(range(6)), fn)

    assert state["peak"] <= 2
    assert result["batches_processed"] == 6
    assert progress[-1] == 100


def test_from_config_reads_processing_and_step_settings(cfg):
    bp = BatchProcessor.from_config(cfg, cfg["steps"]["orders"], "orders")
    assert bp.batch_size == 50
    assert bp.parallel_limit == 2
    assert bp.retry_attempts == 1
    assert bp.label == "orders"


def test_progress_rounds_half_up():
    progress = []
    bp = BatchProcessor(batch_size=1, timeout_ms=0, on_progress=lambda p, s: progress.append(p))

    bp.process(list(range(8)), lambda b, i: {"success": len(b), "failed": 0})

    assert progress == [13, 25, 38, 50, 63, 75, 88, 100]
