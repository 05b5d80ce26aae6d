# =========================================
# 📄 File: src/pipeline/batch_processor.py
# Purpose: Generic batch executor used by every stage
# - Split items into fixed-size batches (order preserved, remainder kept)
# - Run batches in groups of `parallel_limit` threads, waiting for the whole group
# - Retry each batch with backoff (delay x attempt) and a per-attempt timeout
# - Report progress after every terminal batch
# =========================================

import time
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from typing import Any, Callable, Dict, List, Optional, Sequence

from src.pipeline.errors import BatchTimeoutError

log = logging.getLogger(__name__)

BatchFn = Callable[[List[Any], int], Dict[str, int]]


def _empty_result() -> Dict[str, int]:
    return {"success": 0, "failed": 0, "total": 0, "batches_processed": 0}


class BatchProcessor:
    def __init__(
        self,
        batch_size: int = 100,
        parallel_limit: int = 1,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        timeout_ms: int = 300000,
        on_progress: Optional[Callable[[int, Dict[str, int]], None]] = None,
        on_error: Optional[Callable[[Exception, List[Any], int], None]] = None,
        label: str = "batch",
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.batch_size = max(1, int(batch_size))
        self.parallel_limit = max(1, int(parallel_limit))
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay_ms = retry_delay_ms
        self.timeout_ms = timeout_ms
        self.on_progress = on_progress
        self.on_error = on_error
        self.label = label
        self._sleep = sleep

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], step: Dict[str, Any], label: str, **kwargs) -> "BatchProcessor":
        """Build an executor from the `processing` section plus one step's settings."""
        processing = cfg["processing"]
        kwargs.setdefault("on_progress", _log_progress(label))
        return cls(
            batch_size=step.get("batch_size", 100),
            parallel_limit=step.get("parallel_limit", 1),
            retry_attempts=processing["retry_attempts"],
            retry_delay_ms=processing["retry_delay_ms"],
            timeout_ms=processing["timeout_ms"],
            label=label,
            **kwargs,
        )

    def create_batches(self, items: Sequence[Any]) -> List[List[Any]]:
        return [list(items[i:i + self.batch_size]) for i in range(0, len(items), self.batch_size)]

    def process(self, items: Sequence[Any], fn: BatchFn) -> Dict[str, int]:
        """
        Drive `fn(batch, batch_index) -> {"success", "failed"}` over all items.

        Accounting is per item: a batch that reports `failed` items contributes the rest
        as successes; a batch that exhausts its retries counts all its items as failed.
        So success + failed == total always holds.
        """
        if not isinstance(items, (list, tuple)) or len(items) == 0:
            return _empty_result()

        batches = self.create_batches(items)
        result = _empty_result()
        result["total"] = len(items)
        log.info(
            f"[{self.label}] {len(items)} items in {len(batches)} batches "
            f"(size={self.batch_size}, parallel={self.parallel_limit})"
        )

        with ThreadPoolExecutor(max_workers=self.parallel_limit) as pool:
            for group_start in range(0, len(batches), self.parallel_limit):
                group = range(group_start, min(group_start + self.parallel_limit, len(batches)))
                futures = {pool.submit(self._run_with_retry, fn, batches[idx], idx): idx for idx in group}

                # Tally in completion order; the whole group finishes before the next starts
                for fut in as_completed(futures):
                    idx = futures[fut]
                    success, failed = fut.result()
                    result["success"] += success
                    result["failed"] += failed
                    result["batches_processed"] += 1
                    if self.on_progress:
                        # Half-up, so 12.5% reports as 13
                        progress = int(result["batches_processed"] / len(batches) * 100 + 0.5)
                        self.on_progress(progress, {"success": result["success"], "failed": result["failed"]})

        log.info(f"[{self.label}] done: {result['success']} success, {result['failed']} failed")
        return result

    def _run_with_retry(self, fn: BatchFn, batch: List[Any], idx: int):
        """Returns (success, failed) item counts for one batch; never raises."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                outcome = self._run_with_timeout(fn, batch, idx) or {}
                failed = min(len(batch), max(0, int(outcome.get("failed", 0) or 0)))
                return len(batch) - failed, failed
            except Exception as e:  # fn errors are non-fatal to the run
                last_error = e
                if attempt < self.retry_attempts:
                    delay_ms = self.retry_delay_ms * attempt
                    log.warning(
                        f"[{self.label}] batch {idx} attempt {attempt}/{self.retry_attempts} failed: {e}. "
                        f"Retrying with exponential backoff in {delay_ms}ms"
                    )
                    self._sleep(delay_ms / 1000.0)

        log.error(f"[{self.label}] batch {idx} failed after {self.retry_attempts} attempts: {last_error}")
        if self.on_error:
            try:
                self.on_error(last_error, batch, idx)
            except Exception:
                log.exception(f"[{self.label}] error callback raised for batch {idx}")
        return 0, len(batch)

    def _run_with_timeout(self, fn: BatchFn, batch: List[Any], idx: int):
        if not self.timeout_ms:
            return fn(batch, idx)
        # Dedicated worker per attempt: a timed-out call cannot be killed, only abandoned
        runner = ThreadPoolExecutor(max_workers=1)
        try:
            fut = runner.submit(fn, batch, idx)
            try:
                return fut.result(timeout=self.timeout_ms / 1000.0)
            except FuturesTimeout:
                raise BatchTimeoutError(self.timeout_ms)
        finally:
            runner.shutdown(wait=False)


def _log_progress(label: str):
    def report(progress: int, stats: Dict[str, int]) -> None:
        log.info(f"{label} progress: {progress}% ({stats['success']} success, {stats['failed']} failed)")
    return report
