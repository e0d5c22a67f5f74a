"""
scanner.py — concurrent, adaptively-splitting eth_getLogs over a block span.

- Partition [from, to] into windows no wider than max_span.
- A bounded pool of workers pulls windows from one shared deque.
- A window refused as too wide / too dense is bisected and both halves go back
  on the queue, so the split depth adapts to whichever endpoint served it.
- A single-block window that is still refused fails the whole scan.
- On deadline expiry the scan stops handing out work and reports only the
  contiguous prefix of [from, to] that finished; later windows are dropped so
  the caller can resume from `covered_to + 1` without double counting.
"""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable

from .rotation import AllEndpointsExhausted, DeadlineExceeded, RangeTooWide, Rotator
from .rpc import SERVER_ERROR, EndpointRejected, hex_block

logger = logging.getLogger(__name__)


class ScanFailed(RuntimeError):
    pass


@dataclass(frozen=True)
class BlockRange:
    from_block: int
    to_block: int

    @property
    def width(self) -> int:
        return self.to_block - self.from_block + 1

    def split(self) -> tuple["BlockRange", "BlockRange"]:
        mid = (self.from_block + self.to_block) // 2
        return BlockRange(self.from_block, mid), BlockRange(mid + 1, self.to_block)

    def __str__(self) -> str:
        return f"[{self.from_block:,} - {self.to_block:,}]"


def partition(from_block: int, to_block: int, max_span: int) -> list[BlockRange]:
    out = []
    cur = from_block
    while cur <= to_block:
        hi = min(cur + max_span - 1, to_block)
        out.append(BlockRange(cur, hi))
        cur = hi + 1
    return out


@dataclass
class ScanResult:
    from_block: int
    to_block: int
    logs: list[dict] = field(default_factory=list)
    covered_to: int = -1
    fetched: list[BlockRange] = field(default_factory=list)
    splits: int = 0

    @property
    def complete(self) -> bool:
        return self.covered_to >= self.to_block


class _ScanJob:
    def __init__(self, windows: list[BlockRange], deadline: float | None):
        self.work: deque[BlockRange] = deque(windows)
        self.cond = threading.Condition()
        self.in_flight = 0
        self.deadline = deadline
        self.done: dict[int, tuple[BlockRange, list[dict]]] = {}
        self.error: Exception | None = None
        self.deadline_hit = False
        self.splits = 0

    @property
    def stopped(self) -> bool:
        return self.error is not None or self.deadline_hit


def _validate_logs(endpoint: str, result):
    if result is None:
        return []
    if not isinstance(result, list):
        raise EndpointRejected(SERVER_ERROR, endpoint, f"eth_getLogs returned {type(result).__name__}")
    if not all(isinstance(log, dict) for log in result):
        raise EndpointRejected(SERVER_ERROR, endpoint, "eth_getLogs returned non-object entries")
    return result


class RangeScanner:
    def __init__(
        self,
        rotator: Rotator,
        address: str,
        topics: list,
        max_span: int = 10_000,
        concurrency: int = 4,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rotator = rotator
        self.address = address
        self.topics = topics
        self.max_span = max_span
        self.concurrency = max(1, concurrency)
        self._clock = clock

    def _get_logs(self, rng: BlockRange, deadline: float | None) -> list[dict]:
        params = [{
            "address": self.address,
            "topics": self.topics,
            "fromBlock": hex_block(rng.from_block),
            "toBlock": hex_block(rng.to_block),
        }]
        return self.rotator.call("eth_getLogs", params, deadline=deadline, validate=_validate_logs)

    def _worker(self, job: _ScanJob) -> None:
        while True:
            with job.cond:
                while not job.work and job.in_flight > 0 and not job.stopped:
                    job.cond.wait()
                if job.stopped or not job.work:
                    job.cond.notify_all()
                    return
                if job.deadline is not None and self._clock() >= job.deadline:
                    logger.warning("Scan deadline reached with %d windows queued", len(job.work))
                    job.deadline_hit = True
                    job.cond.notify_all()
                    return
                rng = job.work.popleft()
                job.in_flight += 1

            try:
                logger.debug("Fetching logs %s (%s blocks)", rng, f"{rng.width:,}")
                logs = self._get_logs(rng, job.deadline)
            except RangeTooWide as e:
                with job.cond:
                    if rng.from_block == rng.to_block:
                        logger.error("Single block %d still rejected: %s", rng.from_block, e)
                        job.error = ScanFailed(f"block {rng.from_block} cannot be fetched: {e}")
                        job.error.__cause__ = e
                    else:
                        left, right = rng.split()
                        logger.info("Too large: %s, bisecting into %s and %s", rng, left, right)
                        job.work.appendleft(right)
                        job.work.appendleft(left)
                        job.splits += 1
            except DeadlineExceeded:
                with job.cond:
                    job.deadline_hit = True
            except (AllEndpointsExhausted, EndpointRejected) as e:
                with job.cond:
                    logger.error("Fetching %s failed: %s", rng, e)
                    if job.error is None:
                        job.error = ScanFailed(f"eth_getLogs {rng} failed: {e}")
                        job.error.__cause__ = e
            else:
                with job.cond:
                    job.done[rng.from_block] = (rng, logs)
                logger.debug("Got %d logs for %s", len(logs), rng)
            finally:
                with job.cond:
                    job.in_flight -= 1
                    job.cond.notify_all()

    def scan(self, from_block: int, to_block: int, deadline: float | None = None) -> ScanResult:
        """
        Fetch every matching log in [from_block, to_block]. Output order is not block order.
        `deadline` is an absolute time on this scanner's clock (time.monotonic by default).
        """
        result = ScanResult(from_block, to_block, covered_to=from_block - 1)
        if to_block < from_block:
            return result

        windows = partition(from_block, to_block, self.max_span)
        logger.info("Scanning blocks %s in %d windows (span %s, %d workers)",
                    BlockRange(from_block, to_block), len(windows),
                    f"{self.max_span:,}", self.concurrency)

        job = _ScanJob(windows, deadline)
        workers = min(self.concurrency, len(windows))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [executor.submit(self._worker, job) for _ in range(workers)]
            for fut in futures:
                fut.result()

        if job.error is not None:
            raise job.error

        # keep only the contiguous prefix so `covered_to` never skips a hole
        cursor = from_block
        while cursor in job.done:
            rng, logs = job.done.pop(cursor)
            result.fetched.append(rng)
            result.logs.extend(logs)
            cursor = rng.to_block + 1
        result.covered_to = cursor - 1
        result.splits = job.splits

        if job.done:
            logger.warning("Discarding %d windows fetched past the first gap at block %d",
                           len(job.done), cursor)
        logger.info("Scanned up to block %s: %d logs, %d splits%s",
                    f"{result.covered_to:,}", len(result.logs), result.splits,
                    "" if result.complete else " (partial, deadline reached)")
        return result
