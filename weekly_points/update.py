"""
update.py — one incremental update of an AggregationState.

Modes:
    cold   no usable state, or the stored current period is not the target one
           (covers period rollover): backfill two period widths + safety buffer.
    warm   same period, scan (last_processed_block, latest].
    noop   warm, but the chain has not advanced; only updated_at changes.

`last_processed_block` is the only thing deciding what gets scanned next, so
a range is never folded twice by a well-behaved sequence of updates.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .block_time import BlockTimeEstimator, latest_block_number, lookback_blocks
from .config import Settings
from .decoder import decode_log
from .periods import period_label, previous_period_ms
from .rotation import Rotator
from .scanner import BlockRange, RangeScanner
from .state import AggregationState

logger = logging.getLogger(__name__)

COLD = "cold"
WARM = "warm"
NOOP = "noop"


@dataclass
class UpdateOutcome:
    state: AggregationState
    mode: str
    latest_block: int
    scanned: BlockRange | None = None
    logs_seen: int = 0
    folded: int = 0
    complete: bool = True


def choose_mode(state: AggregationState | None, current_period: int) -> str:
    if state is None or state.current_period != current_period or state.last_processed_block < 0:
        return COLD
    return WARM


class Updater:
    def __init__(self, rotator: Rotator, scanner: RangeScanner, estimator: BlockTimeEstimator,
                 settings: Settings):
        self.rotator = rotator
        self.scanner = scanner
        self.estimator = estimator
        self.settings = settings

    def backfill_start(self, latest: int, current_period: int, now_ms: int,
                       deadline: float | None = None) -> int:
        previous = previous_period_ms(current_period, self.settings.period_ms)
        window_ms = max(2 * self.settings.period_ms, now_ms - previous)
        spb = self.estimator.estimate(latest, deadline=deadline)
        blocks = lookback_blocks(window_ms / 1000, spb, self.settings.lookback_safety_blocks)
        logger.info("Backfill window: %s blocks at %.3fs/block", f"{blocks:,}", spb)
        return max(0, latest - blocks)

    def run(self, state: AggregationState | None, current_period: int, now_ms: int,
            deadline: float | None = None) -> UpdateOutcome:
        mode = choose_mode(state, current_period)
        latest = latest_block_number(self.rotator, deadline=deadline)

        if mode == COLD:
            if state is not None and state.current_period != current_period:
                logger.info("Period rollover: stored %s, now %s; starting over",
                            period_label(state.current_period), period_label(current_period))
            from_block = self.backfill_start(latest, current_period, now_ms, deadline)
            state = AggregationState.empty(
                current_period,
                previous_period_ms(current_period, self.settings.period_ms),
                last_processed_block=from_block - 1,
                updated_at=now_ms,
            )
        else:
            from_block = state.last_processed_block + 1
            if from_block > latest:
                logger.debug("No new blocks since %d", state.last_processed_block)
                state.updated_at = now_ms
                return UpdateOutcome(state, NOOP, latest)

        result = self.scanner.scan(from_block, latest, deadline=deadline)

        folded = 0
        for log in result.logs:
            c = decode_log(log)
            if c is not None and state.fold(c):
                folded += 1

        state.advance_to(result.covered_to)
        state.prune(self.settings.keep_count)
        state.updated_at = now_ms

        logger.info("%s update: %d logs, %d folded, processed up to %s%s",
                    mode, len(result.logs), folded, f"{state.last_processed_block:,}",
                    "" if result.complete else f" of {latest:,}")
        return UpdateOutcome(
            state=state,
            mode=mode,
            latest_block=latest,
            scanned=BlockRange(from_block, latest),
            logs_seen=len(result.logs),
            folded=folded,
            complete=result.complete,
        )
