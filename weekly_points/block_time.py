"""
block_time.py — block lookups and the seconds-per-block estimate used to size lookback windows.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .rotation import Rotator
from .rpc import hex_block, parse_quantity

logger = logging.getLogger(__name__)

MIN_SECONDS_PER_BLOCK = 0.5
MAX_SECONDS_PER_BLOCK = 10.0


@dataclass(frozen=True)
class BlockStamp:
    number: int
    timestamp: int  # unix seconds


def latest_block_number(rotator: Rotator, deadline: float | None = None) -> int:
    return parse_quantity(rotator.call("eth_blockNumber", [], deadline=deadline))


def get_block_stamp(rotator: Rotator, block: int | str, deadline: float | None = None) -> BlockStamp:
    tag = hex_block(block) if isinstance(block, int) else block
    blk = rotator.call("eth_getBlockByNumber", [tag, False], deadline=deadline)
    if not blk:
        raise ValueError(f"block {block} not found")
    return BlockStamp(parse_quantity(blk["number"]), parse_quantity(blk["timestamp"]))


def seconds_per_block(latest: BlockStamp, sample: BlockStamp, default: float = 2.0) -> float:
    """
    Δtimestamp / Δnumber between two blocks, or `default` when the figure is
    degenerate (no block delta, non-finite, or outside 0.5s-10s).
    """
    dn = latest.number - sample.number
    dt = latest.timestamp - sample.timestamp
    if dn <= 0:
        return default
    spb = dt / dn
    if not math.isfinite(spb) or not (MIN_SECONDS_PER_BLOCK <= spb <= MAX_SECONDS_PER_BLOCK):
        logger.warning("Implausible block time %.3fs from blocks %d/%d, using default %.2fs",
                       spb, sample.number, latest.number, default)
        return default
    return spb


def lookback_blocks(window_seconds: float, spb: float, safety_blocks: int) -> int:
    """Blocks needed to cover `window_seconds`, rounded up, plus a safety buffer."""
    if window_seconds <= 0:
        return safety_blocks
    return int(math.ceil(window_seconds / spb)) + safety_blocks


class BlockTimeEstimator:
    def __init__(self, rotator: Rotator, sample_blocks: int = 15_000, default: float = 2.0):
        self.rotator = rotator
        self.sample_blocks = sample_blocks
        self.default = default

    def estimate(self, latest: int, deadline: float | None = None) -> float:
        """
        Sample `latest` and `latest - sample_blocks`. Lookup failures fall back to the
        default, since over-scanning with the default is safer than failing the update.
        """
        sample_no = max(0, latest - self.sample_blocks)
        if sample_no >= latest:
            return self.default
        try:
            head = get_block_stamp(self.rotator, latest, deadline=deadline)
            old = get_block_stamp(self.rotator, sample_no, deadline=deadline)
        except (RuntimeError, ValueError, KeyError, TypeError) as e:
            logger.warning("Block time sampling failed (%s), using default %.2fs", e, self.default)
            return self.default
        spb = seconds_per_block(head, old, self.default)
        logger.debug("Estimated %.3fs per block over %d blocks", spb, head.number - old.number)
        return spb
