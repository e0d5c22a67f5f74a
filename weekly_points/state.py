"""
state.py — per-period point totals for the two tracked periods (current + previous).

Serialized form (JSON-safe, points as decimal strings so uint256 survives any decoder):

    {
      "current_period": 1699833600000,
      "previous_period": 1699228800000,
      "periods": [{"period": 1699833600000, "totals": [["0xabc...", "500"], ...]}, ...],
      "last_processed_block": 12345678,
      "updated_at": 1700000000000
    }
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from .decoder import DecodedContribution

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankEntry:
    address: str
    points: int

    def to_json(self) -> dict:
        return {"address": self.address, "points": str(self.points)}


def rank_totals(totals: dict[str, int], top: int | None = None) -> list[RankEntry]:
    """Points descending; equal points keep insertion order."""
    ordered = sorted(totals.items(), key=lambda kv: kv[1], reverse=True)
    if top is not None:
        ordered = ordered[:top]
    return [RankEntry(addr, pts) for addr, pts in ordered]


@dataclass
class AggregationState:
    current_period: int
    previous_period: int
    periods: dict[int, dict[str, int]] = field(default_factory=dict)
    last_processed_block: int = -1
    updated_at: int = 0

    def __post_init__(self):
        # exactly the two tracked periods, nothing else
        self.periods = {
            self.current_period: self.periods.get(self.current_period, {}),
            self.previous_period: self.periods.get(self.previous_period, {}),
        }

    @classmethod
    def empty(cls, current_period: int, previous_period: int, last_processed_block: int = -1,
              updated_at: int = 0) -> "AggregationState":
        return cls(current_period, previous_period, {}, last_processed_block, updated_at)

    def tracks(self, period_key: int) -> bool:
        return period_key in self.periods

    def fold(self, c: DecodedContribution) -> bool:
        """Add one contribution. Contributions for untracked periods are ignored."""
        totals = self.periods.get(c.period_key)
        if totals is None:
            return False
        totals[c.address] = totals.get(c.address, 0) + c.points
        return True

    def fold_all(self, contributions: Iterable[DecodedContribution]) -> int:
        return sum(1 for c in contributions if self.fold(c))

    def advance_to(self, block: int) -> None:
        if block > self.last_processed_block:
            self.last_processed_block = block

    def prune(self, keep: int) -> int:
        """Keep the `keep` highest totals per period. Returns how many entries were dropped."""
        dropped = 0
        for key, totals in self.periods.items():
            if len(totals) <= keep:
                continue
            kept = {e.address for e in rank_totals(totals, keep)}
            dropped += len(totals) - len(kept)
            # survivors keep first-seen order so later ties still rank by it
            self.periods[key] = {a: p for a, p in totals.items() if a in kept}
        if dropped:
            logger.debug("Pruned %d entries (keep=%d)", dropped, keep)
        return dropped

    def ranking(self, period_key: int, top: int | None = None) -> list[RankEntry]:
        return rank_totals(self.periods.get(period_key, {}), top)

    def to_dict(self) -> dict:
        return {
            "current_period": self.current_period,
            "previous_period": self.previous_period,
            "periods": [
                {"period": key, "totals": [[addr, str(pts)] for addr, pts in totals.items()]}
                for key, totals in self.periods.items()
            ],
            "last_processed_block": self.last_processed_block,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "AggregationState":
        """Raises ValueError on anything that does not look like to_dict() output."""
        try:
            periods: dict[int, dict[str, int]] = {}
            for entry in d["periods"]:
                totals: dict[str, int] = {}
                for addr, pts in entry["totals"]:
                    totals[str(addr).lower()] = int(pts)
                periods[int(entry["period"])] = totals
            return cls(
                current_period=int(d["current_period"]),
                previous_period=int(d["previous_period"]),
                periods=periods,
                last_processed_block=int(d["last_processed_block"]),
                updated_at=int(d.get("updated_at", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Malformed aggregation state: {e}") from e
