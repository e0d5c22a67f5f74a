"""
handler.py — the query entry point.

query():
  1. fresh snapshot in the store and no force refresh -> return it
  2. take the update lock; if another caller holds it, serve the last good
     snapshot marked stale instead of waiting
  3. load state, run one incremental update, save state
  4. format current/previous rankings, cache the snapshot when the update
     covered the whole range, return
Scan failures fall back to the last good snapshot, else LeaderboardUnavailable.
"""
from __future__ import annotations

import copy
import logging
import math
import time
from typing import Callable, Iterable

from .block_time import BlockTimeEstimator
from .config import Settings
from .periods import period_start_ms
from .rotation import EndpointPool, RotationPolicy, Rotator
from .scanner import RangeScanner, ScanFailed
from .state import AggregationState
from .store import acquire_lock, open_store, release_lock
from .update import Updater

logger = logging.getLogger(__name__)

NameResolver = Callable[[Iterable[str]], dict]


class LeaderboardUnavailable(RuntimeError):
    pass


REMEDIATION = (
    "Leaderboard could not be built and no cached copy exists. "
    "Retry in a minute; if it keeps failing, add private endpoints to RPC_URLS "
    "or lower MAX_BLOCK_SPAN / SCAN_CONCURRENCY."
)


def format_response(state: AggregationState, visible: int, mode: str, complete: bool,
                    error: str | None = None) -> dict:
    return {
        "current_period_start": state.current_period,
        "previous_period_start": state.previous_period,
        "current_ranking": [e.to_json() for e in state.ranking(state.current_period, visible)],
        "previous_ranking": [e.to_json() for e in state.ranking(state.previous_period, visible)],
        "meta": {
            "last_processed_block": state.last_processed_block,
            "updated_at": state.updated_at,
            "mode": mode,
            "complete": complete,
            "stale": False,
            "cached": False,
            "error": error,
        },
    }


class LeaderboardService:
    def __init__(
        self,
        settings: Settings,
        store,
        updater: Updater,
        name_resolver: NameResolver | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.updater = updater
        self.name_resolver = name_resolver
        self._clock = clock
        self._monotonic = monotonic

    @classmethod
    def from_settings(cls, settings: Settings, store=None, name_resolver: NameResolver | None = None,
                      policy: RotationPolicy | None = None) -> "LeaderboardService":
        rotator = Rotator(EndpointPool(settings.rpc_urls), policy, timeout=settings.rpc_timeout)
        scanner = RangeScanner(
            rotator,
            address=settings.contract_address,
            topics=[settings.event_topic0, None, settings.action_topic],
            max_span=settings.max_block_span,
            concurrency=settings.scan_concurrency,
        )
        estimator = BlockTimeEstimator(rotator, settings.block_time_sample_blocks,
                                       settings.default_seconds_per_block)
        return cls(settings, store if store is not None else open_store(settings),
                   Updater(rotator, scanner, estimator, settings), name_resolver)

    # ---- keys

    def _state_key(self, selector: int | None) -> str:
        ns = self.settings.state_namespace
        return f"{ns}:state" if selector is None else f"{ns}:state:{selector}"

    def _snapshot_key(self, period: int) -> str:
        return f"{self.settings.state_namespace}:snapshot:{period}"

    def _last_good_key(self, period: int) -> str:
        return f"{self.settings.state_namespace}:last_good:{period}"

    def _lock_key(self, selector: int | None) -> str:
        return self._state_key(selector) + ":lock"

    # ---- helpers

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _load_state(self, key: str) -> AggregationState | None:
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return AggregationState.from_dict(raw)
        except ValueError as e:
            logger.warning("Discarding stored state %s: %s", key, e)
            return None

    def _served(self, snapshot: dict, include_names: bool, **meta) -> dict:
        out = copy.deepcopy(snapshot)
        out["meta"].update(meta)
        if include_names:
            self._attach_names(out)
        return out

    def _attach_names(self, response: dict) -> None:
        entries = response["current_ranking"] + response["previous_ranking"]
        names: dict = {}
        if self.name_resolver is not None and entries:
            try:
                names = self.name_resolver(sorted({e["address"] for e in entries})) or {}
            except Exception as e:  # external resolver, names are optional
                logger.warning("Name resolution failed: %s", e)
        for e in entries:
            e["name"] = names.get(e["address"])

    def _stale_or_raise(self, period: int, include_names: bool, error: str) -> dict:
        snapshot = self.store.get(self._last_good_key(period))
        if snapshot is None:
            raise LeaderboardUnavailable(f"{REMEDIATION} (cause: {error})")
        logger.warning("Serving last good snapshot for %d: %s", period, error)
        return self._served(snapshot, include_names, stale=True, cached=True, error=error)

    # ---- entry points

    def query(self, period_start: int | None = None, force_refresh: bool = False,
              include_names: bool = False, deadline_seconds: float | None = None) -> dict:
        now_ms = self._now_ms()
        current = period_start if period_start is not None else period_start_ms(now_ms, self.settings.period_ms)

        if not force_refresh:
            cached = self.store.get(self._snapshot_key(current))
            if cached is not None:
                return self._served(cached, include_names, cached=True, mode="cached")

        lock_key = self._lock_key(period_start)
        # the lock must outlive the update it guards
        budget = self.settings.query_deadline if deadline_seconds is None else deadline_seconds
        lock_ttl = max(self.settings.lock_ttl, math.ceil(budget) + 5)
        token = acquire_lock(self.store, lock_key, lock_ttl)
        if token is None and not force_refresh:
            snapshot = self.store.get(self._last_good_key(current))
            if snapshot is not None:
                logger.info("Update in progress elsewhere, serving last snapshot")
                return self._served(snapshot, include_names, stale=True, cached=True, mode="cached")
            logger.info("Update in progress elsewhere and nothing cached, updating anyway")

        try:
            return self._update_and_format(period_start, current, now_ms, include_names, deadline_seconds)
        finally:
            if token is not None:
                release_lock(self.store, lock_key, token)

    def refresh(self, period_start: int | None = None) -> dict:
        return self.query(period_start, force_refresh=True, include_names=False,
                          deadline_seconds=self.settings.refresh_deadline)

    def _update_and_format(self, selector: int | None, current: int, now_ms: int,
                           include_names: bool, deadline_seconds: float | None) -> dict:
        budget = self.settings.query_deadline if deadline_seconds is None else deadline_seconds
        deadline = self._monotonic() + budget
        state_key = self._state_key(selector)

        state = self._load_state(state_key)
        try:
            outcome = self.updater.run(state, current, now_ms, deadline=deadline)
        except ScanFailed as e:
            logger.error("Update failed: %s", e)
            return self._stale_or_raise(current, include_names, str(e))
        except RuntimeError as e:
            # latest-block lookup exhausted or out of time before scanning started
            logger.error("Update could not start: %s", e)
            return self._stale_or_raise(current, include_names, str(e))

        self.store.set(state_key, outcome.state.to_dict(), self.settings.state_ttl)

        response = format_response(
            outcome.state,
            self.settings.visible_count,
            outcome.mode,
            outcome.complete,
            error=None if outcome.complete else "scan deadline reached; ranking covers blocks "
                                                f"up to {outcome.state.last_processed_block}",
        )
        if outcome.complete:
            self.store.set(self._snapshot_key(current), response, self.settings.snapshot_ttl)
            self.store.set(self._last_good_key(current), response, self.settings.state_ttl)

        if include_names:
            response = self._served(response, True)
        return response
