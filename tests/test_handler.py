import pytest
import redis

from weekly_points.handler import LeaderboardService, LeaderboardUnavailable
from weekly_points.store import MemoryStore, RedisStore

from ._chain_helpers import (
    ALICE,
    BOB,
    CURRENT_WEEK,
    NOW_MS,
    PREVIOUS_WEEK,
    FakeChain,
    FakeClock,
    build_updater,
    make_log,
)

LATEST = 700_000


def _service(settings, chain, store=None, name_resolver=None, now_ms=NOW_MS):
    return LeaderboardService(
        settings,
        store if store is not None else MemoryStore(),
        build_updater(chain, settings),
        name_resolver=name_resolver,
        clock=lambda: now_ms / 1000,
        monotonic=lambda: 0.0,
    )


def _chain():
    return FakeChain(latest=LATEST, logs=[
        make_log(ALICE, 500, CURRENT_WEEK, block=650_000),
        make_log(BOB, 2 ** 64, CURRENT_WEEK, block=655_000),
        make_log(ALICE, 300, CURRENT_WEEK, block=660_000),
        make_log(BOB, 7, PREVIOUS_WEEK, block=300_000),
    ])


def test_first_query_builds_and_formats(settings):
    result = _service(settings, _chain()).query()

    assert result["current_period_start"] == CURRENT_WEEK
    assert result["previous_period_start"] == PREVIOUS_WEEK
    assert result["current_ranking"] == [
        {"address": BOB, "points": str(2 ** 64)},
        {"address": ALICE, "points": "800"},
    ]
    assert result["previous_ranking"] == [{"address": BOB, "points": "7"}]
    meta = result["meta"]
    assert meta["last_processed_block"] == LATEST
    assert meta["updated_at"] == NOW_MS
    assert meta["mode"] == "cold"
    assert meta["complete"] and not meta["stale"] and not meta["cached"]


def test_second_query_is_served_from_cache(settings):
    chain = _chain()
    service = _service(settings, chain)
    service.query()
    calls = len(chain.calls)

    result = service.query()

    assert len(chain.calls) == calls
    assert result["meta"]["cached"] is True
    assert result["meta"]["mode"] == "cached"
    assert result["current_ranking"][1]["points"] == "800"


def test_force_refresh_runs_warm_update(settings):
    chain = _chain()
    service = _service(settings, chain)
    service.query()
    chain.latest += 50
    chain.logs.append(make_log(ALICE, 1, CURRENT_WEEK, block=LATEST + 10))

    result = service.query(force_refresh=True)

    assert result["meta"]["mode"] == "warm"
    assert result["meta"]["last_processed_block"] == LATEST + 50
    assert {"address": ALICE, "points": "801"} in result["current_ranking"]


def test_state_survives_across_service_instances(settings):
    store = MemoryStore()
    _service(settings, _chain(), store=store).query()
    store.delete(_service(settings, _chain(), store=store)._snapshot_key(CURRENT_WEEK))

    chain = _chain()
    result = _service(settings, chain, store=store).query()

    assert result["meta"]["mode"] == "noop"
    assert chain.fetched == []


def test_busy_lock_serves_last_snapshot(settings):
    store = MemoryStore()
    chain = _chain()
    service = _service(settings, chain, store=store)
    service.query()
    store.delete(service._snapshot_key(CURRENT_WEEK))
    store.set_if_absent(service._lock_key(None), "someone-else", 30)
    calls = len(chain.calls)

    result = service.query()

    assert len(chain.calls) == calls
    assert result["meta"]["stale"] is True
    assert result["current_ranking"][0]["address"] == BOB


def test_busy_lock_without_snapshot_still_updates(settings):
    store = MemoryStore()
    service = _service(settings, _chain(), store=store)
    store.set_if_absent(service._lock_key(None), "someone-else", 30)

    result = service.query()

    assert result["meta"]["mode"] == "cold"
    # the other holder's lock is left alone
    assert store.get(service._lock_key(None)) == "someone-else"


def test_lock_is_released_after_update(settings):
    store = MemoryStore()
    service = _service(settings, _chain(), store=store)
    service.query()
    assert store.get(service._lock_key(None)) is None


def test_failure_without_cache_raises_with_guidance(settings):
    chain = _chain()
    chain.broken = True
    with pytest.raises(LeaderboardUnavailable) as ei:
        _service(settings, chain).query()
    assert "RPC_URLS" in str(ei.value)


def test_failure_serves_last_good_snapshot(settings):
    chain = _chain()
    service = _service(settings, chain)
    service.query()
    chain.broken = True

    result = service.query(force_refresh=True)

    assert result["meta"]["stale"] is True
    assert result["meta"]["error"]
    assert result["current_ranking"][1] == {"address": ALICE, "points": "800"}


def test_names_are_attached_when_requested(settings):
    seen = []

    def resolver(addresses):
        seen.append(list(addresses))
        return {ALICE: "@alice"}

    service = _service(settings, _chain(), name_resolver=resolver)
    result = service.query(include_names=True)

    assert {"address": ALICE, "points": "800", "name": "@alice"} in result["current_ranking"]
    assert result["previous_ranking"][0]["name"] is None
    assert seen == [sorted({ALICE, BOB})]
    # cached copy stays name-free
    assert "name" not in service.query()["current_ranking"][0]


def test_resolver_errors_leave_names_empty(settings):
    def resolver(addresses):
        raise RuntimeError("directory down")

    result = _service(settings, _chain(), name_resolver=resolver).query(include_names=True)
    assert all(e["name"] is None for e in result["current_ranking"])


def test_explicit_period_selector(settings):
    result = _service(settings, _chain()).query(period_start=PREVIOUS_WEEK)
    assert result["current_period_start"] == PREVIOUS_WEEK
    assert result["previous_period_start"] == PREVIOUS_WEEK - 604_800_000
    assert result["current_ranking"] == [{"address": BOB, "points": "7"}]


def test_refresh_bypasses_cache_without_names(settings):
    chain = _chain()
    service = _service(settings, chain, name_resolver=lambda a: {ALICE: "@alice"})
    service.query()
    result = service.refresh()
    assert result["meta"]["mode"] == "noop"
    assert "name" not in result["current_ranking"][0]


def test_deadline_returns_partial_ranking_and_skips_snapshot(settings):
    clock = FakeClock()
    chain = _chain()
    chain.clock = clock
    chain.seconds_per_get_logs = 1.0
    service = LeaderboardService(settings, MemoryStore(), build_updater(chain, settings, clock=clock),
                                 clock=lambda: NOW_MS / 1000, monotonic=clock)

    partial = service.query()

    assert partial["meta"]["complete"] is False
    assert partial["meta"]["error"]
    assert partial["meta"]["last_processed_block"] < LATEST
    assert service.store.get(service._snapshot_key(CURRENT_WEEK)) is None

    follow = service.query(deadline_seconds=1_000)

    assert follow["meta"]["mode"] == "warm" and follow["meta"]["complete"]
    assert {"address": ALICE, "points": "800"} in follow["current_ranking"]


class DownRedis:
    def get(self, key):
        raise redis.ConnectionError("connection refused")

    def set(self, key, value, ex=None, nx=False):
        raise redis.ConnectionError("connection refused")

    def delete(self, key):
        raise redis.ConnectionError("connection refused")


def test_redis_outage_still_answers_from_the_chain(settings):
    service = _service(settings, _chain(), store=RedisStore(DownRedis()))

    result = service.query(force_refresh=True)

    assert result["meta"]["mode"] == "cold"
    assert result["current_ranking"][1] == {"address": ALICE, "points": "800"}
    assert service.query()["meta"]["mode"] == "cold"


class LockTtlStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.lock_ttls = []

    def set_if_absent(self, key, value, ttl=None):
        self.lock_ttls.append(ttl)
        return super().set_if_absent(key, value, ttl)


def test_lock_outlives_the_refresh_deadline(settings):
    store = LockTtlStore()
    service = _service(settings, _chain(), store=store)

    service.query()
    service.refresh()

    assert store.lock_ttls[0] >= settings.lock_ttl
    assert store.lock_ttls[1] > settings.refresh_deadline
