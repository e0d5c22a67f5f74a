import redis

from weekly_points.config import Settings
from weekly_points.store import MemoryStore, RedisStore, acquire_lock, open_store, release_lock

from ._chain_helpers import ENDPOINTS, FakeClock


class FakeRedis:
    """Just enough of redis.Redis for RedisStore: get / set(nx, ex) / delete."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, key):
        self.data.pop(key, None)


class BrokenRedis(FakeRedis):
    def set(self, key, value, ex=None, nx=False):
        raise redis.ConnectionError("connection refused")


def test_memory_store_roundtrip_and_ttl():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    store.set("k", {"a": [1, "2"]}, ttl=10)
    assert store.get("k") == {"a": [1, "2"]}
    clock.advance(10)
    assert store.get("k") is None


def test_memory_store_returns_copies():
    store = MemoryStore()
    value = {"list": [1]}
    store.set("k", value)
    value["list"].append(2)
    got = store.get("k")
    got["list"].append(3)
    assert store.get("k") == {"list": [1]}


def test_memory_set_if_absent_respects_expiry():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    assert store.set_if_absent("lock", "t1", ttl=30)
    assert not store.set_if_absent("lock", "t2", ttl=30)
    clock.advance(31)
    assert store.set_if_absent("lock", "t3", ttl=30)
    store.delete("lock")
    assert store.get("lock") is None


def test_redis_store_encodes_json_and_passes_ttl():
    client = FakeRedis()
    store = RedisStore(client)
    store.set("k", {"points": "123"}, ttl=60)
    assert client.data["k"] == '{"points": "123"}'
    assert client.ttls["k"] == 60
    assert store.get("k") == {"points": "123"}
    assert store.set_if_absent("k", 1, ttl=5) is False
    store.delete("k")
    assert store.get("k") is None


def test_redis_store_ignores_foreign_values():
    client = FakeRedis()
    client.data["k"] = "not json"
    assert RedisStore(client).get("k") is None


def test_lock_is_exclusive_until_released():
    store = MemoryStore()
    token = acquire_lock(store, "lock", 30)
    assert token
    assert acquire_lock(store, "lock", 30) is None
    release_lock(store, "lock", token)
    assert acquire_lock(store, "lock", 30)


def test_release_does_not_steal_someone_elses_lock():
    store = MemoryStore()
    acquire_lock(store, "lock", 30)
    release_lock(store, "lock", "not-my-token")
    assert acquire_lock(store, "lock", 30) is None


def test_lock_fails_open_when_redis_is_down():
    assert acquire_lock(RedisStore(BrokenRedis()), "lock", 30)


def test_open_store_defaults_to_memory():
    assert isinstance(open_store(Settings(rpc_urls=ENDPOINTS)), MemoryStore)
    assert isinstance(open_store(Settings(rpc_urls=ENDPOINTS, redis_url="redis://localhost:6379/0")), RedisStore)


def test_memory_store_sweeps_expired_keys_on_write():
    clock = FakeClock()
    store = MemoryStore(clock=clock)
    store.set("snapshot:1", {"a": 1}, ttl=60)
    store.set("state", {"b": 2})
    clock.advance(61)

    store.set("snapshot:2", {"a": 2}, ttl=60)

    assert set(store._data) == {"state", "snapshot:2"}


def test_redis_store_reads_and_writes_survive_an_outage():
    store = RedisStore(BrokenRedis())
    store.set("k", {"points": "1"}, ttl=60)
    assert store.get("k") is None
