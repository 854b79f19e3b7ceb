import asyncio
import fnmatch
from contextlib import asynccontextmanager

from agentledger.store.memory import MemoryKeyedStore
from agentledger.store.redis_store import RedisKeyedStore

from tests.conftest import ManualClock, run


class RecordingRedis:
    """Just enough of redis.asyncio.Redis for the keyed store."""

    def __init__(self):
        self.data = {}
        self.locks = []
        self.ttls = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex

    async def delete(self, key):
        self.data.pop(key, None)

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if fnmatch.fnmatch(key, match):
                yield key

    async def mget(self, keys):
        return [self.data.get(k) for k in keys]

    def lock(self, name, timeout=None, blocking_timeout=None):
        self.locks.append(name)

        @asynccontextmanager
        async def held():
            yield

        return held()

    async def aclose(self):
        self.closed = True


class TestMemoryKeyedStore:
    def test_values_are_copied(self):
        store = MemoryKeyedStore()

        async def scenario():
            value = {"tags": ["a"]}
            await store.put("k", value)
            value["tags"].append("b")
            fetched = await store.get("k")
            fetched["tags"].append("c")
            return await store.get("k")

        assert run(scenario()) == {"tags": ["a"]}

    def test_list_by_prefix_is_sorted(self):
        store = MemoryKeyedStore()

        async def scenario():
            await store.put("agents:b", {"n": 2})
            await store.put("agents:a", {"n": 1})
            await store.put("keys:a", {"n": 3})
            return await store.list_by_prefix("agents:")

        assert run(scenario()) == [("agents:a", {"n": 1}), ("agents:b", {"n": 2})]

    def test_delete_missing_key_is_noop(self):
        store = MemoryKeyedStore()
        run(store.delete("nothing"))
        assert run(store.get("nothing")) is None

    def test_lock_serializes_read_modify_write(self):
        store = MemoryKeyedStore()

        async def increment():
            async with store.lock("counter"):
                current = (await store.get("counter") or {"n": 0})["n"]
                await asyncio.sleep(0.001)
                await store.put("counter", {"n": current + 1})

        async def scenario():
            await asyncio.gather(*(increment() for _ in range(20)))
            return await store.get("counter")

        assert run(scenario()) == {"n": 20}

    def test_lock_entries_are_dropped_when_released(self):
        store = MemoryKeyedStore()

        async def hold(key):
            async with store.lock(key):
                await asyncio.sleep(0.001)

        async def scenario():
            await asyncio.gather(*(hold(f"idempotency:k{n % 3}") for n in range(12)))

        run(scenario())
        assert store._locks == {}

    def test_ttl_values_expire_and_are_swept(self):
        clock = ManualClock()
        store = MemoryKeyedStore(clock=clock)

        async def scenario():
            await store.put("idempotency:a", {"n": 1}, ttl=60)
            await store.put("agents:alice", {"n": 2})
            clock.advance(59)
            before = await store.get("idempotency:a")
            clock.advance(1)
            after = await store.get("idempotency:a")
            listed = await store.list_by_prefix("idempotency:")
            await store.put("idempotency:b", {"n": 3}, ttl=60)
            return before, after, listed

        before, after, listed = run(scenario())
        assert before == {"n": 1}
        assert after is None
        assert listed == []
        assert sorted(store._data) == ["agents:alice", "idempotency:b"]

    def test_put_without_ttl_clears_earlier_expiry(self):
        clock = ManualClock()
        store = MemoryKeyedStore(clock=clock)

        async def scenario():
            await store.put("k", {"n": 1}, ttl=10)
            await store.put("k", {"n": 2})
            clock.advance(3600)
            return await store.get("k")

        assert run(scenario()) == {"n": 2}


class TestRedisKeyedStore:
    def test_keys_are_namespaced(self):
        client = RecordingRedis()
        store = RedisKeyedStore(client, namespace="state")

        async def scenario():
            await store.put("agents:alice", {"agent_id": "alice"})
            async with store.lock("agents:alice"):
                pass
            return await store.get("agents:alice")

        assert run(scenario()) == {"agent_id": "alice"}
        assert list(client.data) == ["agl:state:agents:alice"]
        assert client.locks == ["agl:locks:state:agents:alice"]

    def test_list_by_prefix_strips_namespace(self):
        client = RecordingRedis()
        store = RedisKeyedStore(client, namespace="state")

        async def scenario():
            await store.put("interactions:int_2", {"n": 2})
            await store.put("interactions:int_1", {"n": 1})
            await store.put("agents:alice", {"n": 3})
            return await store.list_by_prefix("interactions:")

        assert run(scenario()) == [("interactions:int_1", {"n": 1}), ("interactions:int_2", {"n": 2})]

    def test_close(self):
        client = RecordingRedis()
        run(RedisKeyedStore(client, namespace="state").close())
        assert client.closed is True

    def test_ttl_maps_to_expiry(self):
        client = RecordingRedis()
        store = RedisKeyedStore(client, namespace="state")

        async def scenario():
            await store.put("idempotency:k1", {"state": "completed"}, ttl=86400)
            await store.put("agents:alice", {"agent_id": "alice"})

        run(scenario())
        assert client.ttls == {"agl:state:idempotency:k1": 86400, "agl:state:agents:alice": None}
