import asyncio
import json
from datetime import timedelta

from drafteam.state import (ConversionStats, FailureReason, JobSpec,
                            PendingJob, utcnow)
from drafteam.store import InMemoryJobStore, RedisJobStore


def _pending(job_id):
    return PendingJob(spec=JobSpec(
        id=job_id,
        input_file_path=f"/in/{job_id}.osm",
        original_filename=f"{job_id}.osm",
        projection="EPSG:3857",
        plan_type="key-plan",
        owner="worker-1:42",
    ))


def _ids(store):
    return [job.id for job in asyncio.run(store.list())]


def test_memory_store_get_set_list():
    store = InMemoryJobStore()
    job = _pending("a")
    asyncio.run(store.set(job))
    assert asyncio.run(store.get("a")) is job
    assert asyncio.run(store.get("b")) is None
    running = job.start()
    asyncio.run(store.set(running))
    assert asyncio.run(store.list()) == [running]


def test_memory_store_evicts_oldest_finished_jobs_only():
    store = InMemoryJobStore(max_jobs=2)

    async def fill():
        await store.set(_pending("a").start())
        await store.set(_pending("b").fail("boom", FailureReason.WORKER_FAILURE))
        await store.set(_pending("c"))

    asyncio.run(fill())
    assert _ids(store) == ["a", "c"]
    asyncio.run(store.set(_pending("d")))
    # nothing finished left to evict
    assert _ids(store) == ["a", "c", "d"]


def test_memory_store_expires_finished_jobs():
    store = InMemoryJobStore(ttl_seconds=60)
    old = _pending("old").start().complete("/out/old.dxf", ConversionStats())
    old = type(old)(**{**old.__dict__, "finished_at": utcnow() - timedelta(minutes=5)})

    async def fill():
        await store.set(old)
        await store.set(_pending("new"))

    asyncio.run(fill())
    assert asyncio.run(store.get("old")) is None
    assert _ids(store) == ["new"]


class FakeRedis:
    """Async stand-in for the subset of redis.asyncio.Redis the store uses."""

    def __init__(self):
        self.values = {}
        self.expiry = {}
        self.index = {}

    async def get(self, key):
        return self.values.get(key)

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def zadd(self, key, mapping):
        self.index.setdefault(key, {}).update(mapping)

    async def zrange(self, key, start, end):
        members = self.index.get(key, {})
        return sorted(members, key=members.get)

    async def zrem(self, key, member):
        self.index.get(key, {}).pop(member, None)


def test_redis_store_round_trips_jobs():
    client = FakeRedis()
    store = RedisJobStore(prefix="test:", ttl_seconds=120, client=client)
    done = _pending("a").start().complete("/out/a.dxf", ConversionStats(nodes=3, ways=2, layers=1))
    failed = _pending("b").fail("Conversion cancelled", FailureReason.CANCELLED)

    async def scenario():
        await store.set(done)
        await store.set(failed)
        return await store.get("a"), await store.get("b")

    assert asyncio.run(scenario()) == (done, failed)
    assert client.expiry["test:job:a"] == 120
    assert _ids(store) == ["a", "b"]


def test_redis_store_reads_records_without_owner():
    client = FakeRedis()
    store = RedisJobStore(prefix="test:", client=client)
    asyncio.run(store.set(_pending("a")))
    data = json.loads(client.values["test:job:a"])
    del data["spec"]["owner"]
    client.values["test:job:a"] = json.dumps(data)

    job = asyncio.run(store.get("a"))
    assert job.id == "a"
    assert job.spec.owner == ""


def test_redis_store_prunes_expired_index_entries():
    client = FakeRedis()
    store = RedisJobStore(prefix="test:", client=client)

    async def fill():
        await store.set(_pending("a"))
        await store.set(_pending("b"))

    asyncio.run(fill())
    del client.values["test:job:a"]

    assert _ids(store) == ["b"]
    assert "a" not in client.index["test:jobs"]
