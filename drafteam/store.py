from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Protocol

from config import JOB_STORE, JOB_TTL_SECONDS, MAX_STORED_JOBS, REDIS_PREFIX, REDIS_URL
from .state import Job, job_from_dict, job_to_dict, utcnow


class JobStore(Protocol):
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def set(self, job: Job) -> None:
        ...

    async def list(self) -> List[Job]:
        ...


class InMemoryJobStore:
    """Process-local store. Jobs are lost on restart.

    ``max_jobs`` caps the number of kept jobs by evicting the oldest finished
    ones; running jobs are never evicted. ``ttl_seconds`` drops finished jobs
    that ended longer ago than the TTL.
    """

    def __init__(self, max_jobs: Optional[int] = None, ttl_seconds: Optional[int] = None) -> None:
        self._jobs: Dict[str, Job] = {}
        self._max_jobs = max_jobs
        self._ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else None

    async def get(self, job_id: str) -> Optional[Job]:
        self._expire()
        return self._jobs.get(job_id)

    async def set(self, job: Job) -> None:
        self._jobs[job.id] = job
        self._evict()

    async def list(self) -> List[Job]:
        self._expire()
        return list(self._jobs.values())

    def _expire(self) -> None:
        if self._ttl is None:
            return
        cutoff = utcnow() - self._ttl
        expired = [
            job_id
            for job_id, job in self._jobs.items()
            if job.terminal and job.finished_at < cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]

    def _evict(self) -> None:
        if not self._max_jobs or len(self._jobs) <= self._max_jobs:
            return
        for job_id, job in list(self._jobs.items()):
            if len(self._jobs) <= self._max_jobs:
                break
            if job.terminal:
                del self._jobs[job_id]
                logging.debug("Evicted job %s from store", job_id)


class RedisJobStore:
    """One JSON document per job plus a sorted index for listing.

    Every write refreshes the document TTL; index entries whose document has
    expired are pruned when listing. Shared by every service process pointing
    at the same Redis, so jobs outlive restarts.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        prefix: str = REDIS_PREFIX,
        ttl_seconds: Optional[int] = JOB_TTL_SECONDS,
        client=None,
    ) -> None:
        if client is None:
            import redis.asyncio as redis  # lazy import

            if not url:
                raise RuntimeError("REDIS_URL is required for the redis job store")
            client = redis.from_url(url, decode_responses=True)
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds or None

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}jobs"

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}job:{job_id}"

    async def get(self, job_id: str) -> Optional[Job]:
        raw = await self.client.get(self._key(job_id))
        return job_from_dict(json.loads(raw)) if raw else None

    async def set(self, job: Job) -> None:
        await self.client.set(self._key(job.id), json.dumps(job_to_dict(job)), ex=self.ttl_seconds)
        await self.client.zadd(self._index_key, {job.id: job.created_at.timestamp()})

    async def list(self) -> List[Job]:
        jobs: List[Job] = []
        for job_id in await self.client.zrange(self._index_key, 0, -1):
            job = await self.get(job_id)
            if job is None:
                await self.client.zrem(self._index_key, job_id)
                continue
            jobs.append(job)
        return jobs


def build_store() -> JobStore:
    if JOB_STORE == "redis":
        return RedisJobStore(REDIS_URL)
    return InMemoryJobStore(max_jobs=MAX_STORED_JOBS, ttl_seconds=JOB_TTL_SECONDS)
