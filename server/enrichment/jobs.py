"""
Job delivery and the enrichment worker.

Jobs are delivered at least once. The Redis source moves a job from the
pending list to a processing list while it runs (BLMOVE) and only removes it
on ack, so a crashed worker's jobs can be recovered. Retries are delayed
through a sorted set scored by due time.

The worker processes one run at a time. Non-retryable failures (out of
credits) are acked and dropped; other failures are retried with exponential
backoff until the attempt budget is spent.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Protocol

import redis.asyncio as redis

from config.settings import get_settings
from core.exceptions import NonRetryableError

from .models import EnrichmentJob, RunSummary
from .run_controller import RunController

logger = logging.getLogger("enrichment.jobs")


class JobSource(Protocol):
    async def receive(self, timeout: float = 1.0) -> Optional[EnrichmentJob]:
        ...

    async def ack(self, job: EnrichmentJob) -> None:
        ...

    async def retry(self, job: EnrichmentJob, delay: float) -> None:
        ...


class RedisJobSource:
    """
    Redis list-backed job source.

    Keys (for queue name `q`):
        q:pending     producers LPUSH, consumers BLMOVE from the right
        q:processing  jobs currently being worked on
        q:delayed     sorted set of retries, scored by due timestamp
    """

    def __init__(self, redis_client: redis.Redis, queue_name: Optional[str] = None):
        self.redis = redis_client
        self.queue_name = queue_name or get_settings().job_queue_name
        self.pending_key = f"{self.queue_name}:pending"
        self.processing_key = f"{self.queue_name}:processing"
        self.delayed_key = f"{self.queue_name}:delayed"
        self._in_flight: Dict[str, str] = {}

    async def enqueue(self, job: EnrichmentJob) -> None:
        await self.redis.lpush(self.pending_key, job.model_dump_json())
        logger.info(f"Enqueued job {job.job_id} for run {job.run_id}")

    async def recover(self) -> int:
        """Move jobs left in the processing list (by a dead worker) back to pending"""
        moved = 0
        while await self.redis.lmove(self.processing_key, self.pending_key, "RIGHT", "RIGHT"):
            moved += 1
        if moved:
            logger.warning(f"Recovered {moved} unacknowledged jobs from {self.processing_key}")
        return moved

    async def _promote_due(self):
        due = await self.redis.zrangebyscore(self.delayed_key, 0, time.time())
        for raw in due:
            if await self.redis.zrem(self.delayed_key, raw):
                await self.redis.lpush(self.pending_key, raw)

    async def receive(self, timeout: float = 1.0) -> Optional[EnrichmentJob]:
        await self._promote_due()
        raw = await self.redis.blmove(self.pending_key, self.processing_key, timeout, "RIGHT", "LEFT")
        if raw is None:
            return None
        job = EnrichmentJob.model_validate_json(raw)
        self._in_flight[job.job_id] = raw
        return job

    async def ack(self, job: EnrichmentJob) -> None:
        raw = self._in_flight.pop(job.job_id, None)
        if raw is not None:
            await self.redis.lrem(self.processing_key, 1, raw)

    async def retry(self, job: EnrichmentJob, delay: float) -> None:
        await self.ack(job)
        await self.redis.zadd(self.delayed_key, {job.model_dump_json(): time.time() + delay})


class InMemoryJobSource:
    """asyncio.Queue-backed job source for tests and single-process use"""

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.acked: List[EnrichmentJob] = []
        self.retried: List[EnrichmentJob] = []

    async def enqueue(self, job: EnrichmentJob) -> None:
        await self.queue.put(job)

    async def receive(self, timeout: float = 1.0) -> Optional[EnrichmentJob]:
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def ack(self, job: EnrichmentJob) -> None:
        self.acked.append(job)

    async def retry(self, job: EnrichmentJob, delay: float) -> None:
        self.retried.append(job)
        asyncio.get_running_loop().call_later(delay, self.queue.put_nowait, job)


class EnrichmentWorker:
    """
    Pulls jobs from a JobSource and runs them through the RunController.

    Args:
        controller: Run controller
        source: Job source
        max_attempts: Total attempts per job (default 3)
        backoff_seconds: Base delay; attempt n waits base * 2**(n-1)
    """

    def __init__(
        self,
        controller: RunController,
        source: JobSource,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None
    ):
        settings = get_settings()
        self.controller = controller
        self.source = source
        self.max_attempts = max_attempts or settings.job_max_attempts
        self.backoff_seconds = settings.job_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._stopping = asyncio.Event()

    def backoff_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))

    async def handle(self, job: EnrichmentJob) -> Optional[RunSummary]:
        """Process one job and settle it with the source"""
        logger.info(f"Processing CSV enrichment job {job.job_id} (run {job.run_id}, attempt {job.attempt})")
        try:
            summary = await self.controller.process_run(job)
        except NonRetryableError as e:
            logger.warning(f"Job {job.job_id} failed permanently: {e.message}")
            await self.source.ack(job)
            return None
        except Exception as e:
            if job.attempt >= self.max_attempts:
                logger.error(f"Job {job.job_id} failed after {job.attempt} attempts: {e}")
                await self.source.ack(job)
                return None
            delay = self.backoff_for(job.attempt)
            logger.warning(f"Job {job.job_id} failed (attempt {job.attempt}), retrying in {delay:.1f}s: {e}")
            await self.source.retry(job.model_copy(update={"attempt": job.attempt + 1}), delay)
            return None

        await self.source.ack(job)
        logger.info(f"Job {job.job_id} finished with status {summary.status.value}")
        return summary

    async def run_forever(self, poll_timeout: float = 1.0):
        """Process jobs one at a time until stop() is called"""
        logger.info("Enrichment worker started")
        while not self._stopping.is_set():
            job = await self.source.receive(timeout=poll_timeout)
            if job is None:
                continue
            await self.handle(job)
        logger.info("Enrichment worker stopped")

    def stop(self):
        self._stopping.set()
