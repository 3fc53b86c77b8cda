"""
Enrichment API Endpoints

- POST /api/v1/enrichment/runs/{run_id}/start   enqueue a run for the worker
- POST /api/v1/enrichment/runs/{run_id}/cancel  set the run's cancel flag
- GET  /api/v1/enrichment/tables/{table_id}/events  SSE stream of run events

Cancellation is cooperative: the worker sees the flag at the next row
boundary, marks the run CANCELLED and publishes the `cancelled` event.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from config.settings import get_settings
from enrichment.events import stream_events
from enrichment.jobs import RedisJobSource
from enrichment.models import EnrichmentJob
from enrichment.stores import CancellationChecker, RedisCancellationChecker, create_redis_client

logger = logging.getLogger("enrichment.api")

router = APIRouter(prefix="/api/v1/enrichment", tags=["Enrichment"])

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Shared Redis client (created on first use)"""
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis_client(get_settings())
    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def get_cancellation_checker(client: redis.Redis = Depends(get_redis)) -> CancellationChecker:
    return RedisCancellationChecker(client, get_settings().cancellation_ttl_seconds)


def get_job_source(client: redis.Redis = Depends(get_redis)) -> RedisJobSource:
    return RedisJobSource(client, get_settings().job_queue_name)


class StartRunRequest(BaseModel):
    user_id: Optional[str] = None


class RunActionResponse(BaseModel):
    success: bool
    message: str
    run_id: str
    job_id: Optional[str] = None


@router.post("/runs/{run_id}/start", response_model=RunActionResponse)
async def start_run(
    run_id: str,
    request: Optional[StartRunRequest] = None,
    source: RedisJobSource = Depends(get_job_source)
):
    """Queue a run for processing by the enrichment worker"""
    job = EnrichmentJob(run_id=run_id, user_id=request.user_id if request else None)
    await source.enqueue(job)
    return RunActionResponse(success=True, message="Enrichment queued", run_id=run_id, job_id=job.job_id)


@router.post("/runs/{run_id}/cancel", response_model=RunActionResponse)
async def cancel_run(
    run_id: str,
    cancellation: CancellationChecker = Depends(get_cancellation_checker)
):
    """Request cancellation; takes effect before the next row"""
    await cancellation.request_cancellation(run_id)
    logger.info(f"[CANCEL] Cancellation flag set for run {run_id}")
    return RunActionResponse(success=True, message="Cancellation requested", run_id=run_id)


@router.get("/tables/{table_id}/events")
async def table_events(table_id: str, client: redis.Redis = Depends(get_redis)):
    """Server-Sent Events stream of everything published for a table"""
    return StreamingResponse(
        stream_events(client, table_id),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )
