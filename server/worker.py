"""
Tablefill Enrichment Worker
Pulls enrichment jobs from Redis and processes one run at a time

The table/run store is pluggable. This entrypoint uses the in-memory store,
optionally seeded from a JSON file of the form {"tables": [...], "runs": [...]}.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from config import get_settings, setup_logging
from enrichment.agent_loop import RowEnrichmentAgent
from enrichment.events import RedisEventPublisher
from enrichment.jobs import EnrichmentWorker, RedisJobSource
from enrichment.models import Run, Table
from enrichment.run_controller import RunController
from enrichment.stores import (
    InMemoryTableStore,
    RedisCancellationChecker,
    RedisCreditLedger,
    create_redis_client,
)

setup_logging(log_file="worker.log")
logger = logging.getLogger("tablefill_worker")


def load_seed(path: Optional[str]) -> InMemoryTableStore:
    store = InMemoryTableStore()
    if not path:
        return store

    data = json.loads(Path(path).read_text())
    for table in data.get("tables", []):
        store.add_table(Table.model_validate(table))
    for run in data.get("runs", []):
        store.add_run(Run.model_validate(run))
    logger.info(f"Loaded {len(store.tables)} tables and {len(store.runs)} runs from {path}")
    return store


async def run_worker(seed_path: Optional[str] = None):
    settings = get_settings()
    redis_client = create_redis_client(settings)

    source = RedisJobSource(redis_client, settings.job_queue_name)
    await source.recover()

    agent = RowEnrichmentAgent()
    controller = RunController(
        store=load_seed(seed_path),
        credits=RedisCreditLedger(redis_client),
        cancellation=RedisCancellationChecker(redis_client, settings.cancellation_ttl_seconds),
        publisher=RedisEventPublisher(redis_client),
        agent=agent,
        concurrency=settings.crawl_concurrency
    )
    worker = EnrichmentWorker(
        controller,
        source,
        max_attempts=settings.job_max_attempts,
        backoff_seconds=settings.job_backoff_seconds
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    logger.info(f"Listening on queue '{settings.job_queue_name}' at {settings.redis_url}")
    try:
        await worker.run_forever()
    finally:
        await agent.close()
        await redis_client.aclose()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Tablefill enrichment worker")
    parser.add_argument("--seed", help="JSON file with tables and runs for the in-memory store")

    args = parser.parse_args()

    asyncio.run(run_worker(args.seed))
    sys.exit(0)
