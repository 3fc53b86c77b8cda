"""
External state used by the run controller.

- CancellationChecker: per-run cancel flag, self-expiring
- CreditLedger: integer credit balance per organization
- TableStore: tables, runs and cell versions

Each has a Redis-backed or in-memory implementation. Credit balance and the
cancel flag are always read fresh; nothing here caches them.
"""

import logging
import time
from typing import Dict, List, Optional, Protocol

import redis.asyncio as redis

from config.settings import TablefillSettings, get_settings

from .models import (
    CellVersion,
    Run,
    RunStatus,
    Table,
    TERMINAL_RUN_STATUSES,
    is_missing_value,
    utcnow,
)

logger = logging.getLogger("enrichment.stores")

CANCEL_KEY_PREFIX = "cancel"
CREDITS_KEY_PREFIX = "credits"


def create_redis_client(settings: Optional[TablefillSettings] = None) -> redis.Redis:
    """Async Redis client with string responses"""
    settings = settings or get_settings()
    return redis.from_url(settings.redis_url, decode_responses=True)


# =============================================================================
# Cancellation
# =============================================================================

class CancellationChecker(Protocol):
    async def is_cancelled(self, run_id: str) -> bool:
        ...

    async def clear(self, run_id: str) -> None:
        ...

    async def request_cancellation(self, run_id: str) -> None:
        ...


class RedisCancellationChecker:
    """
    Cancel flags stored as `cancel:{run_id}` -> "1" with a TTL.

    The flag is set by the API and polled by the worker at row boundaries.
    """

    def __init__(self, redis_client: redis.Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or get_settings().cancellation_ttl_seconds

    @staticmethod
    def _key(run_id: str) -> str:
        return f"{CANCEL_KEY_PREFIX}:{run_id}"

    async def request_cancellation(self, run_id: str) -> None:
        await self.redis.set(self._key(run_id), "1", ex=self.ttl_seconds)
        logger.info(f"[{run_id}] Cancellation requested (ttl={self.ttl_seconds}s)")

    async def is_cancelled(self, run_id: str) -> bool:
        return await self.redis.get(self._key(run_id)) == "1"

    async def clear(self, run_id: str) -> None:
        await self.redis.delete(self._key(run_id))


class InMemoryCancellationChecker:
    """Process-local cancel flags with expiry"""

    def __init__(self, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = ttl_seconds or get_settings().cancellation_ttl_seconds
        self._flags: Dict[str, float] = {}

    async def request_cancellation(self, run_id: str) -> None:
        self._flags[run_id] = time.monotonic() + self.ttl_seconds

    async def is_cancelled(self, run_id: str) -> bool:
        expires_at = self._flags.get(run_id)
        if expires_at is None:
            return False
        if time.monotonic() >= expires_at:
            del self._flags[run_id]
            return False
        return True

    async def clear(self, run_id: str) -> None:
        self._flags.pop(run_id, None)


# =============================================================================
# Credits
# =============================================================================

class CreditLedger(Protocol):
    async def get_balance(self, organization_id: str) -> int:
        ...

    async def deduct(self, organization_id: str, amount: int) -> int:
        ...


class InMemoryCreditLedger:
    """Balances held in a dict; unknown organizations have 0 credits"""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})

    async def get_balance(self, organization_id: str) -> int:
        return self._balances.get(organization_id, 0)

    async def deduct(self, organization_id: str, amount: int) -> int:
        self._balances[organization_id] = self._balances.get(organization_id, 0) - amount
        return self._balances[organization_id]

    def set_balance(self, organization_id: str, amount: int):
        self._balances[organization_id] = amount


class RedisCreditLedger:
    """Balances stored as integers under `credits:{organization_id}`"""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @staticmethod
    def _key(organization_id: str) -> str:
        return f"{CREDITS_KEY_PREFIX}:{organization_id}"

    async def get_balance(self, organization_id: str) -> int:
        value = await self.redis.get(self._key(organization_id))
        return int(value) if value is not None else 0

    async def deduct(self, organization_id: str, amount: int) -> int:
        return int(await self.redis.decrby(self._key(organization_id), amount))


# =============================================================================
# Tables, runs and cell versions
# =============================================================================

class TableStore(Protocol):
    async def get_run(self, run_id: str) -> Optional[Run]:
        ...

    async def get_table(self, table_id: str) -> Optional[Table]:
        ...

    async def update_run(self, run_id: str, status: RunStatus, error: Optional[str] = None) -> Run:
        ...

    async def reopen_run(self, run_id: str) -> Run:
        ...

    async def create_cell_version(self, version: CellVersion) -> CellVersion:
        ...

    async def rebuild_cached_table(self, table_id: str) -> None:
        ...


class InMemoryTableStore:
    """
    Dict-backed table/run store.

    Terminal run statuses are final: an update that would leave one is
    ignored. The one exit is reopen_run, which a retry attempt uses to take
    a FAILED run back to RUNNING. Creating a cell version un-picks the previous versions of that
    cell and makes the new value the cell's current value.
    """

    def __init__(self, tables: Optional[List[Table]] = None, runs: Optional[List[Run]] = None):
        self.tables: Dict[str, Table] = {t.id: t for t in tables or []}
        self.runs: Dict[str, Run] = {r.id: r for r in runs or []}
        self.cell_versions: List[CellVersion] = []
        self.cached_tables: Dict[str, Dict[str, Dict[str, Optional[str]]]] = {}

    def add_table(self, table: Table):
        self.tables[table.id] = table

    def add_run(self, run: Run):
        self.runs[run.id] = run

    async def get_run(self, run_id: str) -> Optional[Run]:
        return self.runs.get(run_id)

    async def get_table(self, table_id: str) -> Optional[Table]:
        return self.tables.get(table_id)

    async def update_run(self, run_id: str, status: RunStatus, error: Optional[str] = None) -> Run:
        run = self.runs[run_id]
        if run.status in TERMINAL_RUN_STATUSES:
            logger.warning(f"[{run_id}] Ignoring status change {run.status.value} -> {status.value}")
            return run

        run.status = status
        if error is not None:
            run.error = error
        if status == RunStatus.RUNNING and run.started_at is None:
            run.started_at = utcnow()
        if status in TERMINAL_RUN_STATUSES:
            run.finished_at = utcnow()
        return run

    async def reopen_run(self, run_id: str) -> Run:
        """Move a FAILED run back to RUNNING for a retry attempt"""
        run = self.runs[run_id]
        if run.status != RunStatus.FAILED:
            raise ValueError(f"Run {run_id} is {run.status.value}, only FAILED runs can be reopened")

        run.status = RunStatus.RUNNING
        run.error = None
        run.finished_at = None
        return run

    async def create_cell_version(self, version: CellVersion) -> CellVersion:
        for existing in self.cell_versions:
            if existing.cell_id == version.cell_id:
                existing.picked = False
        self.cell_versions.append(version)

        for table in self.tables.values():
            for row in table.rows:
                for cell in row.cells:
                    if cell.id == version.cell_id:
                        cell.value = version.value
        return version

    async def rebuild_cached_table(self, table_id: str) -> None:
        """Row id -> column name -> current value projection"""
        table = self.tables[table_id]
        names = {column.id: column.name for column in table.columns}
        self.cached_tables[table_id] = {
            row.id: {
                names[cell.column_id]: (None if is_missing_value(cell.value) else cell.value)
                for cell in row.cells
                if cell.column_id in names
            }
            for row in sorted(table.rows, key=lambda r: r.position)
        }
        logger.info(f"Rebuilt cached table {table_id} ({len(table.rows)} rows)")

    def versions_for_run(self, run_id: str) -> List[CellVersion]:
        return [v for v in self.cell_versions if v.run_id == run_id]
