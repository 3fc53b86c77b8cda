"""
Run Controller - Drives one enrichment run over every row of a table

Run state machine:

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED

Before the run starts and before every row the controller re-reads the
cancel flag and the organization's credit balance. Rows are processed
strictly one after another. A failing row emits row-failed and the run moves
on; only setup errors, cancellation and running out of credits leave the
row loop.
"""

import logging
from typing import Dict, List, Optional

from config.settings import get_settings
from core.exceptions import (
    InsufficientCreditsError,
    NonRetryableError,
    NotFoundError,
    RunFailedError,
    RunNotFoundError,
)

from .agent_loop import RowEnrichmentAgent
from .events import (
    EventPublisher,
    RowEventSink,
    bind_sink,
    cell_update,
    insufficient_credits,
    row_complete,
    row_failed,
    row_skipped,
    row_start,
    run_cancelled,
    run_complete,
)
from .models import (
    CellVersion,
    Column,
    EnrichmentJob,
    RowEnrichmentRequest,
    RowEnrichmentResult,
    RunStatus,
    TERMINAL_RUN_STATUSES,
    RunSummary,
    Table,
    TableRow,
    is_missing_value,
)
from .stores import CancellationChecker, CreditLedger, TableStore

logger = logging.getLogger("enrichment.run_controller")

DEFAULT_PROMPT = "Enrich the data"


def build_prompt(table: Table) -> str:
    """Table hint prompt first, then one line per column hint"""
    prompt = (table.hint.prompt if table.hint else None) or DEFAULT_PROMPT
    column_hints = [
        f"- {column.name}: {column.hint.prompt}"
        for column in table.enrichment_columns
        if column.hint and column.hint.prompt
    ]
    if column_hints:
        prompt += "\n\nColumn-specific instructions:\n" + "\n".join(column_hints)
    return prompt


def collect_websites(table: Table) -> List[str]:
    """Table websites followed by column websites, de-duplicated in order"""
    websites = list(table.hint.websites) if table.hint else []
    for column in table.enrichment_columns:
        if column.hint:
            websites.extend(column.hint.websites)
    return list(dict.fromkeys(w for w in websites if w))


def build_row_context(row: TableRow, source_columns: List[Column]) -> Dict[str, str]:
    context = {}
    for column in source_columns:
        cell = row.cell_for(column.id)
        context[column.name] = (cell.value if cell else None) or ""
    return context


class RunController:
    """
    Processes one run end to end.

    Args:
        store: Table/run/cell-version store
        credits: Credit ledger, read before each row and debited after
        cancellation: Cancel flag store, polled at row boundaries
        publisher: Event publisher (failures are swallowed)
        agent: Row enrichment agent
        concurrency: Crawl permits per row
    """

    def __init__(
        self,
        store: TableStore,
        credits: CreditLedger,
        cancellation: CancellationChecker,
        publisher: Optional[EventPublisher] = None,
        agent: Optional[RowEnrichmentAgent] = None,
        concurrency: Optional[int] = None
    ):
        self.store = store
        self.credits = credits
        self.cancellation = cancellation
        self.publisher = publisher
        self.agent = agent or RowEnrichmentAgent()
        self.concurrency = concurrency or get_settings().crawl_concurrency

    async def process_run(self, job: EnrichmentJob) -> RunSummary:
        """
        Run the enrichment for `job.run_id`.

        Returns:
            RunSummary (status COMPLETED or CANCELLED). A run that is already
            terminal is left untouched and its stored status is reported,
            except a FAILED run on a retry attempt, which is reopened.

        Raises:
            InsufficientCreditsError: credits ran out; must not be retried
            RunFailedError: anything else went wrong; retryable
        """
        run_id = job.run_id
        logger.info(f"[RUN STARTED] Run ID: {run_id}")

        try:
            run = await self.store.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            if run.status in TERMINAL_RUN_STATUSES:
                if not (job.attempt > 1 and run.status == RunStatus.FAILED):
                    logger.warning(f"[{run_id}] Run is already {run.status.value}, nothing to do")
                    return RunSummary(run_id=run_id, status=run.status, user_id=job.user_id)
                logger.info(f"[{run_id}] Reopening FAILED run for attempt {job.attempt}")
                await self.store.reopen_run(run_id)
            table = await self.store.get_table(run.table_id)
            if table is None:
                raise NotFoundError("Table", run.table_id)

            emit = bind_sink(self.publisher, table.id)
            summary = RunSummary(
                run_id=run_id,
                status=RunStatus.RUNNING,
                rows_total=len(table.rows),
                user_id=job.user_id
            )

            if await self._cancel_if_requested(run_id, emit):
                summary.status = RunStatus.CANCELLED
                return summary
            await self._require_credits(run_id, table, emit)

            await self.store.update_run(run_id, RunStatus.RUNNING)
            source_columns = table.source_columns
            enrichment_columns = table.enrichment_columns
            targets = [column.name for column in enrichment_columns]
            prompt = build_prompt(table)
            websites = collect_websites(table)

            logger.info(
                f"[{run_id}] {len(table.rows)} rows, {len(source_columns)} source columns, "
                f"{len(enrichment_columns)} enrichment columns; websites: {', '.join(websites) or 'none'}"
            )

            rows = sorted(table.rows, key=lambda r: r.position)
            for index, row in enumerate(rows):
                if index > 0:
                    if await self._cancel_if_requested(run_id, emit):
                        summary.status = RunStatus.CANCELLED
                        return summary
                    await self._require_credits(run_id, table, emit)

                tag = f"[ROW {index + 1}/{len(rows)}]"
                await emit(row_start(row.id, row.position))

                row_context = build_row_context(row, source_columns)
                if all(is_missing_value(value) for value in row_context.values()):
                    logger.info(f"{tag} No source data, skipping")
                    await emit(row_skipped(row.id, row.position, "Row has no source data"))
                    summary.rows_skipped += 1
                    continue

                request = RowEnrichmentRequest(
                    row=row_context,
                    headers=targets,
                    concurrency=self.concurrency,
                    prompt=prompt,
                    websites=websites,
                    row_id=row.id,
                    row_position=row.position
                )

                try:
                    result = await self.agent.run(request, emit)
                    persisted = await self._persist_row(run_id, row, enrichment_columns, result, emit)
                    if persisted > 0:
                        remaining = await self.credits.deduct(table.organization_id, persisted)
                        logger.info(f"{tag} Deducted {persisted} credits ({remaining} remaining)")
                    logger.info(f"{tag} Filled {persisted}/{len(targets)} columns in {result.cycles} cycles")
                    await emit(row_complete(row.id, row.position, persisted, len(targets)))
                    summary.rows_processed += 1
                    summary.cells_filled += persisted
                except Exception as e:
                    logger.error(f"{tag} ERROR: {e}", exc_info=True)
                    await emit(row_failed(row.id, row.position, str(e)))
                    summary.rows_failed += 1

            await self.store.update_run(run_id, RunStatus.COMPLETED)
            await self.store.rebuild_cached_table(table.id)
            await emit(run_complete())
            summary.status = RunStatus.COMPLETED

            logger.info(
                f"[RUN COMPLETED] Run {run_id}: {summary.rows_processed} processed, "
                f"{summary.rows_failed} failed, {summary.rows_skipped} skipped"
            )
            return summary

        except NonRetryableError:
            raise
        except Exception as e:
            logger.error(f"[RUN FAILED] Run {run_id}: {e}", exc_info=True)
            await self._mark_failed(run_id, str(e))
            raise RunFailedError(run_id, str(e)) from e

    async def _cancel_if_requested(self, run_id: str, emit: RowEventSink) -> bool:
        if not await self.cancellation.is_cancelled(run_id):
            return False

        logger.info(f"[RUN CANCELLED] Run {run_id} cancelled by user")
        await self.cancellation.clear(run_id)
        await self.store.update_run(run_id, RunStatus.CANCELLED)
        await emit(run_cancelled())
        return True

    async def _require_credits(self, run_id: str, table: Table, emit: RowEventSink):
        balance = await self.credits.get_balance(table.organization_id)
        if balance >= 1:
            return

        error = InsufficientCreditsError(table.organization_id, balance)
        logger.warning(f"[{run_id}] {error.message}")
        await self.store.update_run(run_id, RunStatus.FAILED, error=error.message)
        await emit(insufficient_credits(balance))
        raise error

    async def _persist_row(
        self,
        run_id: str,
        row: TableRow,
        enrichment_columns: List[Column],
        result: RowEnrichmentResult,
        emit: RowEventSink
    ) -> int:
        """Write a picked AI cell version for every filled enrichment column"""
        persisted = 0
        for column in enrichment_columns:
            value = result.enriched_row.get(column.name)
            if is_missing_value(value):
                continue
            cell = row.cell_for(column.id)
            if cell is None:
                logger.warning(f"[{run_id}] Row {row.id} has no cell for column {column.name}")
                continue

            await self.store.create_cell_version(CellVersion(
                cell_id=cell.id,
                run_id=run_id,
                value=value,
                source_url=result.sources.get(column.name)
            ))
            logger.debug(f"[CELL VERSION] Created for {column.name}: {value[:50]!r}")
            await emit(cell_update(row.id, column.id, column.name, value))
            persisted += 1
        return persisted

    async def _mark_failed(self, run_id: str, message: str):
        try:
            await self.store.update_run(run_id, RunStatus.FAILED, error=message)
        except Exception as e:
            logger.error(f"[{run_id}] Could not mark run as FAILED: {e}")
