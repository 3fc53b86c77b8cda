"""
Row Enrichment Agent - Iterative Search/Crawl/Extract Loop

Runs up to `max_cycles` cycles for one row:

    plan queries -> search -> crawl new URLs -> extract -> merge

The loop stops early when the row is complete or when a cycle discovers no
URL that hasn't been crawled already. Any exception inside a cycle is
logged and the cycle counts as having produced nothing; it is never fatal
to the row.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from config.settings import get_settings

from .events import (
    EnrichmentEvent,
    RowEventSink,
    Stage,
    row_retrying,
    stage_complete,
    stage_start,
)
from .extractor import ResultExtractor
from .models import (
    RowEnrichmentRequest,
    RowEnrichmentResult,
    SearchHistoryEntry,
    SearchResultItem,
    successful_pages,
)
from .planner import QueryPlanner
from .scraper import ContentScraper
from .searcher import SearchProvider, build_search_provider
from .state import RowState

logger = logging.getLogger("enrichment.agent_loop")


class RowEnrichmentAgent:
    """
    Fills the missing cells of one row.

    Args:
        planner: Query planner (LLM-backed)
        search_provider: Web search provider
        scraper: Bulk crawler
        extractor: Batched extraction engine
        max_cycles: Cycle cap per row (default 2)
        max_urls_per_cycle: URLs crawled per cycle at most (default 15)
        results_per_query: Search results requested per query (default 10)
    """

    def __init__(
        self,
        planner: Optional[QueryPlanner] = None,
        search_provider: Optional[SearchProvider] = None,
        scraper: Optional[ContentScraper] = None,
        extractor: Optional[ResultExtractor] = None,
        max_cycles: Optional[int] = None,
        max_urls_per_cycle: Optional[int] = None,
        results_per_query: Optional[int] = None
    ):
        settings = get_settings()
        self.planner = planner or QueryPlanner()
        self.search_provider = search_provider or build_search_provider(settings)
        self.scraper = scraper or ContentScraper()
        self.extractor = extractor or ResultExtractor()
        self.max_cycles = max_cycles or settings.max_cycles
        self.max_urls_per_cycle = max_urls_per_cycle or settings.max_urls_per_cycle
        self.results_per_query = results_per_query or settings.search_results_per_query

    async def close(self):
        """Close the HTTP clients owned by the planner, search provider, scraper and extractor"""
        await self.planner.close()
        await self.search_provider.close()
        await self.scraper.close()
        await self.extractor.close()

    async def run(
        self,
        request: RowEnrichmentRequest,
        emit: Optional[RowEventSink] = None
    ) -> RowEnrichmentResult:
        """
        Enrich one row.

        Args:
            request: Row, target headers and crawl/prompt options
            emit: Optional event sink for stage and retry events

        Returns:
            RowEnrichmentResult with the final row, per-column sources,
            cycles executed, token usage and the number of newly filled cells
        """
        state = RowState(
            row=dict(request.row),
            headers=list(request.headers),
            max_cycles=self.max_cycles
        )
        tag = f"[ROW {request.row_position}]" if request.row_position is not None else "[ROW]"
        initially_missing = len(state.missing_columns())
        cycles_run = 0

        logger.info(f"{tag} Starting enrichment with {initially_missing} missing columns")

        while not state.should_stop() and not state.is_complete():
            cycles_run += 1
            logger.info(f"{tag} --- Cycle {state.cycle + 1} --- missing: {', '.join(state.missing_columns())}")

            try:
                keep_going = await self._run_cycle(state, request, emit, tag)
            except Exception as e:
                logger.error(f"{tag} Error in cycle {state.cycle + 1}: {e}", exc_info=True)
                keep_going = True

            if not keep_going:
                break
            if state.is_complete():
                logger.info(f"{tag} Row is complete")
                break

            state.advance_cycle()
            if state.cycle == 1 and not state.should_stop():
                await self._emit(emit, row_retrying(
                    row_id=request.row_id,
                    row_position=request.row_position,
                    columns_filled=state.filled_count(),
                    columns_total=len(state.headers),
                    cycle=state.cycle + 1
                ))

        filled_count = initially_missing - len(state.missing_columns())
        logger.info(
            f"{tag} Finished after {cycles_run} cycles: filled {filled_count}/{initially_missing}, "
            f"{len(state.missing_columns())} still missing"
        )

        return RowEnrichmentResult(
            enriched_row=state.row,
            sources=state.sources,
            cycles=cycles_run,
            usages=state.usages,
            filled_count=filled_count,
            success=filled_count > 0
        )

    async def _run_cycle(
        self,
        state: RowState,
        request: RowEnrichmentRequest,
        emit: Optional[RowEventSink],
        tag: str
    ) -> bool:
        """One plan/search/crawl/extract pass. Returns False when the row loop must end."""
        async with self._stage(emit, Stage.LOOKUP):
            plan, usage = await self.planner.plan(
                row=state.row,
                previous_queries=state.previous_queries(),
                prompt=request.prompt,
                websites=request.websites
            )
            state.record_usage(usage)
            logger.info(f"{tag} Plan: {plan.plan[:200]}")

        async with self._stage(emit, Stage.SEARCH):
            result_lists = await self._search_all(state, plan.queries)

        urls = self.select_urls(state, result_lists)
        if not urls:
            logger.info(f"{tag} No new URLs to scrape, ending row")
            return False

        async with self._stage(emit, Stage.SCRAPE):
            try:
                crawl = await self.scraper.bulk_crawl(urls, request.concurrency)
            finally:
                state.mark_scraped(urls)

        async with self._stage(emit, Stage.PARSE):
            output = await self.extractor.extract(
                pages=successful_pages(crawl),
                row=state.row,
                headers=state.headers,
                missing_columns=state.missing_columns()
            )
            for extraction_usage in output.usages:
                state.record_usage(extraction_usage)
            filled = state.merge_values(
                {column: value.result for column, value in output.values.items()},
                {column: value.source for column, value in output.values.items()}
            )

        logger.info(f"{tag} Filled {len(filled)} columns this cycle, {len(state.missing_columns())} still missing")
        return True

    @asynccontextmanager
    async def _stage(self, emit: Optional[RowEventSink], stage: Stage):
        """Bracket a stage with start/complete events; complete is sent even if the stage raises"""
        await self._emit(emit, stage_start(stage))
        try:
            yield
        finally:
            await self._emit(emit, stage_complete(stage))

    async def _search_all(self, state: RowState, queries: List[str]) -> List[List[SearchResultItem]]:
        """Run every query concurrently; each finished query is recorded in history"""

        async def search_one(query: str) -> List[SearchResultItem]:
            results = await self.search_provider.search(query, self.results_per_query)
            state.record_search(SearchHistoryEntry(query=query, results=results))
            return results

        return list(await asyncio.gather(*(search_one(q) for q in queries)))

    def select_urls(self, state: RowState, result_lists: List[List[SearchResultItem]]) -> List[str]:
        """Union links in discovery order, drop already-scraped ones, cap the rest"""
        urls = []
        seen = set()
        for results in result_lists:
            for item in results:
                if item.link in seen or state.is_scraped(item.link):
                    continue
                seen.add(item.link)
                urls.append(item.link)
        return urls[:self.max_urls_per_cycle]

    async def _emit(self, emit: Optional[RowEventSink], event: EnrichmentEvent):
        if emit is None:
            return
        try:
            await emit(event)
        except Exception as e:
            logger.warning(f"Event sink failed for {event.event_type.value}: {e}")
