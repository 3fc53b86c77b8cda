"""
Unit Tests for the Row Enrichment Agent

Tests the cycle loop: URL dedup across cycles, the per-cycle cap,
termination, error tolerance, and retry events.
"""

from unittest.mock import AsyncMock

import pytest

from enrichment.agent_loop import RowEnrichmentAgent
from enrichment.events import EventType
from enrichment.models import (
    BulkCrawlSuccess,
    CrawlPageResult,
    ExtractedValue,
    ExtractionOutput,
    RowEnrichmentRequest,
    SearchQueryPlan,
    SearchResultItem,
    TokenUsage,
)


def results_for(prefix, count):
    return [SearchResultItem(title=f"{prefix} {i}", link=f"https://{prefix}{i}.com") for i in range(count)]


def crawl_all(urls, concurrency=None):
    return BulkCrawlSuccess(results=[CrawlPageResult(success=True, url=u, result="text") for u in urls])


def extraction(values):
    return ExtractionOutput(
        values={k: ExtractedValue(result=v, source=f"https://{k.lower()}-source.com") for k, v in values.items()},
        usages=[TokenUsage(descriptor="result-extractor", total_tokens=50)]
    )


@pytest.fixture
def search_provider():
    provider = AsyncMock()
    provider.search.return_value = []
    return provider


@pytest.fixture
def scraper():
    scraper = AsyncMock()
    scraper.bulk_crawl.side_effect = crawl_all
    return scraper


@pytest.fixture
def extractor():
    extractor = AsyncMock()
    extractor.extract.return_value = ExtractionOutput()
    return extractor


@pytest.fixture
def agent(mock_planner, search_provider, scraper, extractor):
    return RowEnrichmentAgent(
        planner=mock_planner,
        search_provider=search_provider,
        scraper=scraper,
        extractor=extractor,
        max_cycles=2,
        max_urls_per_cycle=15,
        results_per_query=10
    )


@pytest.fixture
def request_two_targets():
    return RowEnrichmentRequest(
        row={"Company": "Acme"},
        headers=["Email", "Website"],
        concurrency=3,
        prompt="Find contact details",
        websites=["acme.com"],
        row_id="row_1",
        row_position=1
    )


class EventRecorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [e for e in self.events if e.event_type == event_type]


class TestTwoCycleScenario:

    @pytest.mark.asyncio
    async def test_second_cycle_targets_remaining_column(
        self, agent, search_provider, scraper, extractor, request_two_targets
    ):
        # Cycle 1: two queries x 10 results = 20 links; cycle 2: 10 old + 10 new links
        search_provider.search.side_effect = [
            results_for("a", 10), results_for("b", 10),
            results_for("a", 10), results_for("c", 10),
        ]
        extractor.extract.side_effect = [extraction({"Website": "acme.com"}), ExtractionOutput()]
        recorder = EventRecorder()

        result = await agent.run(request_two_targets, recorder)

        first_urls = scraper.bulk_crawl.await_args_list[0].args[0]
        second_urls = scraper.bulk_crawl.await_args_list[1].args[0]
        assert len(first_urls) == 15
        assert first_urls == [f"https://a{i}.com" for i in range(10)] + [f"https://b{i}.com" for i in range(5)]
        assert not set(first_urls) & set(second_urls)
        assert len(second_urls) <= 15

        assert extractor.extract.await_args_list[1].kwargs["missing_columns"] == ["Email"]

        retrying = recorder.of_type(EventType.ROW_RETRYING)
        assert len(retrying) == 1
        assert retrying[0].columns_filled == 1
        assert retrying[0].columns_total == 2
        assert retrying[0].cycle == 2
        assert retrying[0].row_id == "row_1"

        assert result.cycles == 2
        assert result.filled_count == 1
        assert result.success
        assert result.enriched_row["Website"] == "acme.com"
        assert result.sources == {"Website": "https://website-source.com"}
        assert scraper.bulk_crawl.await_count == 2

    @pytest.mark.asyncio
    async def test_stage_events_are_paired(self, agent, search_provider, extractor, request_two_targets):
        search_provider.search.return_value = results_for("a", 3)
        extractor.extract.return_value = extraction({"Email": "a@acme.com", "Website": "acme.com"})
        recorder = EventRecorder()

        await agent.run(request_two_targets, recorder)

        stages = [(e.event_type, e.stage) for e in recorder.events]
        assert stages == [
            (EventType.STAGE_START, "lookup"), (EventType.STAGE_COMPLETE, "lookup"),
            (EventType.STAGE_START, "search"), (EventType.STAGE_COMPLETE, "search"),
            (EventType.STAGE_START, "scrape"), (EventType.STAGE_COMPLETE, "scrape"),
            (EventType.STAGE_START, "parse"), (EventType.STAGE_COMPLETE, "parse"),
        ]


class TestTermination:

    @pytest.mark.asyncio
    async def test_complete_row_stops_after_first_cycle(self, agent, search_provider, extractor, request_two_targets):
        search_provider.search.return_value = results_for("a", 5)
        extractor.extract.return_value = extraction({"Email": "a@acme.com", "Website": "acme.com"})
        recorder = EventRecorder()

        result = await agent.run(request_two_targets, recorder)

        assert result.cycles == 1
        assert result.filled_count == 2
        assert not recorder.of_type(EventType.ROW_RETRYING)

    @pytest.mark.asyncio
    async def test_no_new_urls_ends_row(self, agent, search_provider, scraper, request_two_targets):
        search_provider.search.return_value = results_for("a", 5)

        result = await agent.run(request_two_targets)

        assert scraper.bulk_crawl.await_count == 1
        assert result.cycles == 2
        assert result.filled_count == 0
        assert not result.success

    @pytest.mark.asyncio
    async def test_no_queries_ends_row(self, agent, mock_planner, scraper, request_two_targets):
        mock_planner.plan.return_value = (SearchQueryPlan(plan="nothing to search", queries=[]), None)

        result = await agent.run(request_two_targets)

        scraper.bulk_crawl.assert_not_awaited()
        assert result.cycles == 1

    @pytest.mark.asyncio
    async def test_never_more_than_max_cycles(self, agent, mock_planner, search_provider, scraper, request_two_targets):
        counter = {"n": 0}

        async def fresh_results(query, limit):
            counter["n"] += 1
            return results_for(f"q{counter['n']}x", 10)

        search_provider.search.side_effect = fresh_results

        result = await agent.run(request_two_targets)

        assert result.cycles == 2
        assert mock_planner.plan.await_count == 2
        assert scraper.bulk_crawl.await_count == 2

    @pytest.mark.asyncio
    async def test_already_complete_row_runs_no_cycles(self, agent, mock_planner):
        request = RowEnrichmentRequest(row={"Email": "a@b.c", "Website": "b.c"}, headers=["Email", "Website"])

        result = await agent.run(request)

        mock_planner.plan.assert_not_awaited()
        assert result.cycles == 0
        assert result.filled_count == 0


class TestCycleErrors:

    @pytest.mark.asyncio
    async def test_planner_error_is_not_fatal(self, agent, mock_planner, search_provider, extractor, request_two_targets):
        good_plan = mock_planner.plan.return_value
        mock_planner.plan.side_effect = [RuntimeError("model down"), good_plan]
        search_provider.search.return_value = results_for("a", 3)
        extractor.extract.return_value = extraction({"Email": "a@acme.com"})

        result = await agent.run(request_two_targets)

        assert result.cycles == 2
        assert result.enriched_row["Email"] == "a@acme.com"
        assert result.filled_count == 1

    @pytest.mark.asyncio
    async def test_failing_stage_still_completes(self, agent, search_provider, scraper, request_two_targets):
        search_provider.search.side_effect = RuntimeError("serper down")
        recorder = EventRecorder()

        result = await agent.run(request_two_targets, recorder)

        assert result.cycles == 2
        assert result.filled_count == 0
        scraper.bulk_crawl.assert_not_awaited()
        starts = [e.stage for e in recorder.of_type(EventType.STAGE_START)]
        completes = [e.stage for e in recorder.of_type(EventType.STAGE_COMPLETE)]
        assert starts == ["lookup", "search", "lookup", "search"]
        assert completes == starts

    @pytest.mark.asyncio
    async def test_crawl_error_still_marks_urls_scraped(
        self, agent, mock_planner, search_provider, scraper, request_two_targets
    ):
        search_provider.search.return_value = results_for("a", 4)
        scraper.bulk_crawl.side_effect = RuntimeError("crawler exploded")

        result = await agent.run(request_two_targets)

        # Same links in cycle 2 are all already attempted, so the loop ends without re-crawling
        assert scraper.bulk_crawl.await_count == 1
        assert result.cycles == 2
        second_call = mock_planner.plan.await_args_list[1].kwargs
        assert second_call["previous_queries"] == ["acme email", "acme website"]

    @pytest.mark.asyncio
    async def test_failing_event_sink_does_not_change_outcome(
        self, agent, search_provider, extractor, request_two_targets
    ):
        search_provider.search.return_value = results_for("a", 3)
        extractor.extract.return_value = extraction({"Email": "a@acme.com", "Website": "acme.com"})
        sink = AsyncMock(side_effect=ConnectionError("redis gone"))

        result = await agent.run(request_two_targets, sink)

        assert result.filled_count == 2
        assert sink.await_count > 0

    @pytest.mark.asyncio
    async def test_usages_collected_from_planner_and_extractor(
        self, agent, search_provider, extractor, request_two_targets
    ):
        search_provider.search.return_value = results_for("a", 3)
        extractor.extract.return_value = extraction({"Email": "a@acme.com", "Website": "acme.com"})

        result = await agent.run(request_two_targets)

        assert [u.descriptor for u in result.usages] == ["query-writer", "result-extractor"]


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_close_closes_every_component(self, agent, mock_planner, search_provider, scraper, extractor):
        await agent.close()

        mock_planner.close.assert_awaited_once()
        search_provider.close.assert_awaited_once()
        scraper.close.assert_awaited_once()
        extractor.close.assert_awaited_once()
