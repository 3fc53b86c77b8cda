"""
Tablefill Enrichment Engine

Fills missing cells of tabular records from the web:
- QueryPlanner: turns row gaps into search queries
- SearchProvider: executes web searches (Serper, SearXNG)
- ContentScraper: bounded-concurrency crawl with fallback fetching
- ResultExtractor: batched structured extraction with per-call schemas
- RowEnrichmentAgent: the per-row cycle loop (at most 2 cycles)
- RunController: walks every row of a run under credit and cancellation gates
- EnrichmentWorker: pulls runs from a job source and retries failures
"""

from .agent_loop import RowEnrichmentAgent
from .events import EnrichmentEvent, EventType, InMemoryEventPublisher, RedisEventPublisher, Stage
from .extractor import ResultExtractor, build_extraction_model
from .jobs import EnrichmentWorker, InMemoryJobSource, RedisJobSource
from .llm_client import OllamaStructuredClient
from .models import (
    BulkCrawlFailure,
    BulkCrawlPartial,
    BulkCrawlSuccess,
    EnrichmentJob,
    RowEnrichmentRequest,
    RowEnrichmentResult,
    RunStatus,
    RunSummary,
)
from .planner import QueryPlanner
from .run_controller import RunController
from .scraper import ContentScraper, DirectFetchStrategy, ScrapingBeeFetchStrategy
from .searcher import SearchProvider, SearXNGSearchProvider, SerperSearchProvider, build_search_provider
from .state import RowState

__all__ = [
    "BulkCrawlFailure",
    "BulkCrawlPartial",
    "BulkCrawlSuccess",
    "ContentScraper",
    "DirectFetchStrategy",
    "EnrichmentEvent",
    "EnrichmentJob",
    "EnrichmentWorker",
    "EventType",
    "InMemoryEventPublisher",
    "InMemoryJobSource",
    "OllamaStructuredClient",
    "QueryPlanner",
    "RedisEventPublisher",
    "RedisJobSource",
    "ResultExtractor",
    "RowEnrichmentAgent",
    "RowEnrichmentRequest",
    "RowEnrichmentResult",
    "RowState",
    "RunController",
    "RunStatus",
    "RunSummary",
    "ScrapingBeeFetchStrategy",
    "SearchProvider",
    "SearXNGSearchProvider",
    "SerperSearchProvider",
    "Stage",
    "build_extraction_model",
    "build_search_provider",
]
