"""
Pydantic models for the Tablefill enrichment engine

Defines the data structures passed between the query planner, web search,
bulk crawler, extractor, row enrichment loop and run controller, plus the
table/run records owned by the external store.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field
import uuid


PLACEHOLDER_VALUE = "-"


def is_missing_value(value: Optional[str]) -> bool:
    """A cell counts as missing when absent, blank, or the '-' placeholder"""
    return value is None or value.strip() == "" or value == PLACEHOLDER_VALUE


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Search / planning

class SearchResultItem(BaseModel):
    """One organic result returned by the web search client"""
    title: str = ""
    link: str
    snippet: str = ""
    date: Optional[str] = None


class SearchHistoryEntry(BaseModel):
    """A query that was executed and what it returned"""
    query: str
    results: List[SearchResultItem] = Field(default_factory=list)


class SearchQueryPlan(BaseModel):
    """Plan produced by the query planner for one cycle"""
    plan: str = Field(..., description="A detailed strategy for filling the missing CSV cells.")
    queries: List[str] = Field(
        default_factory=list,
        description="A list of search queries to execute for filling missing data."
    )


class TokenUsage(BaseModel):
    """Token counts reported by one model call"""
    descriptor: str
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


# Crawling

class CrawlOutcome(BaseModel):
    """Result of crawling a single URL"""
    url: str
    success: bool
    content: str = ""
    error: Optional[str] = None
    links: List[str] = Field(default_factory=list)


class CrawlPageResult(BaseModel):
    """Per-URL entry of a bulk crawl envelope; `result` holds content or the error"""
    success: bool
    url: str
    result: str
    links: List[str] = Field(default_factory=list)


class BulkCrawlSuccess(BaseModel):
    success: Literal[True] = True
    results: List[CrawlPageResult] = Field(default_factory=list)


class BulkCrawlPartial(BaseModel):
    success: Literal["partial"] = "partial"
    results: List[CrawlPageResult] = Field(default_factory=list)
    success_count: int
    failure_count: int


class BulkCrawlFailure(BaseModel):
    success: Literal[False] = False
    error: str


BulkCrawlResult = Union[BulkCrawlSuccess, BulkCrawlPartial, BulkCrawlFailure]


def successful_pages(crawl: BulkCrawlResult) -> List[CrawlPageResult]:
    """Pages from a bulk crawl that can be handed to extraction"""
    if isinstance(crawl, BulkCrawlFailure):
        return []
    return [page for page in crawl.results if page.success]


# Extraction

class ExtractedValue(BaseModel):
    """A sourced value for one column"""
    result: str = Field(..., description="The extracted value for this column")
    source: str = Field(..., description="The source URL where this information was found")


class ExtractionOutput(BaseModel):
    """Merged extraction for one pass: absent key means 'not found this pass'"""
    values: Dict[str, ExtractedValue] = Field(default_factory=dict)
    usages: List[TokenUsage] = Field(default_factory=list)


# Row enrichment

class RowEnrichmentRequest(BaseModel):
    """Input of one row enrichment invocation"""
    row: Dict[str, str]
    headers: List[str]
    concurrency: int = Field(default=3, ge=1)
    prompt: Optional[str] = None
    websites: List[str] = Field(default_factory=list)
    row_id: Optional[str] = None
    row_position: Optional[int] = None


class RowEnrichmentResult(BaseModel):
    """Outcome of one row enrichment invocation"""
    enriched_row: Dict[str, str]
    sources: Dict[str, str] = Field(default_factory=dict)
    cycles: int = 0
    usages: List[TokenUsage] = Field(default_factory=list)
    filled_count: int = 0
    success: bool = False


# Table / run records (owned by the external store)

class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


class ColumnType(str, Enum):
    SOURCE = "SOURCE"          # Read-only input data
    ENRICHMENT = "ENRICHMENT"  # Filled by the engine


class Hint(BaseModel):
    """User guidance attached to a table or column"""
    prompt: Optional[str] = None
    websites: List[str] = Field(default_factory=list)


class Column(BaseModel):
    id: str
    name: str
    type: ColumnType
    position: int = 0
    hint: Optional[Hint] = None


class Cell(BaseModel):
    """A (row, column) slot with its currently picked value"""
    id: str
    column_id: str
    value: Optional[str] = None


class TableRow(BaseModel):
    id: str
    position: int
    cells: List[Cell] = Field(default_factory=list)

    def cell_for(self, column_id: str) -> Optional[Cell]:
        for cell in self.cells:
            if cell.column_id == column_id:
                return cell
        return None


class Table(BaseModel):
    id: str
    organization_id: str
    columns: List[Column] = Field(default_factory=list)
    rows: List[TableRow] = Field(default_factory=list)
    hint: Optional[Hint] = None

    @property
    def source_columns(self) -> List[Column]:
        return sorted(
            (c for c in self.columns if c.type == ColumnType.SOURCE),
            key=lambda c: c.position
        )

    @property
    def enrichment_columns(self) -> List[Column]:
        return sorted(
            (c for c in self.columns if c.type == ColumnType.ENRICHMENT),
            key=lambda c: c.position
        )


class Run(BaseModel):
    id: str
    table_id: str
    status: RunStatus = RunStatus.PENDING
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class CellVersion(BaseModel):
    """An immutable value for a cell, with provenance"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    cell_id: str
    run_id: str
    value: str
    source_url: Optional[str] = None
    origin: str = "AI"
    picked: bool = True
    picked_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)


class RunSummary(BaseModel):
    """What the run controller reports back to the job worker"""
    run_id: str
    status: RunStatus
    rows_total: int = 0
    rows_processed: int = 0
    rows_failed: int = 0
    rows_skipped: int = 0
    cells_filled: int = 0
    user_id: Optional[str] = None
    processed_at: datetime = Field(default_factory=utcnow)


class EnrichmentJob(BaseModel):
    """A unit of work delivered by the job source"""
    run_id: str
    user_id: Optional[str] = None
    attempt: int = 1
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
