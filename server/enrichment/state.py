"""
Per-row state for the enrichment loop.

One RowState lives for a single row enrichment invocation. Only the row
enrichment agent mutates it, and only through the methods below.
"""

from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field

from .models import SearchHistoryEntry, TokenUsage, is_missing_value

DEFAULT_MAX_CYCLES = 2


class RowState(BaseModel):
    """State maintained while enriching one row"""
    row: Dict[str, str]
    headers: List[str]
    cycle: int = 0
    max_cycles: int = DEFAULT_MAX_CYCLES
    search_history: List[SearchHistoryEntry] = Field(default_factory=list)
    scraped_urls: Set[str] = Field(default_factory=set)
    usages: List[TokenUsage] = Field(default_factory=list)
    sources: Dict[str, str] = Field(default_factory=dict)

    # Row reads

    def missing_columns(self) -> List[str]:
        """Target headers that are absent, blank, or '-'"""
        return [h for h in self.headers if is_missing_value(self.row.get(h))]

    def is_complete(self) -> bool:
        return not self.missing_columns()

    def should_stop(self) -> bool:
        return self.cycle >= self.max_cycles

    def previous_queries(self) -> List[str]:
        return [entry.query for entry in self.search_history]

    def is_scraped(self, url: str) -> bool:
        return url in self.scraped_urls

    def filled_count(self) -> int:
        return len(self.headers) - len(self.missing_columns())

    # Mutations

    def record_search(self, entry: SearchHistoryEntry):
        self.search_history.append(entry)

    def mark_scraped(self, urls: List[str]):
        """Scraped URLs are never removed, whether the crawl succeeded or not"""
        self.scraped_urls.update(urls)

    def record_usage(self, usage: Optional[TokenUsage]):
        if usage is not None:
            self.usages.append(usage)

    def merge_values(self, values: Dict[str, str], sources: Optional[Dict[str, str]] = None) -> List[str]:
        """
        Write non-empty values into the row.

        Returns the columns that were filled by this call.
        """
        filled = []
        for column, value in values.items():
            if is_missing_value(value):
                continue
            self.row[column] = value
            if sources and column in sources:
                self.sources[column] = sources[column]
            filled.append(column)
        return filled

    def advance_cycle(self) -> int:
        self.cycle += 1
        return self.cycle
