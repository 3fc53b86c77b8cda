"""
Concurrent Web Acquisition

Fetches a set of URLs under a permit cap, converts each page to readable
text, collects outbound links, and classifies the batch into the three-way
envelope (all success / partial / all failure).

Each URL is tried against an ordered list of fetch strategies:
- DirectFetchStrategy: plain GET. A non-2xx answer is final ("skipped").
- ScrapingBeeFetchStrategy: third-party fetch, only reached when the
  previous strategy raised. A non-2xx answer is final.
Per-URL failures are never retried here.
"""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import httpx
from bs4 import BeautifulSoup

from config.settings import get_settings
from core.exceptions import ConfigurationError

from .models import (
    BulkCrawlFailure,
    BulkCrawlPartial,
    BulkCrawlResult,
    BulkCrawlSuccess,
    CrawlOutcome,
    CrawlPageResult,
)

logger = logging.getLogger("enrichment.scraper")

STRIPPED_TAGS = ["script", "style", "iframe", "noscript"]


class FetchStatus(str, Enum):
    OK = "ok"              # Page body available
    REJECTED = "rejected"  # Server answered non-2xx; terminal for this URL
    ERROR = "error"        # Raised; try the next strategy


@dataclass
class FetchAttempt:
    """Uniform result of one fetch strategy for one URL"""
    status: FetchStatus
    html: str = ""
    error: str = ""

    @classmethod
    def ok(cls, html: str) -> "FetchAttempt":
        return cls(status=FetchStatus.OK, html=html)

    @classmethod
    def rejected(cls, error: str) -> "FetchAttempt":
        return cls(status=FetchStatus.REJECTED, error=error)

    @classmethod
    def failed(cls, error: str) -> "FetchAttempt":
        return cls(status=FetchStatus.ERROR, error=error)


class FetchStrategy(ABC):
    """One way of getting a page's HTML"""

    name = "fetch"

    async def attempt(self, client: httpx.AsyncClient, url: str) -> FetchAttempt:
        """Run the strategy, turning any raised exception into an ERROR attempt"""
        try:
            return await self.fetch(client, url)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.debug(f"{self.name} fetch raised for {url}: {message}")
            return FetchAttempt.failed(message)

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient, url: str) -> FetchAttempt:
        pass


class DirectFetchStrategy(FetchStrategy):
    """GET the URL ourselves"""

    name = "direct"

    async def fetch(self, client: httpx.AsyncClient, url: str) -> FetchAttempt:
        response = await client.get(url)
        if not response.is_success:
            return FetchAttempt.rejected(f"Skipped: HTTP {response.status_code}")
        return FetchAttempt.ok(response.text)


class ScrapingBeeFetchStrategy(FetchStrategy):
    """Fetch through the ScrapingBee API (handles blocking and JS-heavy sites)"""

    name = "scrapingbee"

    def __init__(self, api_key: Optional[str] = None, api_url: Optional[str] = None):
        settings = get_settings()
        self.api_key = api_key or settings.scrapingbee_api_key
        self.api_url = api_url or settings.scrapingbee_url

    async def fetch(self, client: httpx.AsyncClient, url: str) -> FetchAttempt:
        if not self.api_key:
            raise ConfigurationError("ScrapingBee API key is not configured", setting="scrapingbee_api_key")

        response = await client.get(self.api_url, params={"api_key": self.api_key, "url": url})
        if not response.is_success:
            return FetchAttempt.rejected(
                f"Failed to fetch website: {response.status_code} {response.reason_phrase}"
            )
        return FetchAttempt.ok(response.text)


def extract_page(html: str, max_length: int) -> Tuple[str, List[str]]:
    """
    Convert HTML to readable text and collect absolute http(s) links.

    Returns:
        (content, links) with links de-duplicated in document order
    """
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(STRIPPED_TAGS):
        tag.decompose()

    links = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.startswith(("http://", "https://")) and href not in seen:
            seen.add(href)
            links.append(href)

    root = soup.body or soup
    lines = []
    for line in root.get_text("\n").splitlines():
        line = re.sub(r"\s+", " ", line).strip()
        if line:
            lines.append(line)
    content = "\n".join(lines)

    if len(content) > max_length:
        content = content[:max_length] + "... [truncated]"

    return content, links


class ContentScraper:
    """
    Bulk crawler with bounded concurrency.

    Args:
        strategies: Ordered fetch strategies (default: direct, then ScrapingBee)
        concurrency: Default permit count for bulk_crawl
        client: Optional shared httpx.AsyncClient
    """

    # Max content length per page (chars)
    MAX_CONTENT_LENGTH = 50000

    # User agent for direct requests
    USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

    def __init__(
        self,
        strategies: Optional[List[FetchStrategy]] = None,
        concurrency: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None
    ):
        settings = get_settings()
        self.strategies = strategies or [DirectFetchStrategy(), ScrapingBeeFetchStrategy()]
        self.concurrency = concurrency or settings.crawl_concurrency
        self.timeout = timeout or settings.fetch_timeout
        self.session = client

    async def _get_session(self) -> httpx.AsyncClient:
        """Get or create HTTP session"""
        if self.session is None or self.session.is_closed:
            self.session = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers={"User-Agent": self.USER_AGENT}
            )
        return self.session

    async def crawl_url(self, url: str) -> CrawlOutcome:
        """Fetch one URL through the strategy chain"""
        client = await self._get_session()
        last_error = "Unknown error"

        for strategy in self.strategies:
            attempt = await strategy.attempt(client, url)

            if attempt.status == FetchStatus.OK:
                content, links = extract_page(attempt.html, self.MAX_CONTENT_LENGTH)
                logger.debug(f"[CRAWL] {strategy.name} fetched {url} ({len(content)} chars, {len(links)} links)")
                return CrawlOutcome(url=url, success=True, content=content, links=links)

            if attempt.status == FetchStatus.REJECTED:
                logger.info(f"[CRAWL] {url}: {attempt.error}")
                return CrawlOutcome(url=url, success=False, error=attempt.error)

            logger.info(f"[CRAWL] {strategy.name} failed for {url}, trying next strategy: {attempt.error}")
            last_error = attempt.error

        return CrawlOutcome(url=url, success=False, error=f"Network error: {last_error}")

    async def bulk_crawl(self, urls: List[str], concurrency: Optional[int] = None) -> BulkCrawlResult:
        """
        Crawl URLs with at most `concurrency` fetches in flight.

        Returns:
            BulkCrawlSuccess when nothing failed, BulkCrawlFailure when nothing
            succeeded, BulkCrawlPartial otherwise. Success and partial results
            keep the input order and length.
        """
        if not urls:
            return BulkCrawlSuccess(results=[])

        semaphore = asyncio.Semaphore(concurrency or self.concurrency)

        async def crawl_with_limit(url: str) -> CrawlOutcome:
            async with semaphore:
                return await self.crawl_url(url)

        logger.info(f"[CRAWL] Crawling {len(urls)} URLs (concurrency={concurrency or self.concurrency})")
        gathered = await asyncio.gather(*(crawl_with_limit(url) for url in urls), return_exceptions=True)

        outcomes = []
        for url, result in zip(urls, gathered):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                outcomes.append(CrawlOutcome(url=url, success=False, error=f"Network error: {result}"))
            else:
                outcomes.append(result)

        return self.classify(outcomes)

    @staticmethod
    def classify(outcomes: List[CrawlOutcome]) -> BulkCrawlResult:
        """Build the three-way envelope from per-URL outcomes"""
        success_count = sum(1 for o in outcomes if o.success)
        failure_count = len(outcomes) - success_count

        if failure_count == 0:
            logger.info(f"[CRAWL] All {success_count} URLs crawled")
            return BulkCrawlSuccess(results=[
                CrawlPageResult(success=True, url=o.url, result=o.content, links=o.links)
                for o in outcomes
            ])

        if success_count == 0:
            errors = "\n".join(f"{o.url}: {o.error or 'Unknown error'}" for o in outcomes)
            logger.warning(f"[CRAWL] All {failure_count} URLs failed")
            return BulkCrawlFailure(error=f"All websites failed to crawl:\n{errors}")

        logger.info(f"[CRAWL] Partial crawl: {success_count} succeeded, {failure_count} failed")
        return BulkCrawlPartial(
            results=[
                CrawlPageResult(
                    success=o.success,
                    url=o.url,
                    result=o.content if o.success else (o.error or ""),
                    links=o.links if o.success else []
                )
                for o in outcomes
            ],
            success_count=success_count,
            failure_count=failure_count
        )

    async def close(self):
        """Close HTTP session"""
        if self.session and not self.session.is_closed:
            await self.session.aclose()
        self.session = None
