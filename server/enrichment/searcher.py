"""
Web Search Client

Query + limit -> ordered organic results. Two providers:
1. Serper (Google results over a JSON API, requires an API key)
2. SearXNG (self-hosted metasearch, no key)

Results are returned in provider order; no re-ranking happens here.
Failures raise ExternalServiceError so the row loop can treat the whole
cycle as having produced nothing.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from config.settings import TablefillSettings, get_settings
from core.exceptions import ConfigurationError, ExternalServiceError

from .models import SearchResultItem

logger = logging.getLogger("enrichment.searcher")


class SearchProvider(ABC):
    """Base class for search providers"""

    name = "search"

    def __init__(self, timeout: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout or get_settings().search_timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=10)
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def search(self, query: str, max_results: int = 10) -> List[SearchResultItem]:
        """Search for the query and return results. Must be implemented by subclasses."""
        pass


class SerperSearchProvider(SearchProvider):
    """
    Serper.dev Google Search API provider.

    POSTs {q, num} with the X-API-KEY header and reads the `organic` list.
    """

    name = "serper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(timeout=timeout, client=client)
        settings = get_settings()
        self.api_key = api_key or settings.serper_api_key
        self.url = url or settings.serper_url

    async def search(self, query: str, max_results: int = 10) -> List[SearchResultItem]:
        if not self.api_key:
            raise ConfigurationError("Serper API key is not configured", setting="serper_api_key")

        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                json={"q": query, "num": max_results}
            )
        except httpx.HTTPError as e:
            raise ExternalServiceError(self.name, str(e) or type(e).__name__, query=query) from e

        if response.status_code != 200:
            raise ExternalServiceError(self.name, f"HTTP {response.status_code}", query=query)

        data = response.json()
        results = []
        for item in data.get("organic", [])[:max_results]:
            link = item.get("link")
            if not link:
                continue
            results.append(SearchResultItem(
                title=item.get("title", ""),
                link=link,
                snippet=item.get("snippet", ""),
                date=item.get("date")
            ))

        logger.info(f"Serper returned {len(results)} results for: {query[:50]}")
        return results


class SearXNGSearchProvider(SearchProvider):
    """
    SearXNG self-hosted metasearch provider.

    Requests JSON pages until `max_results` unique URLs are collected
    (at most 3 pages).
    """

    name = "searxng"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(timeout=timeout, client=client)
        self.base_url = (base_url or get_settings().searxng_url).rstrip("/")

    async def search(self, query: str, max_results: int = 10) -> List[SearchResultItem]:
        client = await self._get_client()
        collected = []
        seen_urls = set()

        pages_needed = min(3, (max_results + 9) // 10)
        for page in range(1, pages_needed + 1):
            try:
                response = await client.get(
                    f"{self.base_url}/search",
                    params={"q": query, "format": "json", "language": "en-US", "pageno": page}
                )
            except httpx.HTTPError as e:
                raise ExternalServiceError(self.name, str(e) or type(e).__name__, query=query) from e

            if response.status_code != 200:
                if page == 1:
                    raise ExternalServiceError(self.name, f"HTTP {response.status_code}", query=query)
                logger.warning(f"SearXNG page {page} failed: {response.status_code}")
                break

            page_results = response.json().get("results", [])
            for item in page_results:
                url = item.get("url", "")
                if url and url not in seen_urls:
                    seen_urls.add(url)
                    collected.append(SearchResultItem(
                        title=item.get("title", ""),
                        link=url,
                        snippet=item.get("content", ""),
                        date=item.get("publishedDate")
                    ))
                    if len(collected) >= max_results:
                        break

            if len(collected) >= max_results or not page_results:
                break

        logger.info(f"SearXNG returned {len(collected)} results for: {query[:50]}")
        return collected


def build_search_provider(settings: Optional[TablefillSettings] = None) -> SearchProvider:
    """Create the provider selected by `search_provider`"""
    settings = settings or get_settings()
    if settings.search_provider == "searxng":
        return SearXNGSearchProvider(base_url=settings.searxng_url, timeout=settings.search_timeout)
    return SerperSearchProvider(
        api_key=settings.serper_api_key,
        url=settings.serper_url,
        timeout=settings.search_timeout
    )
