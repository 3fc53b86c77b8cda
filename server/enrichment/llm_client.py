"""
Structured-output LLM client.

Wraps Ollama's /api/chat endpoint with a JSON schema passed as ``format`` so
the model answers with a single JSON object. Both the query planner and the
extractor go through here; each call reports its token usage.
"""

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

import httpx

from config.settings import get_settings
from core.exceptions import ExternalServiceError, ExtractionError

from .models import TokenUsage

logger = logging.getLogger("enrichment.llm_client")


class OllamaStructuredClient:
    """
    Async client for schema-constrained chat completions.

    Args:
        base_url: Ollama base URL (defaults to settings)
        model: Model name (defaults to settings)
        timeout: Request timeout in seconds
        client: Optional pre-built httpx.AsyncClient (tests pass a MockTransport client)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.model = model or settings.ollama_model
        self.timeout = timeout or settings.llm_timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def generate_structured(
        self,
        system: str,
        prompt: str,
        schema: Dict[str, Any],
        descriptor: str,
        temperature: float = 0.0
    ) -> Tuple[Dict[str, Any], TokenUsage]:
        """
        Run one chat completion constrained to `schema`.

        Returns:
            The decoded JSON object and the TokenUsage for this call.

        Raises:
            ExternalServiceError: transport failure or non-2xx from Ollama
            ExtractionError: the model answered with something that is not a JSON object
        """
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "format": schema,
            "stream": False,
            "options": {"temperature": temperature},
        }

        start_time = time.time()
        try:
            response = await client.post(f"{self.base_url}/api/chat", json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "ollama", f"HTTP {e.response.status_code}", descriptor=descriptor
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("ollama", str(e) or type(e).__name__, descriptor=descriptor) from e

        content = data.get("message", {}).get("content", "")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            raise ExtractionError(f"{descriptor} returned invalid JSON", descriptor=descriptor) from e
        if not isinstance(parsed, dict):
            raise ExtractionError(f"{descriptor} returned a non-object", descriptor=descriptor)

        input_tokens = data.get("prompt_eval_count", 0) or 0
        output_tokens = data.get("eval_count", 0) or 0
        usage = TokenUsage(
            descriptor=descriptor,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens
        )

        latency_ms = (time.time() - start_time) * 1000
        logger.debug(
            f"{descriptor}: {input_tokens} in / {output_tokens} out tokens in {latency_ms:.0f}ms"
        )
        return parsed, usage
