"""
Extraction Engine

Pulls sourced values for the still-missing columns out of crawled pages.
Pages are split into small batches that are sent to the model
concurrently; each call gets a schema generated from the live missing
column list. The first batch (in batch order) that yields a valid value for
a column wins; later values are dropped.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, create_model
from pydantic import ValidationError as PydanticValidationError

from config.settings import get_settings

from .llm_client import OllamaStructuredClient
from .models import CrawlPageResult, ExtractedValue, ExtractionOutput, TokenUsage, is_missing_value

logger = logging.getLogger("enrichment.extractor")

EXTRACTOR_DESCRIPTOR = "result-extractor"

SYSTEM_PROMPT = """You are a CSV data extraction specialist. Your job is to analyze crawled webpage content and extract specific data to fill missing CSV cells.

Your approach should be:
1. ANALYZE THE MISSING COLUMNS:
   - Focus only on the columns listed as missing
   - Understand what type of data each column should contain based on its header name
   - Use existing filled columns as context clues for what to look for

2. EXTRACT DATA FROM CRAWLED CONTENT:
   - Look for specific factual information that matches each missing column
   - Be precise and extract only relevant, factual data

3. MATCH COLUMN HEADERS EXACTLY:
   - Use the exact column header names as keys
   - Do not create new column names or modify existing ones

4. PROVIDE SOURCE ATTRIBUTION:
   - Always give the exact URL where you found the information
   - Only use URLs from the crawled pages provided

5. QUALITY STANDARDS:
   - Prefer structured data (dates, numbers, names, emails) over prose
   - If you cannot find a value for a column, omit it from the response

For each column you fill, return an object {"result": <value>, "source": <url>}."""


def build_extraction_model(columns: List[str]) -> Type[BaseModel]:
    """
    Build the extraction schema for this call.

    Every column becomes an optional {result, source} object keyed by the
    exact column header. Headers are user text, so they are only ever used
    as aliases; field names are positional and cannot clash with BaseModel
    attributes.
    """
    fields: Dict[str, Any] = {}
    for index, column in enumerate(columns):
        fields[f"column_{index}"] = (
            Optional[ExtractedValue],
            Field(default=None, alias=column, description=f"Value for the '{column}' column")
        )
    return create_model(
        "ExtractionResult",
        __config__=ConfigDict(extra="ignore"),
        **fields
    )


def validate_extraction(model: Type[BaseModel], data: Dict[str, Any]) -> Dict[str, ExtractedValue]:
    """
    Validate a model answer against the per-call schema.

    Columns whose entries fail validation are dropped individually rather
    than failing the whole batch. Entries with a blank result are dropped too.
    """
    data = dict(data)
    while True:
        try:
            parsed = model.model_validate(data)
            break
        except PydanticValidationError as e:
            bad_keys = {err["loc"][0] for err in e.errors() if err.get("loc")}
            bad_keys &= set(data)
            if not bad_keys:
                raise
            for key in bad_keys:
                logger.debug(f"Dropping invalid extraction entry for '{key}'")
                data.pop(key)

    values = {}
    for name, field_info in model.model_fields.items():
        entry = getattr(parsed, name)
        if entry is None or is_missing_value(entry.result):
            continue
        values[field_info.alias] = entry
    return values


class ResultExtractor:
    """
    Batches crawled pages and extracts column values from them.

    Args:
        llm: Structured-output client
        batch_size: Pages per model call (default from settings, 4)
    """

    def __init__(
        self,
        llm: Optional[OllamaStructuredClient] = None,
        batch_size: Optional[int] = None,
        temperature: Optional[float] = None
    ):
        settings = get_settings()
        self.llm = llm or OllamaStructuredClient()
        self.batch_size = batch_size or settings.extraction_batch_size
        self.temperature = settings.extractor_temperature if temperature is None else temperature

    async def close(self):
        await self.llm.close()

    def make_batches(self, pages: List[CrawlPageResult]) -> List[List[CrawlPageResult]]:
        return [pages[i:i + self.batch_size] for i in range(0, len(pages), self.batch_size)]

    async def extract(
        self,
        pages: List[CrawlPageResult],
        row: Dict[str, str],
        headers: List[str],
        missing_columns: List[str]
    ) -> ExtractionOutput:
        """
        Extract values for `missing_columns` from successfully crawled pages.

        Returns:
            ExtractionOutput whose `values` only contains columns that were
            found; an absent key means "not found this pass".
        """
        pages = [page for page in pages if page.success]
        if not pages or not missing_columns:
            return ExtractionOutput()

        batches = self.make_batches(pages)
        logger.info(
            f"[EXTRACTION] {len(pages)} pages in {len(batches)} batches for "
            f"{len(missing_columns)} missing columns: {', '.join(missing_columns)}"
        )

        results = await asyncio.gather(
            *(self._extract_batch(batch, row, headers, missing_columns) for batch in batches),
            return_exceptions=True
        )

        output = ExtractionOutput()
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning(f"[EXTRACTION] Batch {index + 1}/{len(batches)} failed: {result}")
                continue

            values, usage = result
            output.usages.append(usage)
            for column, value in values.items():
                if column not in output.values:
                    output.values[column] = value

        logger.info(f"[EXTRACTION] Extracted {len(output.values)} column values: {', '.join(output.values)}")
        return output

    async def _extract_batch(
        self,
        batch: List[CrawlPageResult],
        row: Dict[str, str],
        headers: List[str],
        missing_columns: List[str]
    ) -> Tuple[Dict[str, ExtractedValue], TokenUsage]:
        model = build_extraction_model(missing_columns)
        data, usage = await self.llm.generate_structured(
            system=SYSTEM_PROMPT,
            prompt=self._build_prompt(batch, row, headers, missing_columns),
            schema=model.model_json_schema(by_alias=True),
            descriptor=EXTRACTOR_DESCRIPTOR,
            temperature=self.temperature
        )
        values = validate_extraction(model, data)
        return {column: value for column, value in values.items() if column in missing_columns}, usage

    def _build_prompt(
        self,
        batch: List[CrawlPageResult],
        row: Dict[str, str],
        headers: List[str],
        missing_columns: List[str]
    ) -> str:
        page_blocks = []
        for index, page in enumerate(batch, 1):
            block = f"--- Page {index} ---\nURL: {page.url}\nContent:\n{page.result}"
            if page.links:
                more = "..." if len(page.links) > 5 else ""
                block += f"\nAdditional Links Found: {', '.join(page.links[:5])}{more}"
            page_blocks.append(block)

        return f"""CSV Row Data:
{json.dumps(row, indent=2)}

CSV Headers:
{json.dumps(headers)}

Missing/Empty Columns to Fill:
{', '.join(missing_columns)}

Crawled Webpage Content:
{chr(10).join(page_blocks)}

Extract specific, factual values for the missing columns from the pages above, each with the URL it came from."""
