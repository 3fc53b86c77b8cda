"""
Query Planner - Search Strategy for Missing Cells

Looks at a partially filled row and the queries already tried for it, and
produces a short strategy plus a handful of web search queries. Avoiding
repeated queries is left to the prompt; nothing here filters them.
"""

import json
import logging
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from config.settings import get_settings
from core.exceptions import ExtractionError

from .llm_client import OllamaStructuredClient
from .models import SearchQueryPlan, TokenUsage

logger = logging.getLogger("enrichment.planner")

PLANNER_DESCRIPTOR = "query-writer"


class QueryPlanner:
    """
    Turns row gaps and failed-query history into a SearchQueryPlan.

    Strategies:
    - Uses filled cells as search context for the empty ones
    - Steers away from previously attempted queries
    - Targets preferred websites with the site: operator when given
    """

    def __init__(self, llm: Optional[OllamaStructuredClient] = None, temperature: Optional[float] = None):
        settings = get_settings()
        self.llm = llm or OllamaStructuredClient()
        self.temperature = settings.planner_temperature if temperature is None else temperature

    async def close(self):
        await self.llm.close()

    async def plan(
        self,
        row: Dict[str, str],
        previous_queries: Optional[List[str]] = None,
        prompt: Optional[str] = None,
        websites: Optional[List[str]] = None
    ) -> Tuple[SearchQueryPlan, TokenUsage]:
        """
        Generate search queries for the missing cells of a row.

        Args:
            row: Current column -> value map
            previous_queries: Queries already executed for this row
            prompt: Optional enrichment goal from table/column hints
            websites: Optional preferred sites

        Returns:
            (SearchQueryPlan, TokenUsage)
        """
        if prompt:
            logger.info(f"[QUERY GENERATION] Using enrichment prompt: {prompt[:100]}{'...' if len(prompt) > 100 else ''}")
        if websites:
            logger.info(f"[QUERY GENERATION] Targeting websites: {', '.join(websites)}")

        data, usage = await self.llm.generate_structured(
            system=self._build_system_prompt(prompt, websites),
            prompt=self._build_user_prompt(row, previous_queries or []),
            schema=SearchQueryPlan.model_json_schema(),
            descriptor=PLANNER_DESCRIPTOR,
            temperature=self.temperature
        )

        try:
            plan = SearchQueryPlan.model_validate(data)
        except PydanticValidationError as e:
            raise ExtractionError("Query planner returned an invalid plan", errors=e.error_count()) from e

        plan.queries = [q.strip() for q in plan.queries if q and q.strip()]
        logger.info(f"[QUERY GENERATION] Generated {len(plan.queries)} queries: {plan.queries}")
        return plan, usage

    def _build_system_prompt(self, prompt: Optional[str], websites: Optional[List[str]]) -> str:
        goal = f"ENRICHMENT GOAL:\n{prompt}\n\n" if prompt else ""
        sites = ""
        site_rule = ""
        if websites:
            sites = (
                "PREFERRED WEBSITES:\n"
                f"When possible, target these specific websites in your search queries: {', '.join(websites)}\n"
                'You can use the site: operator (e.g., "query site:example.com") to focus searches on these domains.\n\n'
            )
            site_rule = "\n   - When appropriate, use the site: operator to target preferred websites"

        return f"""You are a CSV data enrichment specialist. Your job is to analyze incomplete CSV row data and devise search queries to fill in missing cells.

{goal}{sites}Your approach should be:
1. ANALYZE THE ROW DATA:
   - Identify which cells are empty or contain placeholder values ("-")
   - Use filled cells as context clues for missing information
   - Consider what type of data each column likely contains

2. AVOID FAILED STRATEGIES:
   - Review previously attempted queries that didn't yield results
   - Don't repeat them; try different angles, synonyms, or more specific/general terms

3. GENERATE TARGETED SEARCH QUERIES:
   - Create 3-5 specific search queries optimized for data discovery
   - Each query should target a different aspect or source for the missing data
   - Focus on queries likely to return structured, factual information{site_rule}

Return a JSON object with "plan" (your strategy) and "queries" (list of search strings)."""

    def _build_user_prompt(self, row: Dict[str, str], previous_queries: List[str]) -> str:
        if previous_queries:
            history = "Previously Attempted Queries (that didn't yield results):\n"
            history += "\n".join(f"- {q}" for q in previous_queries)
            history += "\n\nIMPORTANT: Avoid repeating these failed query approaches. Try different strategies."
        else:
            history = "No previous queries attempted yet."

        return f"""CSV Row Data to Enrich:
{json.dumps(row, indent=2)}

{history}

Analyze the row data above, write a plan for filling the missing cells, then generate the search queries."""
