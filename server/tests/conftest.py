"""
Shared pytest fixtures for Tablefill server tests.

This module provides common fixtures used across the unit tests.
"""

import sys
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

# Add server directory to path
SERVER_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(SERVER_DIR))

from enrichment.events import InMemoryEventPublisher  # noqa: E402
from enrichment.models import (  # noqa: E402
    Cell,
    Column,
    ColumnType,
    Hint,
    Run,
    RowEnrichmentResult,
    SearchQueryPlan,
    Table,
    TableRow,
    TokenUsage,
)
from enrichment.stores import (  # noqa: E402
    InMemoryCancellationChecker,
    InMemoryCreditLedger,
    InMemoryTableStore,
)


# ============================================
# Configuration Fixtures
# ============================================

@pytest.fixture
def settings():
    """Get application settings."""
    from config.settings import get_settings
    return get_settings()


# ============================================
# Table Builders
# ============================================

def build_table(
    companies: List[str],
    table_id: str = "tbl_1",
    organization_id: str = "org_1",
    enrichment_names: Optional[List[str]] = None,
    hint: Optional[Hint] = None,
    column_hints: Optional[Dict[str, Hint]] = None
) -> Table:
    """A table with one SOURCE column (Company) and empty ENRICHMENT columns"""
    enrichment_names = enrichment_names or ["Email", "Website"]
    column_hints = column_hints or {}

    columns = [Column(id="col_company", name="Company", type=ColumnType.SOURCE, position=0)]
    for index, name in enumerate(enrichment_names, 1):
        columns.append(Column(
            id=f"col_{name.lower()}",
            name=name,
            type=ColumnType.ENRICHMENT,
            position=index,
            hint=column_hints.get(name)
        ))

    rows = []
    for position, company in enumerate(companies, 1):
        cells = [
            Cell(id=f"cell_{position}_{column.id}", column_id=column.id,
                 value=company if column.type == ColumnType.SOURCE else None)
            for column in columns
        ]
        rows.append(TableRow(id=f"row_{position}", position=position, cells=cells))

    return Table(
        id=table_id,
        organization_id=organization_id,
        columns=columns,
        rows=rows,
        hint=hint or Hint(prompt="Find company contact details", websites=["example.com"])
    )


@pytest.fixture
def table_factory():
    return build_table


@pytest.fixture
def store():
    return InMemoryTableStore()


@pytest.fixture
def credits():
    return InMemoryCreditLedger({"org_1": 100})


@pytest.fixture
def cancellation():
    return InMemoryCancellationChecker(ttl_seconds=3600)


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def seeded_store(store):
    """Store holding a three-row table and a PENDING run for it"""
    store.add_table(build_table(["Acme", "Globex", "Initech"]))
    store.add_run(Run(id="run_1", table_id="tbl_1"))
    return store


# ============================================
# Mock Service Fixtures
# ============================================

def filled_result(request, values: Dict[str, str], source: str = "https://example.com/about") -> RowEnrichmentResult:
    """RowEnrichmentResult that fills `values` into the request row"""
    row = dict(request.row)
    row.update(values)
    return RowEnrichmentResult(
        enriched_row=row,
        sources={column: source for column in values},
        cycles=1,
        filled_count=len(values),
        success=bool(values)
    )


@pytest.fixture
def filling_agent():
    """Agent mock that fills every target header of every row"""
    agent = AsyncMock()

    async def run(request, emit=None):
        return filled_result(request, {h: f"{h.lower()}-{request.row_position}" for h in request.headers})

    agent.run.side_effect = run
    return agent


@pytest.fixture
def mock_llm():
    """Structured LLM client mock returning an empty object"""
    llm = AsyncMock()
    llm.generate_structured.return_value = ({}, TokenUsage(descriptor="test", input_tokens=1, output_tokens=1, total_tokens=2))
    return llm


@pytest.fixture
def mock_planner():
    planner = AsyncMock()
    planner.plan.return_value = (
        SearchQueryPlan(plan="search the company site", queries=["acme email", "acme website"]),
        TokenUsage(descriptor="query-writer", input_tokens=10, output_tokens=5, total_tokens=15)
    )
    return planner
