"""Priced documentation search tools."""

from typing import Any

from docsearch_mcp.api.models import SearchOptions
from docsearch_mcp.pipeline import PricedOperation, PricedOperationPipeline
from docsearch_mcp.utils.constants import TOOL_COSTS

# Broad recall for general documentation questions
SEARCH_DOCS = PricedOperation(
    tool_name="search_fastapi_docs",
    cost=TOOL_COSTS["search_fastapi_docs"],
    options=SearchOptions(result_limit=10, relevance_threshold=0.3, rewrite=True),
    subject="FastAPI framework documentation",
)

# Fewer, higher-relevance results for code examples
SEARCH_EXAMPLES = PricedOperation(
    tool_name="search_fastapi_examples",
    cost=TOOL_COSTS["search_fastapi_examples"],
    options=SearchOptions(result_limit=5, relevance_threshold=0.5, rewrite=True),
    subject="FastAPI framework documentation",
    query_prefix="code example: ",
)


async def search_docs_tool(
    pipeline: PricedOperationPipeline, user_id: str | None, query: str
) -> dict[str, Any]:
    """Search the FastAPI documentation."""
    return await pipeline.run(SEARCH_DOCS, user_id, query)


async def search_examples_tool(
    pipeline: PricedOperationPipeline, user_id: str | None, query: str
) -> dict[str, Any]:
    """Search for FastAPI code examples."""
    return await pipeline.run(SEARCH_EXAMPLES, user_id, query)
