"""Basic usage example for the FastAPI documentation search client."""

import asyncio
import os

from docsearch_mcp.api.client import AISearchClient
from docsearch_mcp.api.models import SearchOptions
from docsearch_mcp.errors import SearchBackendError


async def main() -> None:
    """Run one documentation query and one code-example query."""
    account_id = os.getenv("CLOUDFLARE_ACCOUNT_ID")
    api_token = os.getenv("CLOUDFLARE_API_TOKEN")
    if not account_id or not api_token:
        print("Error: CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN must be set")
        return

    instance = os.getenv("AI_SEARCH_INSTANCE", "ai-search-fast_api_search")

    async with AISearchClient(account_id, api_token, instance) as client:
        print("\n=== Documentation ===")
        try:
            answer = await client.query(
                "How do I handle file uploads?",
                SearchOptions(result_limit=10, relevance_threshold=0.3),
            )
            print(answer.answer_text)
        except SearchBackendError as e:
            print(f"Search failed: {e}")
            return

        print("\n=== Code example ===")
        answer = await client.query(
            "code example: OAuth2 password flow",
            SearchOptions(result_limit=5, relevance_threshold=0.5),
        )
        print(answer.answer_text)


if __name__ == "__main__":
    asyncio.run(main())
