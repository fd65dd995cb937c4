"""FastAPI documentation search MCP server using FastMCP."""

import asyncio
import logging
import sys
from typing import Annotated, Any, Awaitable, Callable

from fastmcp import FastMCP
from fastmcp.server.dependencies import get_http_headers
from pydantic import Field

from docsearch_mcp.api.client import AISearchClient
from docsearch_mcp.config import Settings, get_settings
from docsearch_mcp.errors import LedgerError, MissingIdentity
from docsearch_mcp.ledger import parse_seed_balances
from docsearch_mcp.ledger_store import LedgerStore, MemoryLedgerStore, SQLiteLedgerStore, seed_store
from docsearch_mcp.pipeline import PricedOperationPipeline
from docsearch_mcp.tools import credits, search
from docsearch_mcp.utils.constants import ErrorKind

logger = logging.getLogger(__name__)


mcp = FastMCP(
    "docsearch-mcp",
    instructions=(
        "FastAPI - Semantic search for FastAPI framework documentation\n\n"
        "## Key Capabilities\n"
        "- Endpoint routing and path operations\n"
        "- Dependency injection with Depends\n"
        "- OAuth2 and JWT authentication\n"
        "- Pydantic model validation\n\n"
        "## Usage Patterns\n"
        "- Use `search_fastapi_docs` for general documentation questions\n"
        "- Use `search_fastapi_examples` for code examples and implementation patterns\n"
        "- Include specific context in queries for more accurate results\n"
        "- For building production APIs: mention sync vs async preference\n\n"
        "## Credits\n"
        "Each search costs prepaid credits: 3 for search_fastapi_docs, 4 for "
        "search_fastapi_examples. You are only charged when an answer is "
        "delivered. Call `check_balance` (free) to see your balance and recent "
        "charges.\n\n"
        "## Important Notes\n"
        "- Indexed content: official FastAPI docs\n"
        "- Does not include: third-party integrations, blog posts\n"
        "- Answers are sanitized and personal data is redacted before delivery"
    ),
)

# Runtime singletons (built lazily, never at import time)
_settings: Settings | None = None
_store: LedgerStore | None = None
_backend: AISearchClient | None = None
_pipeline: PricedOperationPipeline | None = None
_seeded = False
_seed_lock: asyncio.Lock | None = None


def _get_settings() -> Settings:
    """Load settings once (called at runtime, not import time)."""
    global _settings
    if _settings is None:
        _settings = get_settings()
    return _settings


def _get_current_user_id() -> str | None:
    """Extract the authenticated user ID from request headers.

    In STDIO mode (no HTTP request) falls back to the operator's
    ``dev_user_id`` setting. Returns None when no identity is available.
    """
    settings = _get_settings()
    try:
        headers = get_http_headers(include_all=True)
    except Exception:
        headers = {}
    if headers:
        return headers.get(settings.identity_header.lower()) or None
    return settings.dev_user_id or None


def _require_user_id() -> str:
    """Get the current user ID, raising MissingIdentity if not available."""
    user_id = _get_current_user_id()
    if not user_id:
        raise MissingIdentity(
            "Cannot identify user. This tool requires an authenticated session."
        )
    return user_id


def _get_store() -> LedgerStore:
    """Singleton ledger store: SQLite when a path is configured, else memory."""
    global _store
    if _store is None:
        settings = _get_settings()
        if settings.ledger_database_path:
            _store = SQLiteLedgerStore(settings.ledger_database_path)
            logger.info("SQLite ledger at %s.", settings.ledger_database_path)
        else:
            _store = MemoryLedgerStore()
            logger.info("In-memory ledger (balances are lost on restart).")
    return _store


def _get_backend() -> AISearchClient:
    """Singleton AI Search client.

    Raises ValueError if the backend is not configured.
    """
    global _backend
    if _backend is None:
        settings = _get_settings()
        if not settings.cloudflare_account_id or not settings.cloudflare_api_token:
            raise ValueError(
                "AI Search not configured. Operator must set "
                "CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN."
            )
        _backend = AISearchClient(
            settings.cloudflare_account_id,
            settings.cloudflare_api_token,
            settings.ai_search_instance,
            base_url=settings.ai_search_base_url,
            timeout=settings.ai_search_timeout_secs,
        )
    return _backend


async def _ensure_seeded(store: LedgerStore) -> None:
    """Open seed accounts once per process.

    Concurrent first calls wait for the same seeding pass. A LedgerError
    propagates and leaves seeding pending, so the next call tries again.
    """
    global _seeded, _seed_lock
    if _seeded:
        return
    if _seed_lock is None:
        _seed_lock = asyncio.Lock()
    async with _seed_lock:
        if _seeded:
            return
        seeds = parse_seed_balances(_get_settings().seed_balances)
        if seeds:
            created = await seed_store(store, seeds)
            logger.info("Seed accounts: %d of %d created.", created, len(seeds))
        _seeded = True


def _tool_error(kind: ErrorKind, message: str, *, retryable: bool = False) -> dict[str, Any]:
    """Error dict for failures raised outside the pipeline."""
    return {
        "success": False,
        "is_error": True,
        "error_kind": kind.value,
        "error": message,
        "retryable": retryable,
    }


def _ledger_unavailable(e: LedgerError) -> dict[str, Any]:
    logger.error("Ledger unavailable while preparing tool call: %s", e)
    return _tool_error(
        ErrorKind.LEDGER_UNAVAILABLE,
        "Credit ledger is temporarily unavailable. Please try again shortly.",
        retryable=True,
    )


async def _get_pipeline() -> PricedOperationPipeline:
    """Singleton pipeline wired from settings."""
    global _pipeline
    if _pipeline is None:
        settings = _get_settings()
        store = _get_store()
        await _ensure_seeded(store)
        _pipeline = PricedOperationPipeline(
            store,
            _get_backend(),
            rag_instance=settings.ai_search_instance,
            server_name=settings.server_name,
            max_output_chars=settings.max_output_chars,
            redact_emails=settings.redact_emails,
            debit_max_attempts=settings.debit_max_attempts,
            debit_backoff_base_secs=settings.debit_backoff_base_secs,
        )
    return _pipeline


async def _run_search(
    tool: Callable[[PricedOperationPipeline, str | None, str], Awaitable[dict[str, Any]]],
    query: str,
) -> dict[str, Any]:
    """Resolve identity and pipeline, then run a priced search tool."""
    try:
        pipeline = await _get_pipeline()
    except ValueError as e:
        return _tool_error(ErrorKind.BACKEND_NOT_CONFIGURED, str(e))
    except LedgerError as e:
        return _ledger_unavailable(e)
    return await tool(pipeline, _get_current_user_id(), query)


async def _run_check_balance(limit: int) -> dict[str, Any]:
    """Resolve identity, seed if needed, then report the balance."""
    try:
        user_id = _require_user_id()
    except MissingIdentity as e:
        return _tool_error(ErrorKind.MISSING_IDENTITY, str(e))
    store = _get_store()
    try:
        await _ensure_seeded(store)
    except LedgerError as e:
        return _ledger_unavailable(e)
    return await credits.check_balance_tool(store, user_id, limit)


# Diagnostics


@mcp.tool()
async def whoami() -> dict[str, Any]:
    """Return the authenticated user ID as seen by this server (free)."""
    try:
        headers = get_http_headers(include_all=True)
    except Exception:
        headers = {}
    return {
        "user_id": _get_current_user_id(),
        "transport": "http" if headers else "stdio",
        "fastmcp_headers": {k: v for k, v in headers.items() if k.startswith("fastmcp-")} or None,
    }


# Priced search tools


@mcp.tool()
async def search_fastapi_docs(
    query: Annotated[
        str,
        Field(
            min_length=1,
            description=(
                "Natural language question about FastAPI (e.g., 'How do I handle "
                "file uploads?', 'dependency injection patterns', 'middleware configuration')"
            ),
        ),
    ],
) -> dict[str, Any]:
    """Search FastAPI documentation for endpoints, routes, dependencies, middleware, and general usage.

    Returns relevant documentation passages and implementation guidance. Use
    when you need to understand FastAPI concepts, routing patterns, or
    middleware configuration. Costs 3 credits, charged only on success.
    """
    return await _run_search(search.search_docs_tool, query)


@mcp.tool()
async def search_fastapi_examples(
    query: Annotated[
        str,
        Field(
            min_length=1,
            description=(
                "Natural language question about FastAPI code examples (e.g., 'Show "
                "OAuth2 password flow example', 'WebSocket implementation', 'background tasks')"
            ),
        ),
    ],
) -> dict[str, Any]:
    """Search for FastAPI code examples and implementation patterns.

    Returns working code snippets with explanations. Use when you need
    reference implementations for OAuth2, file uploads, WebSockets, or other
    FastAPI features. Uses a higher relevance threshold than
    search_fastapi_docs. Costs 4 credits, charged only on success.
    """
    return await _run_search(search.search_examples_tool, query)


# Credit Tools


@mcp.tool()
async def check_balance(limit: int = 10) -> dict[str, Any]:
    """Check your credit balance and recent charges (free).

    Args:
        limit: Number of recent ledger entries to include (max 50)
    """
    return await _run_check_balance(limit)


def main() -> None:
    """Main entry point for the server."""
    try:
        settings = _get_settings()
    except Exception as e:
        print(f"Error: Failed to load settings: {e}", file=sys.stderr)
        sys.exit(1)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    mcp.run()


if __name__ == "__main__":
    main()
