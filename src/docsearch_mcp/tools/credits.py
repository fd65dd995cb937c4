"""Credit tools: read-only balance and recent ledger activity."""

from __future__ import annotations

import logging
from typing import Any

from docsearch_mcp.errors import LedgerUnavailable
from docsearch_mcp.ledger_store import LedgerStore
from docsearch_mcp.utils.constants import TOOL_COSTS, ErrorKind
from docsearch_mcp.utils.formatters import format_credits

logger = logging.getLogger(__name__)

_MAX_ENTRIES = 50


async def check_balance_tool(
    store: LedgerStore,
    user_id: str,
    limit: int = 10,
) -> dict[str, Any]:
    """Return the user's balance, tool prices, and most recent ledger entries."""
    limit = max(0, min(limit, _MAX_ENTRIES))
    try:
        balance = await store.read_balance(user_id)
        entries = await store.list_entries(user_id, limit) if limit else []
    except LedgerUnavailable as e:
        logger.warning("Balance lookup failed for %s: %s", user_id, e)
        return {
            "success": False,
            "is_error": True,
            "error_kind": ErrorKind.LEDGER_UNAVAILABLE.value,
            "error": "Credit ledger is temporarily unavailable. Please try again shortly.",
            "retryable": True,
        }

    prices = {name: int(cost) for name, cost in TOOL_COSTS.items() if cost > 0}
    affordable = {name: balance // cost for name, cost in prices.items()}
    return {
        "success": True,
        "balance": balance,
        "tool_costs": prices,
        "calls_remaining": affordable,
        "recent_entries": [
            {
                "action_id": e.action_id,
                "tool_name": e.tool_name,
                "amount": e.amount,
                "success": e.success,
                "timestamp": e.timestamp,
                "request_summary": e.request_summary,
            }
            for e in entries
        ],
        "message": f"Balance: {format_credits(balance)}.",
    }
