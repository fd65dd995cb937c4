"""Utility functions for formatting responses and ledger summaries."""

from docsearch_mcp.utils.constants import REQUEST_SUMMARY_CHARS, RESULT_SUMMARY_CHARS


def summarize_request(query: str) -> str:
    """Bounded request summary stored on ledger entries."""
    return query[:REQUEST_SUMMARY_CHARS]


def summarize_result(text: str) -> str:
    """Bounded result summary stored on ledger entries."""
    return text[:RESULT_SUMMARY_CHARS] + "..."


def format_insufficient_credits_error(tool_name: str, current_balance: int, required: int) -> str:
    """Human-readable insufficient-balance message."""
    shortfall = required - current_balance
    return (
        f"Insufficient credits for {tool_name}. "
        f"Current balance: {current_balance} credits. "
        f"Required: {required} credits (short by {shortfall}). "
        f"Top up your account, then call {tool_name} again."
    )


def format_credits(amount: int) -> str:
    """Format a credit amount with thousands separators."""
    unit = "credit" if amount == 1 else "credits"
    return f"{amount:,} {unit}"
