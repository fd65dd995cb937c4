"""Constants and enums for the docsearch MCP server."""

from enum import Enum, IntEnum


class ToolTier(IntEnum):
    """Credit cost per tool call."""

    FREE = 0
    DOCS = 3
    EXAMPLES = 4


class PipelineStage(str, Enum):
    """Stages of a priced tool invocation."""

    START = "start"
    BALANCE_CHECKED = "balance_checked"
    BACKEND_QUERIED = "backend_queried"
    SANITIZED = "sanitized"
    DEBITED = "debited"
    DONE = "done"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Tool-level error categories returned to MCP clients."""

    MISSING_IDENTITY = "missing_identity"
    INVALID_QUERY = "invalid_query"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    BACKEND_NOT_CONFIGURED = "backend_not_configured"
    BACKEND_NOT_PROVISIONED = "backend_not_provisioned"
    BACKEND_INDEXING = "backend_indexing"
    BACKEND_FAILURE = "backend_failure"
    VALIDATION_FAILED = "validation_failed"
    BILLING_FAILED = "billing_failed"


TOOL_COSTS: dict[str, int] = {
    # Free, never gated
    "whoami": ToolTier.FREE,
    "check_balance": ToolTier.FREE,
    # Priced
    "search_fastapi_docs": ToolTier.DOCS,
    "search_fastapi_examples": ToolTier.EXAMPLES,
}


# Output limits
MAX_OUTPUT_CHARS = 10_000
REQUEST_SUMMARY_CHARS = 100
RESULT_SUMMARY_CHARS = 200

REDACTION_PLACEHOLDER = "[REDACTED]"

# Debit retry policy
DEBIT_MAX_ATTEMPTS = 3
DEBIT_BACKOFF_BASE_SECS = 0.1
