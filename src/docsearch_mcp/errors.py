"""Exception hierarchy for the metered search pipeline.

Insufficient balance has no exception: it travels as a structured result.
"""

from __future__ import annotations


class DocSearchError(Exception):
    """Base exception for docsearch-mcp."""


class MissingIdentity(DocSearchError):
    """Raised when a priced tool is called without an authenticated user."""


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class LedgerError(DocSearchError):
    """Base exception for ledger store operations."""


class LedgerUnavailable(LedgerError):
    """Transient store failure (timeout, lock contention, connection loss).

    Safe to retry with the same action_id.
    """


class DebitFailed(LedgerError):
    """Raised when a debit could not be confirmed after bounded retries."""

    def __init__(self, message: str, action_id: str) -> None:
        super().__init__(message)
        self.action_id = action_id


# ---------------------------------------------------------------------------
# Output security
# ---------------------------------------------------------------------------


class OutputValidationFailed(DocSearchError):
    """Sanitized output failed the final length/type/emptiness check."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(f"Output validation failed: {', '.join(errors)}")
        self.errors = errors


# ---------------------------------------------------------------------------
# Search backend
# ---------------------------------------------------------------------------


class SearchBackendError(DocSearchError):
    """Generic search backend failure."""


class SearchNotProvisionedError(SearchBackendError):
    """The AI Search instance does not exist or is not reachable."""


class SearchIndexingError(SearchBackendError):
    """The AI Search instance exists but is still indexing its sources."""
