"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock

import pytest

from docsearch_mcp.api.models import SearchAnswer
from docsearch_mcp.ledger_store import MemoryLedgerStore
from docsearch_mcp.pipeline import PricedOperationPipeline


@pytest.fixture
def store() -> MemoryLedgerStore:
    """Provide an empty in-memory ledger store."""
    return MemoryLedgerStore()


@pytest.fixture
def backend() -> AsyncMock:
    """Provide a search backend that answers with plain documentation text."""
    mock = AsyncMock()
    mock.query = AsyncMock(
        return_value=SearchAnswer(response="Use <b>UploadFile</b> to receive file uploads.")
    )
    return mock


@pytest.fixture
def pipeline(store: MemoryLedgerStore, backend: AsyncMock) -> PricedOperationPipeline:
    """Provide a pipeline with zero retry backoff."""
    return PricedOperationPipeline(
        store,
        backend,
        rag_instance="ai-search-test",
        server_name="test-server",
        debit_backoff_base_secs=0.0,
    )
