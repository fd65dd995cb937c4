"""Tests for server wiring: identity resolution, singletons, tool helpers."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

import docsearch_mcp.server as srv
from docsearch_mcp.config import Settings
from docsearch_mcp.errors import LedgerUnavailable, MissingIdentity
from docsearch_mcp.ledger import DebitMetadata
from docsearch_mcp.ledger_store import MemoryLedgerStore, SQLiteLedgerStore
from docsearch_mcp.tools import search


@pytest.fixture(autouse=True)
def _reset_singletons():
    """Each test starts with no cached settings, store, backend or pipeline."""
    def reset() -> None:
        srv._settings = None
        srv._store = None
        srv._backend = None
        srv._pipeline = None
        srv._seeded = False
        srv._seed_lock = None

    reset()
    yield
    reset()


def _use_settings(**overrides) -> Settings:
    settings = Settings(_env_file=None, **overrides)
    srv._settings = settings
    return settings


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class TestIdentity:
    def test_header_identity(self) -> None:
        _use_settings()
        with patch.object(
            srv, "get_http_headers", return_value={"fastmcp-cloud-user": "horizon-1"}
        ):
            assert srv._get_current_user_id() == "horizon-1"

    def test_custom_identity_header(self) -> None:
        _use_settings(identity_header="X-User-Id")
        with patch.object(srv, "get_http_headers", return_value={"x-user-id": "u-9"}):
            assert srv._get_current_user_id() == "u-9"

    def test_http_without_identity_header(self) -> None:
        _use_settings(dev_user_id="local-dev")
        with patch.object(srv, "get_http_headers", return_value={"host": "example"}):
            assert srv._get_current_user_id() is None

    def test_stdio_falls_back_to_dev_user(self) -> None:
        _use_settings(dev_user_id="local-dev")
        with patch.object(srv, "get_http_headers", return_value={}):
            assert srv._get_current_user_id() == "local-dev"

    def test_stdio_without_dev_user(self) -> None:
        _use_settings()
        with patch.object(srv, "get_http_headers", side_effect=RuntimeError("no request")):
            assert srv._get_current_user_id() is None

    def test_require_user_id_raises(self) -> None:
        _use_settings()
        with patch.object(srv, "get_http_headers", return_value={}):
            with pytest.raises(MissingIdentity):
                srv._require_user_id()


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------


class TestSingletons:
    def test_memory_store_by_default(self) -> None:
        _use_settings()
        store = srv._get_store()
        assert isinstance(store, MemoryLedgerStore)
        assert srv._get_store() is store

    def test_sqlite_store_when_path_set(self, tmp_path) -> None:
        _use_settings(ledger_database_path=str(tmp_path / "ledger.db"))
        assert isinstance(srv._get_store(), SQLiteLedgerStore)

    def test_backend_requires_credentials(self) -> None:
        _use_settings()
        with pytest.raises(ValueError, match="CLOUDFLARE_ACCOUNT_ID"):
            srv._get_backend()

    def test_backend_built_from_settings(self) -> None:
        _use_settings(
            cloudflare_account_id="acct",
            cloudflare_api_token="tok",
            ai_search_instance="inst",
        )
        backend = srv._get_backend()
        assert backend.endpoint == "/accounts/acct/autorag/rags/inst/ai-search"

    @pytest.mark.asyncio
    async def test_seeding_runs_once(self) -> None:
        _use_settings(seed_balances='{"horizon-1": 10}')
        store = srv._get_store()

        await srv._ensure_seeded(store)
        await store.try_debit("horizon-1", 3, "act-1", DebitMetadata(tool_name="search_fastapi_docs"))
        await srv._ensure_seeded(store)

        assert await store.read_balance("horizon-1") == 7

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_wait_for_seeding(self) -> None:
        _use_settings(seed_balances='{"horizon-1": 10}')
        store = srv._get_store()
        real_seed = srv.seed_store

        async def slow_seed(*args):
            for _ in range(5):
                await asyncio.sleep(0)
            return await real_seed(*args)

        async def seed_then_read() -> int:
            await srv._ensure_seeded(store)
            return await store.read_balance("horizon-1")

        with patch.object(srv, "seed_store", side_effect=slow_seed) as seeder:
            balances = await asyncio.gather(seed_then_read(), seed_then_read(), seed_then_read())

        assert balances == [10, 10, 10]
        assert seeder.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_seeding_is_retried(self) -> None:
        _use_settings(seed_balances='{"horizon-1": 10}')
        store = srv._get_store()
        real_seed = srv.seed_store
        calls = []

        async def flaky_seed(*args):
            calls.append(args)
            if len(calls) == 1:
                raise LedgerUnavailable("locked")
            return await real_seed(*args)

        with patch.object(srv, "seed_store", side_effect=flaky_seed):
            with pytest.raises(LedgerUnavailable):
                await srv._ensure_seeded(store)
            assert srv._seeded is False
            await srv._ensure_seeded(store)

        assert srv._seeded is True
        assert await store.read_balance("horizon-1") == 10


# ---------------------------------------------------------------------------
# Tool helpers
# ---------------------------------------------------------------------------


class TestRunSearch:
    @pytest.mark.asyncio
    async def test_unconfigured_backend_returns_error(self) -> None:
        _use_settings(dev_user_id="local-dev")
        with patch.object(srv, "get_http_headers", return_value={}):
            result = await srv._run_search(search.search_docs_tool, "routing")

        assert result["success"] is False
        assert result["is_error"] is True
        assert "not configured" in result["error"]
        assert result["error_kind"] == "backend_not_configured"
        assert result["retryable"] is False

    @pytest.mark.asyncio
    async def test_runs_tool_with_resolved_user(self) -> None:
        _use_settings(
            cloudflare_account_id="acct",
            cloudflare_api_token="tok",
            dev_user_id="local-dev",
        )
        tool = AsyncMock(return_value={"success": True})

        with patch.object(srv, "get_http_headers", return_value={}):
            result = await srv._run_search(tool, "routing")

        assert result == {"success": True}
        pipeline, user_id, query = tool.await_args.args
        assert pipeline is srv._pipeline
        assert user_id == "local-dev"
        assert query == "routing"

    @pytest.mark.asyncio
    async def test_pipeline_wired_from_settings(self) -> None:
        _use_settings(
            cloudflare_account_id="acct",
            cloudflare_api_token="tok",
            ai_search_instance="inst",
            server_name="srv-1",
            redact_emails=True,
            debit_max_attempts=5,
        )
        pipeline = await srv._get_pipeline()

        assert pipeline.rag_instance == "inst"
        assert pipeline.server_name == "srv-1"
        assert pipeline.redact_emails is True
        assert pipeline.debit_max_attempts == 5
        assert await srv._get_pipeline() is pipeline

    @pytest.mark.asyncio
    async def test_ledger_outage_during_seeding(self) -> None:
        _use_settings(
            cloudflare_account_id="acct",
            cloudflare_api_token="tok",
            dev_user_id="local-dev",
            seed_balances='{"local-dev": 10}',
        )
        tool = AsyncMock(return_value={"success": True})

        with patch.object(srv, "get_http_headers", return_value={}):
            with patch.object(srv, "seed_store", AsyncMock(side_effect=LedgerUnavailable("locked"))):
                result = await srv._run_search(tool, "routing")
            assert result["success"] is False
            assert result["is_error"] is True
            assert result["error_kind"] == "ledger_unavailable"
            assert result["retryable"] is True
            tool.assert_not_awaited()
            assert srv._pipeline is None

            result = await srv._run_search(tool, "routing")

        assert result == {"success": True}
        assert await srv._get_store().read_balance("local-dev") == 10


class TestRunCheckBalance:
    @pytest.mark.asyncio
    async def test_missing_identity(self) -> None:
        _use_settings()
        with patch.object(srv, "get_http_headers", return_value={}):
            result = await srv._run_check_balance(10)

        assert result["success"] is False
        assert result["is_error"] is True
        assert result["error_kind"] == "missing_identity"
        assert result["retryable"] is False

    @pytest.mark.asyncio
    async def test_ledger_outage_during_seeding(self) -> None:
        _use_settings(dev_user_id="local-dev", seed_balances='{"local-dev": 10}')
        with patch.object(srv, "get_http_headers", return_value={}):
            with patch.object(srv, "seed_store", AsyncMock(side_effect=LedgerUnavailable("locked"))):
                result = await srv._run_check_balance(10)

        assert result["error_kind"] == "ledger_unavailable"
        assert result["retryable"] is True
        assert srv._seeded is False

    @pytest.mark.asyncio
    async def test_reports_seeded_balance(self) -> None:
        _use_settings(dev_user_id="local-dev", seed_balances='{"local-dev": 10}')
        with patch.object(srv, "get_http_headers", return_value={}):
            result = await srv._run_check_balance(10)

        assert result["success"] is True
        assert result["balance"] == 10
