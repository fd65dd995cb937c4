"""Priced operation pipeline: balance check, search, sanitize, debit.

Stage order per invocation::

    START -> BALANCE_CHECKED -> BACKEND_QUERIED -> SANITIZED -> DEBITED -> DONE

with ERROR reachable from every stage. The balance is checked before any
spend, and the debit is the last step, so a failure anywhere earlier
leaves the ledger untouched. Every failure is converted into a tool-level
error dict at this boundary.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from docsearch_mcp.api.models import SearchAnswer, SearchOptions
from docsearch_mcp.debit import consume_credits_with_retry, record_failed_debit
from docsearch_mcp.errors import (
    DebitFailed,
    LedgerUnavailable,
    MissingIdentity,
    OutputValidationFailed,
    SearchBackendError,
    SearchIndexingError,
    SearchNotProvisionedError,
)
from docsearch_mcp.guard import check_balance
from docsearch_mcp.ledger import DebitMetadata, DebitOutcome
from docsearch_mcp.ledger_store import LedgerStore
from docsearch_mcp.security import SecurityReport, scan_output
from docsearch_mcp.utils.constants import (
    DEBIT_BACKOFF_BASE_SECS,
    DEBIT_MAX_ATTEMPTS,
    MAX_OUTPUT_CHARS,
    ErrorKind,
    PipelineStage,
)
from docsearch_mcp.utils.formatters import (
    format_insufficient_credits_error,
    summarize_request,
    summarize_result,
)

logger = logging.getLogger(__name__)


def _log_debit_outcome(action_id: str, task: asyncio.Future) -> None:
    """Done-callback for the shielded debit. Retrieves the result even when
    the awaiting caller was cancelled."""
    if task.cancelled():
        logger.warning("Debit task for action %s was cancelled.", action_id)
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "Debit task for action %s ended with %s: %s",
            action_id, type(exc).__name__, exc,
        )
    else:
        logger.debug("Debit task for action %s completed.", action_id)


class SearchBackend(Protocol):
    """Anything that can answer a retrieval-augmented query."""

    async def query(self, text: str, options: SearchOptions) -> SearchAnswer: ...


@dataclass(frozen=True)
class PricedOperation:
    """A priced tool: fixed cost plus backend tuning."""

    tool_name: str
    cost: int
    options: SearchOptions
    subject: str
    query_prefix: str = ""

    def backend_query(self, query: str) -> str:
        return f"{self.query_prefix}{query}"


@dataclass
class PipelineRun:
    """Per-invocation state. The action_id is fixed for the whole run."""

    operation: PricedOperation
    user_id: str | None
    query: str
    action_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    stage: PipelineStage = PipelineStage.START

    def advance(self, stage: PipelineStage) -> None:
        logger.debug(
            "%s action %s: %s -> %s",
            self.operation.tool_name, self.action_id, self.stage.value, stage.value,
        )
        self.stage = stage


class PricedOperationPipeline:
    """Runs priced operations against one ledger store and one backend."""

    def __init__(
        self,
        store: LedgerStore,
        backend: SearchBackend,
        *,
        rag_instance: str,
        server_name: str = "",
        max_output_chars: int = MAX_OUTPUT_CHARS,
        redact_emails: bool = False,
        debit_max_attempts: int = DEBIT_MAX_ATTEMPTS,
        debit_backoff_base_secs: float = DEBIT_BACKOFF_BASE_SECS,
    ) -> None:
        self.store = store
        self.backend = backend
        self.rag_instance = rag_instance
        self.server_name = server_name
        self.max_output_chars = max_output_chars
        self.redact_emails = redact_emails
        self.debit_max_attempts = debit_max_attempts
        self.debit_backoff_base_secs = debit_backoff_base_secs

    async def run(
        self, operation: PricedOperation, user_id: str | None, query: str
    ) -> dict[str, Any]:
        """Execute one invocation. Always returns a result dict.

        ``asyncio.CancelledError`` is not caught: a cancellation before the
        debit leaves the ledger untouched, and the debit itself is shielded.
        """
        run = PipelineRun(operation=operation, user_id=user_id, query=query)
        try:
            return await self._execute(run)
        except MissingIdentity as e:
            return self._error(run, ErrorKind.MISSING_IDENTITY, str(e))
        except Exception as e:
            logger.exception(
                "Unexpected failure in %s (action %s) at stage %s.",
                operation.tool_name, run.action_id, run.stage.value,
            )
            if run.stage is PipelineStage.SANITIZED and run.user_id:
                # Failure inside the debit step: billing, not content
                await record_failed_debit(
                    self.store,
                    run.user_id,
                    operation.cost,
                    run.action_id,
                    DebitMetadata(
                        tool_name=operation.tool_name,
                        server_name=self.server_name,
                        request_summary=summarize_request(query),
                    ),
                )
                return self._billing_failed(run)
            return self._error(
                run, ErrorKind.BACKEND_FAILURE,
                f"Failed to search {operation.subject}: {e}",
            )

    async def _execute(self, run: PipelineRun) -> dict[str, Any]:
        op = run.operation

        if not run.user_id:
            raise MissingIdentity("User ID not found in authentication context.")
        user_id = run.user_id
        if not run.query or not run.query.strip():
            return self._error(run, ErrorKind.INVALID_QUERY, "query must not be empty.")

        # 1. Balance check (no spend before this passes)
        try:
            check = await check_balance(self.store, user_id, op.cost)
        except LedgerUnavailable as e:
            logger.error("Balance read failed for %s: %s", user_id, e)
            return self._error(
                run, ErrorKind.LEDGER_UNAVAILABLE,
                "Credit ledger is temporarily unavailable. Please try again shortly.",
                retryable=True,
            )
        if not check.sufficient:
            return self._error(
                run, ErrorKind.INSUFFICIENT_BALANCE,
                format_insufficient_credits_error(op.tool_name, check.current_balance, op.cost),
                current_balance=check.current_balance,
                required=op.cost,
            )
        run.advance(PipelineStage.BALANCE_CHECKED)

        # 2. Backend query
        try:
            answer = await self.backend.query(op.backend_query(run.query), op.options)
        except SearchNotProvisionedError as e:
            logger.error("AI Search instance %s not provisioned: %s", self.rag_instance, e)
            return self._error(
                run, ErrorKind.BACKEND_NOT_PROVISIONED,
                f"AI Search instance '{self.rag_instance}' not found or not ready. "
                f"Please verify the instance exists and indexing is complete.",
            )
        except SearchIndexingError:
            return self._error(
                run, ErrorKind.BACKEND_INDEXING,
                f"{op.subject} is still indexing. Please try again in a few minutes.",
                retryable=True,
            )
        except SearchBackendError as e:
            logger.error("AI Search query failed: %s", e)
            return self._error(
                run, ErrorKind.BACKEND_FAILURE, f"Failed to search {op.subject}: {e}",
            )
        run.advance(PipelineStage.BACKEND_QUERIED)

        # 3. Sanitize, redact, validate
        try:
            report = scan_output(
                answer.answer_text,
                max_length=self.max_output_chars,
                redact_emails=self.redact_emails,
                tool_name=op.tool_name,
            )
        except OutputValidationFailed as e:
            logger.warning("Output validation failed for %s: %s", op.tool_name, e.errors)
            return self._error(
                run, ErrorKind.VALIDATION_FAILED,
                f"Failed to search {op.subject}: the answer did not pass output validation.",
            )
        run.advance(PipelineStage.SANITIZED)

        # 4. Debit. Shielded so a cancelled caller cannot abort an issued write.
        debit_task = asyncio.ensure_future(self._debit(run, user_id, report))
        debit_task.add_done_callback(functools.partial(_log_debit_outcome, run.action_id))
        try:
            outcome = await asyncio.shield(debit_task)
        except DebitFailed as e:
            logger.error(
                "Billing failed for %s action %s: %s. Answer withheld.",
                user_id, run.action_id, e,
            )
            return self._billing_failed(run)
        run.advance(PipelineStage.DEBITED)

        result: dict[str, Any] = {
            "success": True,
            "query": run.query,
            "rag_instance": self.rag_instance,
            "action_id": run.action_id,
            "cost": op.cost,
            "balance": outcome.balance,
            "security_applied": report.to_dict(),
            "answer": report.text,
        }
        run.advance(PipelineStage.DONE)
        return result

    async def _debit(
        self, run: PipelineRun, user_id: str, report: SecurityReport
    ) -> DebitOutcome:
        return await consume_credits_with_retry(
            self.store,
            user_id,
            run.operation.cost,
            run.operation.tool_name,
            summarize_request(run.query),
            summarize_result(report.text),
            run.action_id,
            server_name=self.server_name,
            max_attempts=self.debit_max_attempts,
            base_delay=self.debit_backoff_base_secs,
        )

    def _billing_failed(self, run: PipelineRun) -> dict[str, Any]:
        return self._error(
            run, ErrorKind.BILLING_FAILED,
            "The search completed but the charge could not be confirmed, so the "
            "answer was withheld. You have not been charged. Please try again.",
            retryable=True,
        )

    def _error(
        self,
        run: PipelineRun,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool = False,
        **extra: Any,
    ) -> dict[str, Any]:
        failed_at = run.stage
        run.advance(PipelineStage.ERROR)
        result: dict[str, Any] = {
            "success": False,
            "is_error": True,
            "error_kind": kind.value,
            "error": message,
            "retryable": retryable,
            "failed_at": failed_at.value,
            "action_id": run.action_id,
        }
        result.update(extra)
        return result
