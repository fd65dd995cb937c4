"""Idempotent debit executor with bounded retry.

The action_id is the idempotency key. It is generated once per logical
invocation and reused on every retry, so a retry after a partially
applied attempt resolves to ``already_applied`` instead of a second debit.
"""

from __future__ import annotations

import asyncio
import logging

from docsearch_mcp.errors import DebitFailed, LedgerUnavailable
from docsearch_mcp.ledger import DebitMetadata, DebitOutcome, LedgerEntry
from docsearch_mcp.ledger_store import LedgerStore
from docsearch_mcp.utils.constants import DEBIT_BACKOFF_BASE_SECS, DEBIT_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float = DEBIT_BACKOFF_BASE_SECS) -> float:
    """Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base..."""
    return base_delay * (2 ** (attempt - 1))


async def record_failed_debit(
    store: LedgerStore,
    user_id: str,
    cost: int,
    action_id: str,
    metadata: DebitMetadata,
) -> None:
    """Best-effort audit entry for a debit that could not be applied."""
    entry = LedgerEntry.create(user_id, cost, action_id, metadata, success=False)
    try:
        await store.append_entry(entry)
    except Exception:
        logger.warning("Could not record failed debit %s for %s.", action_id, user_id)


async def consume_credits_with_retry(
    store: LedgerStore,
    user_id: str,
    cost: int,
    tool_name: str,
    request_summary: str,
    result_summary: str,
    action_id: str,
    *,
    server_name: str = "",
    max_attempts: int = DEBIT_MAX_ATTEMPTS,
    base_delay: float = DEBIT_BACKOFF_BASE_SECS,
) -> DebitOutcome:
    """Debit ``cost`` credits at most once for ``action_id``.

    Transient store errors (LedgerUnavailable) are retried up to
    ``max_attempts`` times with exponential backoff. Any other store error
    and an insufficient balance at debit time are not retried.

    Raises:
        DebitFailed: when the debit cannot be confirmed. A failed ledger
            entry is appended best-effort before raising.
    """
    metadata = DebitMetadata(
        tool_name=tool_name,
        server_name=server_name,
        request_summary=request_summary,
        result_summary=result_summary,
    )
    attempts = max(1, max_attempts)
    last_error: LedgerUnavailable | None = None

    for attempt in range(1, attempts + 1):
        try:
            outcome = await store.try_debit(user_id, cost, action_id, metadata)
        except LedgerUnavailable as e:
            last_error = e
            logger.warning(
                "Debit attempt %d/%d for action %s failed: %s",
                attempt, attempts, action_id, e,
            )
            if attempt < attempts:
                await asyncio.sleep(backoff_delay(attempt, base_delay))
            continue
        except Exception as e:
            # Only LedgerUnavailable is retried
            logger.error("Debit for action %s failed: %s", action_id, e)
            await record_failed_debit(store, user_id, cost, action_id, metadata)
            raise DebitFailed(f"Debit failed: {e}", action_id) from e

        if outcome.already_applied:
            logger.info("Debit for action %s already applied; skipping.", action_id)
            return outcome
        if outcome.applied:
            logger.info(
                "Debited %d credits from %s for %s (balance %d).",
                cost, user_id, tool_name, outcome.balance,
            )
            return outcome

        # Balance drained by a concurrent call between check and debit
        await record_failed_debit(store, user_id, cost, action_id, metadata)
        raise DebitFailed(
            f"Insufficient balance at debit time ({outcome.balance} < {cost}).",
            action_id,
        )

    await record_failed_debit(store, user_id, cost, action_id, metadata)
    raise DebitFailed(
        f"Debit not confirmed after {attempts} attempts.", action_id
    ) from last_error
