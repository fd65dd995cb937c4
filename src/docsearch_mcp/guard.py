"""Balance guard: decide whether a user can afford a priced call."""

from __future__ import annotations

import logging

from docsearch_mcp.ledger import BalanceCheck
from docsearch_mcp.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


async def check_balance(store: LedgerStore, user_id: str, cost: int) -> BalanceCheck:
    """Read-only balance check. Never mutates the store.

    LedgerUnavailable from the store propagates to the caller.
    """
    current = await store.read_balance(user_id)
    sufficient = current >= cost
    if not sufficient:
        logger.info("Insufficient balance for %s: %d < %d.", user_id, current, cost)
    return BalanceCheck(sufficient=sufficient, current_balance=current, required=cost)
