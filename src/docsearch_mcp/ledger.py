"""Ledger data model for tool-call metering.

Pure data model, no I/O. All amounts are integer credits. Storage lives in
``docsearch_mcp.ledger_store``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# DebitMetadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DebitMetadata:
    """Audit context attached to a debit attempt."""

    tool_name: str
    server_name: str = ""
    request_summary: str = ""
    result_summary: str = ""


# ---------------------------------------------------------------------------
# LedgerEntry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one debit attempt that reached the store.

    At most one entry with ``success=True`` may exist per ``action_id``.
    Failed entries are audit-only and may repeat.
    """

    action_id: str
    user_id: str
    amount: int
    tool_name: str
    server_name: str = ""
    request_summary: str = ""
    result_summary: str = ""
    timestamp: str = ""
    success: bool = True

    @classmethod
    def create(
        cls,
        user_id: str,
        amount: int,
        action_id: str,
        metadata: DebitMetadata,
        *,
        success: bool,
    ) -> LedgerEntry:
        return cls(
            action_id=action_id,
            user_id=user_id,
            amount=amount,
            tool_name=metadata.tool_name,
            server_name=metadata.server_name,
            request_summary=metadata.request_summary,
            result_summary=metadata.result_summary,
            timestamp=utc_now_iso(),
            success=success,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LedgerEntry:
        return cls(
            action_id=str(data["action_id"]),
            user_id=str(data["user_id"]),
            amount=int(data["amount"]),
            tool_name=str(data.get("tool_name", "")),
            server_name=str(data.get("server_name", "")),
            request_summary=str(data.get("request_summary", "")),
            result_summary=str(data.get("result_summary", "")),
            timestamp=str(data.get("timestamp", "")),
            success=bool(data.get("success", False)),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


# ---------------------------------------------------------------------------
# DebitOutcome / BalanceCheck
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DebitOutcome:
    """Result of a conditional debit.

    ``applied`` is True only for the call that actually moved the balance.
    ``already_applied`` is True when a prior successful entry with the same
    action_id exists. Both False means the balance was insufficient.
    """

    applied: bool
    already_applied: bool = False
    balance: int = 0

    @property
    def succeeded(self) -> bool:
        return self.applied or self.already_applied


@dataclass(frozen=True)
class BalanceCheck:
    """Outcome of a balance guard check."""

    sufficient: bool
    current_balance: int
    required: int


def parse_seed_balances(raw: str | None) -> dict[str, int]:
    """Parse the ``seed_balances`` JSON setting. Invalid data seeds nothing."""
    if not raw:
        return {}
    try:
        obj = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Invalid seed_balances JSON; no accounts seeded.")
        return {}
    if not isinstance(obj, dict):
        logger.warning("seed_balances is not a JSON object; no accounts seeded.")
        return {}

    seeds: dict[str, int] = {}
    for user_id, amount in obj.items():
        try:
            value = int(amount)
        except (TypeError, ValueError):
            logger.warning("Skipping non-integer seed balance for %s.", user_id)
            continue
        if value > 0:
            seeds[str(user_id)] = value
    return seeds
