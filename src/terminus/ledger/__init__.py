"""Usage ledgers."""

from __future__ import annotations

from terminus.ledger.memory import InMemoryQuotaLedger
from terminus.ledger.sqlite import SqliteQuotaLedger, ensure_schema

__all__ = [
    "InMemoryQuotaLedger",
    "SqliteQuotaLedger",
    "ensure_schema",
]
