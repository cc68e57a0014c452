"""QuotaLedger protocol for pluggable usage storage.

The poller and the HTTP surface only see this protocol, so a ledger backed
by another database can be dropped in without touching them.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from terminus.core.models import ExceededRecord, UsageRecord, UsageUpdate


@runtime_checkable
class QuotaLedger(Protocol):
    """Protocol for usage ledger backends.

    Implementations must be safe for concurrent callers, including callers in
    other processes sharing the same backing store. Writes upsert: the first
    write for an unseen key creates its record.

    Example:
        class PostgresQuotaLedger:
            async def add_size_bytes(self, key: str, delta_bytes: int) -> UsageUpdate:
                # INSERT ... ON CONFLICT (key) DO UPDATE ... RETURNING ...
                ...

        assert isinstance(PostgresQuotaLedger(), QuotaLedger)
    """

    default_quota_bytes: int

    async def get(self, key: str) -> UsageRecord | None:
        """Return the record for key, or None if the key was never written."""
        ...

    async def set(self, key: str, usage_bytes: int) -> UsageUpdate:
        """Replace usage for key.

        The write is kept even when the key ends up over quota; the returned
        update carries ``exceeded=True`` in that case.
        """
        ...

    async def add_size_bytes(self, key: str, delta_bytes: int) -> UsageUpdate:
        """Atomically add delta_bytes (which may be negative) to usage for key.

        Exceedance is evaluated against the value after the increment.
        """
        ...

    async def set_quota(self, key: str, quota_bytes: int | None) -> UsageUpdate:
        """Set or clear (None) the quota override for key."""
        ...

    async def get_exceeded(self) -> list[ExceededRecord]:
        """Return every key whose usage is above its effective quota, by key."""
        ...
