"""In-process QuotaLedger, for tests and dry runs."""

from __future__ import annotations

from dataclasses import dataclass

from terminus.core.exceptions import ConfigurationError
from terminus.core.models import ExceededRecord, UsageInfo, UsageRecord, UsageUpdate


@dataclass
class _Row:
    size_bytes: int = 0
    quota: int | None = None


class InMemoryQuotaLedger:
    """Dict-backed QuotaLedger with the same semantics as the SQLite ledger.

    Nothing persists and nothing is shared between processes. Methods never
    await between reading and writing a row, so coroutines on one event loop
    cannot interleave inside an update.
    """

    def __init__(self, default_quota_bytes: int) -> None:
        if default_quota_bytes < 0:
            raise ConfigurationError("default quota must be >= 0")
        self.default_quota_bytes = default_quota_bytes
        self._rows: dict[str, _Row] = {}

    async def get(self, key: str) -> UsageRecord | None:
        row = self._rows.get(key)
        if row is None:
            return None
        return UsageRecord(key=key, usage_bytes=row.size_bytes, quota_bytes=row.quota)

    async def set(self, key: str, usage_bytes: int) -> UsageUpdate:
        row = self._rows.setdefault(key, _Row())
        row.size_bytes = usage_bytes
        return self._update(key, row)

    async def add_size_bytes(self, key: str, delta_bytes: int) -> UsageUpdate:
        row = self._rows.setdefault(key, _Row())
        row.size_bytes += delta_bytes
        return self._update(key, row)

    async def set_quota(self, key: str, quota_bytes: int | None) -> UsageUpdate:
        row = self._rows.setdefault(key, _Row())
        row.quota = quota_bytes
        return self._update(key, row)

    async def get_exceeded(self) -> list[ExceededRecord]:
        exceeded = []
        for key in sorted(self._rows):
            row = self._rows[key]
            quota = self._effective_quota(row)
            if row.size_bytes > quota:
                exceeded.append(
                    ExceededRecord(
                        key=key, info=UsageInfo(usage_bytes=row.size_bytes, quota_bytes=quota)
                    )
                )
        return exceeded

    def snapshot(self) -> dict[str, int]:
        """Usage per key, for assertions."""
        return {key: row.size_bytes for key, row in self._rows.items()}

    def _effective_quota(self, row: _Row) -> int:
        return row.quota if row.quota is not None else self.default_quota_bytes

    def _update(self, key: str, row: _Row) -> UsageUpdate:
        quota = self._effective_quota(row)
        return UsageUpdate(
            key=key,
            usage_bytes=row.size_bytes,
            quota_bytes=quota,
            exceeded=row.size_bytes > quota,
        )
