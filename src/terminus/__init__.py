"""Terminus package.

Tracks storage usage per key from S3 event notifications delivered through
SQS, and reports which keys are over quota.

Usage:
    from terminus import KeyMapping, Poller, SqliteQuotaLedger

    ledger = await SqliteQuotaLedger.open("terminus.db", default_quota_bytes=5_000)
    mapping = KeyMapping.compile(r"^s3://[^/]*/user/([^/]*)/.*$", r"\\1")
    poller = Poller(sqs_client, queue_url, mapping, ledger)
    await poller.run(stop_event)
"""

from __future__ import annotations

from terminus.core import (
    ConfigurationError,
    ExceededRecord,
    LedgerError,
    QuotaLedger,
    TerminusConfig,
    TerminusError,
    UsageRecord,
    UsageUpdate,
    configure_logging,
    get_logger,
)
from terminus.events import EventRecord, ObjectDelta, parse_delta
from terminus.keys import KeyMapping, map_key
from terminus.ledger import InMemoryQuotaLedger, SqliteQuotaLedger
from terminus.poller import BatchResult, Poller, PollerSettings

__version__ = "0.3.0"

__all__ = [
    "BatchResult",
    "ConfigurationError",
    "EventRecord",
    "ExceededRecord",
    "InMemoryQuotaLedger",
    "KeyMapping",
    "LedgerError",
    "ObjectDelta",
    "Poller",
    "PollerSettings",
    "QuotaLedger",
    "SqliteQuotaLedger",
    "TerminusConfig",
    "TerminusError",
    "UsageRecord",
    "UsageUpdate",
    "__version__",
    "configure_logging",
    "get_logger",
    "map_key",
    "parse_delta",
]
