"""Core Terminus components.

Configuration, exceptions, logging, retry policy, data models and the
protocols shared by the ledger, the poller and the HTTP surface.
"""

from __future__ import annotations

from terminus.core.config import TerminusConfig, parse_bytes
from terminus.core.exceptions import (
    BadVersionError,
    ConfigurationError,
    EnvelopeDecodeError,
    EventParseError,
    InvalidFieldError,
    LedgerError,
    MissingFieldError,
    QueueError,
    TerminusError,
    UnknownEventError,
)
from terminus.core.logging_config import configure_logging, get_logger
from terminus.core.models import (
    ExceededRecord,
    QueueMessage,
    UsageInfo,
    UsageRecord,
    UsageUpdate,
)
from terminus.core.protocols import QueueClient, QuotaLedger
from terminus.core.retry_config import RetryConfig, create_retry_decorator

__all__ = [
    # Exceptions
    "BadVersionError",
    "ConfigurationError",
    "EnvelopeDecodeError",
    "EventParseError",
    # Models
    "ExceededRecord",
    "InvalidFieldError",
    "LedgerError",
    "MissingFieldError",
    # Protocols
    "QueueClient",
    "QueueError",
    "QueueMessage",
    "QuotaLedger",
    "RetryConfig",
    # Config
    "TerminusConfig",
    "TerminusError",
    "UnknownEventError",
    "UsageInfo",
    "UsageRecord",
    "UsageUpdate",
    # Logging
    "configure_logging",
    "create_retry_decorator",
    "get_logger",
    "parse_bytes",
]
