"""Terminus protocols."""

from .ledger import QuotaLedger
from .queue import QueueClient

__all__ = [
    "QueueClient",
    "QuotaLedger",
]
