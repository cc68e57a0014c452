"""Queue access."""

from __future__ import annotations

from terminus.queue.sqs import create_sqs_client, is_queue_url, resolve_queue_url

__all__ = [
    "create_sqs_client",
    "is_queue_url",
    "resolve_queue_url",
]
