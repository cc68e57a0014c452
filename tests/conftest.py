"""Shared pytest fixtures for the Terminus test suite."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest

from terminus.core.retry_config import RetryConfig
from terminus.keys import KeyMapping
from terminus.ledger import InMemoryQuotaLedger, SqliteQuotaLedger

DEFAULT_QUOTA_BYTES = 100

# ============================================================================
# Event Builders
# ============================================================================


def make_record(
    *,
    event_name: str = "ObjectCreated:Put",
    event_version: str = "2.1",
    bucket: str | None = "bucket",
    key: str | None = "user/alice/file.bin",
    size: int | None = 10,
) -> dict[str, Any]:
    """Build one S3 event notification record as AWS sends it."""
    obj: dict[str, Any] = {"eTag": "0123456789abcdef", "sequencer": "0055AED6DCD90281E5"}
    if key is not None:
        obj["key"] = key
    if size is not None:
        obj["size"] = size
    bucket_entity: dict[str, Any] = {"arn": "arn:aws:s3:::bucket"}
    if bucket is not None:
        bucket_entity["name"] = bucket
    return {
        "eventVersion": event_version,
        "eventSource": "aws:s3",
        "awsRegion": "us-east-1",
        "eventTime": "2021-04-01T12:00:00.000Z",
        "eventName": event_name,
        "s3": {"s3SchemaVersion": "1.0", "bucket": bucket_entity, "object": obj},
    }


def make_body(*records: dict[str, Any]) -> str:
    return json.dumps({"Records": list(records)})


def make_message(body: str, message_id: str = "m-1", receipt: str | None = None) -> dict[str, Any]:
    """Build one SQS message dict as returned by receive_message."""
    return {
        "MessageId": message_id,
        "ReceiptHandle": receipt or f"rh-{message_id}",
        "MD5OfBody": "ignored",
        "Body": body,
    }


# ============================================================================
# Fake SQS Client
# ============================================================================


class FakeSQSClient:
    """In-memory stand-in for an aiobotocore SQS client.

    Each receive pops the next scripted response; an Exception in the script
    is raised instead. Once the script runs out, receive blocks like a long
    poll on an empty queue until cancelled.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        delete_errors: list[Exception] | None = None,
    ) -> None:
        self.responses = list(responses or [])
        self.delete_errors = list(delete_errors or [])
        self.receive_calls: list[dict[str, Any]] = []
        self.deleted: list[str] = []
        self.delete_attempts = 0
        self.queue_urls: dict[str, str] = {}
        self.exhausted = asyncio.Event()

    async def receive_message(self, **kwargs: Any) -> dict[str, Any]:
        self.receive_calls.append(kwargs)
        if not self.responses:
            self.exhausted.set()
            await asyncio.Event().wait()
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def delete_message(self, **kwargs: Any) -> dict[str, Any]:
        self.delete_attempts += 1
        if self.delete_errors:
            raise self.delete_errors.pop(0)
        self.deleted.append(kwargs["ReceiptHandle"])
        return {}

    async def get_queue_url(self, **kwargs: Any) -> dict[str, Any]:
        name = kwargs["QueueName"]
        return {"QueueUrl": self.queue_urls[name]}


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Path to a ledger database file that does not exist yet."""
    return tmp_path / "ledger" / "terminus.db"


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry policy without waits between attempts."""
    return RetryConfig(
        max_attempts=3, min_wait_seconds=0, max_wait_seconds=0, exponential_multiplier=0
    )


@pytest.fixture
def key_mapping() -> KeyMapping:
    return KeyMapping.compile(r"^s3://[^/]*/user/([^/]*)/.*$", r"\1")


@pytest.fixture
def memory_ledger() -> InMemoryQuotaLedger:
    return InMemoryQuotaLedger(default_quota_bytes=DEFAULT_QUOTA_BYTES)


@pytest.fixture
async def sqlite_ledger(tmp_db_path: Path) -> AsyncGenerator[SqliteQuotaLedger, None]:
    """Open a SQLite ledger on a fresh database file.

    Args:
        tmp_db_path: Temporary database path.
    """
    ledger = await SqliteQuotaLedger.open(tmp_db_path, DEFAULT_QUOTA_BYTES)
    yield ledger
    await ledger.close()


@pytest.fixture(params=["memory", "sqlite"])
async def ledger(
    request: pytest.FixtureRequest, tmp_db_path: Path
) -> AsyncGenerator[InMemoryQuotaLedger | SqliteQuotaLedger, None]:
    """Each ledger implementation in turn."""
    if request.param == "memory":
        yield InMemoryQuotaLedger(default_quota_bytes=DEFAULT_QUOTA_BYTES)
        return
    sqlite = await SqliteQuotaLedger.open(tmp_db_path, DEFAULT_QUOTA_BYTES)
    yield sqlite
    await sqlite.close()
