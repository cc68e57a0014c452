"""Tests for the queue poller."""

from __future__ import annotations

import asyncio

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from conftest import FakeSQSClient, make_body, make_message, make_record

from terminus.core.exceptions import (
    EnvelopeDecodeError,
    InvalidFieldError,
    LedgerError,
    MissingFieldError,
    TerminusError,
    UnknownEventError,
)
from terminus.core.models import QueueMessage, UsageUpdate
from terminus.core.retry_config import RetryConfig
from terminus.keys import KeyMapping
from terminus.ledger import InMemoryQuotaLedger, SqliteQuotaLedger
from terminus.poller import Poller, PollerSettings, RecordStatus

QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/123456789012/terminus"


class FailingLedger(InMemoryQuotaLedger):
    """Ledger whose adds fail for selected keys."""

    def __init__(self, default_quota_bytes: int, failing_keys: set[str]) -> None:
        super().__init__(default_quota_bytes)
        self.failing_keys = failing_keys

    async def add_size_bytes(self, key: str, delta_bytes: int) -> UsageUpdate:
        if key in self.failing_keys:
            raise LedgerError(
                f"add_size_bytes key {key}: disk I/O error", operation="add_size_bytes", key=key
            )
        return await super().add_size_bytes(key, delta_bytes)


def make_poller(
    client: FakeSQSClient,
    ledger: InMemoryQuotaLedger,
    key_mapping: KeyMapping,
    retry: RetryConfig,
    backoff: float = 0.01,
) -> Poller:
    settings = PollerSettings(receive_backoff_seconds=backoff, retry_config=retry)
    return Poller(client, QUEUE_URL, key_mapping, ledger, settings=settings)


@pytest.fixture
def bucket_user_mapping() -> KeyMapping:
    """Maps s3://<bucket>/<dir>/... to <dir>."""
    return KeyMapping.compile(r"s3://(\w+)/(\w+)/.*", r"\2")


class TestEndToEnd:
    """Whole messages flowing through the poller into a ledger."""

    async def test_creations_add_and_removal_is_ignored(
        self, bucket_user_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = InMemoryQuotaLedger(default_quota_bytes=1_000)
        client = FakeSQSClient()
        poller = make_poller(client, ledger, bucket_user_mapping, fast_retry)
        body = make_body(
            make_record(bucket="b", key="user/foo", size=17),
            make_record(bucket="b", key="user/foo", size=18),
            make_record(event_name="ObjectRemoved:Delete", bucket="b", key="user/foo", size=None),
        )

        result = await poller.process_batch([make_message(body)])

        assert ledger.snapshot() == {"user": 35}
        assert result.errors == []
        assert result.applied == 2
        assert result.skipped == 1
        assert result.acknowledged == ["m-1"]
        assert client.deleted == ["rh-m-1"]

    async def test_bad_record_does_not_stop_its_neighbours(
        self, bucket_user_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = InMemoryQuotaLedger(default_quota_bytes=1_000)
        client = FakeSQSClient()
        poller = make_poller(client, ledger, bucket_user_mapping, fast_retry)
        body = make_body(
            make_record(bucket="b", key="user/foo", size=5),
            make_record(bucket="b", key="user/foo", size=None),
            make_record(bucket="b", key="user/foo", size=7),
        )

        result = await poller.process_batch([make_message(body, "m-2")])

        assert len(result.errors) == 1
        error = result.errors[0]
        assert isinstance(error, MissingFieldError)
        assert error.field == "object.size"
        assert error.message_id == "m-2"
        assert error.record_index == 1
        assert ledger.snapshot() == {"user": 12}
        assert result.applied == 2
        assert result.failed == 1

    async def test_quota_exceeded_is_reported_and_kept(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = InMemoryQuotaLedger(default_quota_bytes=50)
        client = FakeSQSClient()
        poller = make_poller(client, ledger, key_mapping, fast_retry)

        first = await poller.process_batch(
            [
                make_message(
                    make_body(
                        make_record(key="user/a/1", size=2),
                        make_record(key="user/b/1", size=2),
                    ),
                    "m-1",
                ),
                make_message(
                    make_body(
                        make_record(key="user/a/2", size=3),
                        make_record(key="user/b/2", size=3),
                    ),
                    "m-2",
                ),
            ]
        )
        second = await poller.process_batch(
            [make_message(make_body(make_record(key="user/a/3", size=50)), "m-3")]
        )

        assert first.exceeded == []
        assert [(u.key, u.usage_bytes, u.quota_bytes) for u in second.exceeded] == [
            ("a", 55, 50)
        ]
        assert ledger.snapshot() == {"a": 55, "b": 5}
        assert second.errors == []
        assert client.deleted == ["rh-m-1", "rh-m-2", "rh-m-3"]


class TestBadRecordIsolation:
    """A record the ledger could never store fails alone."""

    async def test_oversized_object_does_not_stop_the_batch(
        self,
        sqlite_ledger: SqliteQuotaLedger,
        key_mapping: KeyMapping,
        fast_retry: RetryConfig,
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, sqlite_ledger, key_mapping, fast_retry)
        body = make_body(
            make_record(key="user/alice/huge.bin", size=2**64),
            make_record(key="user/alice/small.bin", size=5),
        )

        result = await poller.process_batch([make_message(body)])

        assert [type(e) for e in result.errors] == [InvalidFieldError]
        assert result.applied == 1
        assert result.acknowledged == ["m-1"]
        record = await sqlite_ledger.get("alice")
        assert record is not None
        assert record.usage_bytes == 5

    async def test_null_entity_fails_only_its_record(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = InMemoryQuotaLedger(100)
        client = FakeSQSClient()
        poller = make_poller(client, ledger, key_mapping, fast_retry)
        broken = make_record(size=7)
        broken["s3"]["bucket"] = None
        body = make_body(broken, make_record(size=5))

        result = await poller.process_batch([make_message(body)])

        assert [type(e) for e in result.errors] == [MissingFieldError]
        assert ledger.snapshot() == {"alice": 5}
        assert result.acknowledged == ["m-1"]


class TestProcessMessage:
    """Per-record outcomes and acknowledgement decisions."""

    async def test_untracked_path_is_skipped(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = InMemoryQuotaLedger(default_quota_bytes=100)
        poller = make_poller(FakeSQSClient(), ledger, key_mapping, fast_retry)
        message = QueueMessage.model_validate(
            make_message(make_body(make_record(key="shared/readme.txt", size=9)))
        )

        result = await poller.process_message(message)

        assert [o.status for o in result.outcomes] == [RecordStatus.SKIPPED]
        assert ledger.snapshot() == {}
        assert result.should_acknowledge

    async def test_test_event_is_skipped(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        poller = make_poller(
            FakeSQSClient(), InMemoryQuotaLedger(100), key_mapping, fast_retry
        )
        message = QueueMessage.model_validate(
            make_message(make_body(make_record(event_name="s3:TestEvent")))
        )

        result = await poller.process_message(message)

        assert result.count(RecordStatus.SKIPPED) == 1
        assert result.errors == []

    async def test_applied_outcome_carries_update(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        poller = make_poller(
            FakeSQSClient(), InMemoryQuotaLedger(100), key_mapping, fast_retry
        )
        message = QueueMessage.model_validate(
            make_message(make_body(make_record(key="user/alice/x", size=8)))
        )

        result = await poller.process_message(message)

        outcome = result.outcomes[0]
        assert outcome.status is RecordStatus.APPLIED
        assert outcome.key == "alice"
        assert outcome.delta_bytes == 8
        assert outcome.update is not None
        assert outcome.update.usage_bytes == 8

    async def test_process_message_does_not_acknowledge(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)
        message = QueueMessage.model_validate(make_message(make_body(make_record())))

        await poller.process_message(message)

        assert client.deleted == []


class TestAcknowledgement:
    """Which messages are deleted from the queue."""

    async def test_undecodable_message_is_retained(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)

        result = await poller.process_batch(
            [
                make_message("this is not json", "bad"),
                make_message(make_body(make_record(key="user/alice/x", size=1)), "good"),
            ]
        )

        assert result.retained == ["bad"]
        assert result.acknowledged == ["good"]
        assert client.deleted == ["rh-good"]
        assert [type(e) for e in result.errors] == [EnvelopeDecodeError]

    async def test_ledger_failure_retains_message(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = FailingLedger(100, failing_keys={"bob"})
        client = FakeSQSClient()
        poller = make_poller(client, ledger, key_mapping, fast_retry)
        body = make_body(
            make_record(key="user/alice/x", size=4),
            make_record(key="user/bob/x", size=4),
        )

        result = await poller.process_batch([make_message(body)])

        assert result.retained == ["m-1"]
        assert client.deleted == []
        assert ledger.snapshot() == {"alice": 4}
        assert [type(e) for e in result.errors] == [LedgerError]

    async def test_redelivery_counts_applied_records_again(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        ledger = FailingLedger(100, failing_keys={"bob"})
        poller = make_poller(FakeSQSClient(), ledger, key_mapping, fast_retry)
        message = make_message(
            make_body(
                make_record(key="user/alice/x", size=4),
                make_record(key="user/bob/x", size=4),
            )
        )

        await poller.process_batch([message])
        ledger.failing_keys.clear()
        result = await poller.process_batch([message])

        assert result.acknowledged == ["m-1"]
        assert ledger.snapshot() == {"alice": 8, "bob": 4}

    async def test_parse_errors_do_not_block_acknowledgement(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)
        body = make_body(make_record(event_name="ObjectRestore:Completed"))

        result = await poller.process_batch([make_message(body)])

        assert [type(e) for e in result.errors] == [UnknownEventError]
        assert result.acknowledged == ["m-1"]

    async def test_exceeding_quota_does_not_block_acknowledgement(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(1), key_mapping, fast_retry)

        result = await poller.process_batch([make_message(make_body(make_record(size=5)))])

        assert len(result.exceeded) == 1
        assert result.acknowledged == ["m-1"]

    async def test_delete_is_retried_on_connection_errors(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient(
            delete_errors=[EndpointConnectionError(endpoint_url=QUEUE_URL)]
        )
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)

        result = await poller.process_batch([make_message(make_body(make_record()))])

        assert client.delete_attempts == 2
        assert result.acknowledged == ["m-1"]

    async def test_failed_delete_leaves_message_unacknowledged(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        error = ClientError(
            {"Error": {"Code": "ReceiptHandleIsInvalid", "Message": "bad handle"}},
            "DeleteMessage",
        )
        client = FakeSQSClient(delete_errors=[error])
        ledger = InMemoryQuotaLedger(100)
        poller = make_poller(client, ledger, key_mapping, fast_retry)

        result = await poller.process_batch([make_message(make_body(make_record(size=3)))])

        assert client.delete_attempts == 1
        assert result.retained == ["m-1"]
        assert ledger.snapshot() == {"alice": 3}

    async def test_error_group(self, key_mapping: KeyMapping, fast_retry: RetryConfig) -> None:
        poller = make_poller(
            FakeSQSClient(), InMemoryQuotaLedger(100), key_mapping, fast_retry
        )

        clean = await poller.process_batch([make_message(make_body(make_record()), "a")])
        dirty = await poller.process_batch(
            [
                make_message("{", "b"),
                make_message(make_body(make_record(size=None)), "c"),
            ]
        )

        assert clean.error_group() is None
        group = dirty.error_group()
        assert group is not None
        assert len(group.exceptions) == 2
        assert all(isinstance(e, TerminusError) for e in group.exceptions)


class TestRun:
    """The receive loop."""

    async def test_receives_processes_and_stops(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient(
            responses=[
                {"Messages": [make_message(make_body(make_record(size=6)), "m-1")]},
                {},
                {"Messages": [make_message(make_body(make_record(size=4)), "m-2")]},
            ]
        )
        ledger = InMemoryQuotaLedger(100)
        poller = make_poller(client, ledger, key_mapping, fast_retry)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.wait_for(client.exhausted.wait(), timeout=5)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert ledger.snapshot() == {"alice": 10}
        assert client.deleted == ["rh-m-1", "rh-m-2"]

    async def test_receive_parameters(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.wait_for(client.exhausted.wait(), timeout=5)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert client.receive_calls[0] == {
            "QueueUrl": QUEUE_URL,
            "MaxNumberOfMessages": 10,
            "WaitTimeSeconds": 10,
            "VisibilityTimeout": 3,
            "MessageAttributeNames": ["All"],
        }

    async def test_receive_failure_is_retried(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient(
            responses=[
                EndpointConnectionError(endpoint_url=QUEUE_URL),
                {"Messages": [make_message(make_body(make_record(size=6)))]},
            ]
        )
        ledger = InMemoryQuotaLedger(100)
        poller = make_poller(client, ledger, key_mapping, fast_retry, backoff=0.01)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.wait_for(client.exhausted.wait(), timeout=5)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert len(client.receive_calls) == 3
        assert ledger.snapshot() == {"alice": 6}

    async def test_stop_during_backoff(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient(responses=[EndpointConnectionError(endpoint_url=QUEUE_URL)])
        poller = make_poller(
            client, InMemoryQuotaLedger(100), key_mapping, fast_retry, backoff=3600
        )
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        while not client.receive_calls:
            await asyncio.sleep(0)
        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert len(client.receive_calls) == 1

    async def test_stop_set_before_run(
        self, key_mapping: KeyMapping, fast_retry: RetryConfig
    ) -> None:
        client = FakeSQSClient()
        poller = make_poller(client, InMemoryQuotaLedger(100), key_mapping, fast_retry)
        stop = asyncio.Event()
        stop.set()

        await asyncio.wait_for(poller.run(stop), timeout=5)

        assert client.receive_calls == []


class TestPollerSettings:
    def test_defaults(self) -> None:
        settings = PollerSettings()

        assert settings.batch_size == 10
        assert settings.wait_seconds == 10
        assert settings.visibility_timeout_seconds == 3
        assert settings.receive_backoff_seconds == 2.0
