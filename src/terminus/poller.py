"""Queue poller: applies S3 event notifications to the usage ledger.

The loop is receive -> process -> acknowledge, until a stop event is set.
Stop is honoured before and during a receive; a batch that has started is
always finished.

Delivery is at-least-once. A message is deleted only when every one of its
records reached the ledger or was rejected as bad data. A message that hit a
ledger error stays on the queue, and on redelivery all of its records are
applied again, including the ones that had already succeeded. Records carry
no idempotency token, so those deltas are counted twice.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from terminus.core.exceptions import (
    EnvelopeDecodeError,
    EventParseError,
    LedgerError,
    TerminusError,
)
from terminus.core.logging_config import Timer, get_logger
from terminus.core.models import QueueMessage, UsageUpdate
from terminus.core.retry_config import SQS_EXCEPTIONS, RetryConfig, create_retry_decorator
from terminus.events import EventRecord, decode_envelope, parse_delta

if TYPE_CHECKING:
    import structlog

    from terminus.core.config import TerminusConfig
    from terminus.core.protocols import QueueClient, QuotaLedger
    from terminus.keys import KeyMapping

logger = get_logger(__name__)


class RecordStatus(StrEnum):
    """What happened to one event record."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RecordOutcome:
    index: int
    status: RecordStatus
    key: str | None = None
    delta_bytes: int = 0
    update: UsageUpdate | None = None
    error: TerminusError | None = None


@dataclass
class MessageResult:
    """Outcome of processing one queue message."""

    message_id: str | None
    receipt_handle: str
    outcomes: list[RecordOutcome] = field(default_factory=list)
    decode_error: EnvelopeDecodeError | None = None
    acknowledged: bool = False

    @property
    def errors(self) -> list[TerminusError]:
        errors: list[TerminusError] = []
        if self.decode_error is not None:
            errors.append(self.decode_error)
        errors.extend(o.error for o in self.outcomes if o.error is not None)
        return errors

    @property
    def ledger_errors(self) -> list[LedgerError]:
        return [e for e in self.errors if isinstance(e, LedgerError)]

    @property
    def should_acknowledge(self) -> bool:
        """True when redelivering this message could not change anything.

        Bad records stay bad on redelivery; ledger failures might not.
        Exceeding a quota is not a failure.
        """
        return self.decode_error is None and not self.ledger_errors

    def count(self, status: RecordStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def exceeded(self) -> list[UsageUpdate]:
        return [o.update for o in self.outcomes if o.update is not None and o.update.exceeded]


@dataclass
class BatchResult:
    """Outcome of one received batch.

    Errors from every record and message are collected here; none of them
    stops the rest of the batch.
    """

    messages: list[MessageResult] = field(default_factory=list)

    @property
    def errors(self) -> list[TerminusError]:
        return [e for m in self.messages for e in m.errors]

    @property
    def applied(self) -> int:
        return sum(m.count(RecordStatus.APPLIED) for m in self.messages)

    @property
    def skipped(self) -> int:
        return sum(m.count(RecordStatus.SKIPPED) for m in self.messages)

    @property
    def failed(self) -> int:
        return sum(m.count(RecordStatus.FAILED) for m in self.messages)

    @property
    def exceeded(self) -> list[UsageUpdate]:
        return [u for m in self.messages for u in m.exceeded]

    @property
    def acknowledged(self) -> list[str | None]:
        return [m.message_id for m in self.messages if m.acknowledged]

    @property
    def retained(self) -> list[str | None]:
        return [m.message_id for m in self.messages if not m.acknowledged]

    def error_group(self) -> ExceptionGroup[TerminusError] | None:
        """All batch errors as one exception group, or None if there were none."""
        errors = self.errors
        if not errors:
            return None
        return ExceptionGroup(f"{len(errors)} error(s) processing batch", errors)


@dataclass(frozen=True)
class PollerSettings:
    """Receive parameters and pauses for the poll loop.

    Attributes:
        batch_size: Maximum messages per receive (SQS allows at most 10).
        wait_seconds: Long-poll wait for each receive.
        visibility_timeout_seconds: How long received messages stay hidden
            from other consumers before they are redelivered.
        receive_backoff_seconds: Pause after a failed receive.
        retry_config: Retries for deleting acknowledged messages.
    """

    batch_size: int = 10
    wait_seconds: int = 10
    visibility_timeout_seconds: int = 3
    receive_backoff_seconds: float = 2.0
    retry_config: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_config(cls, config: TerminusConfig) -> PollerSettings:
        return cls(
            batch_size=config.receive_batch_size,
            wait_seconds=config.receive_wait_seconds,
            visibility_timeout_seconds=config.visibility_timeout_seconds,
            receive_backoff_seconds=config.receive_backoff_seconds,
            retry_config=RetryConfig.from_config(config),
        )


class Poller:
    """Long-polls a queue and feeds S3 object creations into a QuotaLedger.

    Args:
        client: SQS client (aiobotocore, or anything with the same two calls).
        queue_url: URL of the queue to poll.
        key_mapping: Maps object paths to ledger keys; unmatched paths are ignored.
        ledger: Ledger receiving the deltas.
        settings: Receive and retry parameters.
    """

    def __init__(
        self,
        client: QueueClient,
        queue_url: str,
        key_mapping: KeyMapping,
        ledger: QuotaLedger,
        *,
        settings: PollerSettings | None = None,
    ) -> None:
        self._client = client
        self._queue_url = queue_url
        self._key_mapping = key_mapping
        self._ledger = ledger
        self._settings = settings or PollerSettings()
        self._logger = logger.bind(queue_url=queue_url)
        self._delete_with_retry = create_retry_decorator(
            self._settings.retry_config, SQS_EXCEPTIONS
        )(self._delete_message)

    async def run(self, stop: asyncio.Event) -> None:
        """Poll until stop is set. Receive failures are logged and retried."""
        self._logger.info("poller_started", batch_size=self._settings.batch_size)
        while not stop.is_set():
            try:
                messages = await self._receive(stop)
            except Exception as e:
                self._logger.error(
                    "receive_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    backoff_seconds=self._settings.receive_backoff_seconds,
                )
                await self._pause(stop, self._settings.receive_backoff_seconds)
                continue
            if messages is None:
                break
            if messages:
                await self.process_batch(messages)
        self._logger.info("poller_stopped")

    async def _receive(self, stop: asyncio.Event) -> list[dict[str, Any]] | None:
        """Receive one batch, or return None if stop was set first."""
        receive = asyncio.ensure_future(
            self._client.receive_message(
                QueueUrl=self._queue_url,
                MaxNumberOfMessages=self._settings.batch_size,
                WaitTimeSeconds=self._settings.wait_seconds,
                VisibilityTimeout=self._settings.visibility_timeout_seconds,
                MessageAttributeNames=["All"],
            )
        )
        stopped = asyncio.ensure_future(stop.wait())
        try:
            await asyncio.wait({receive, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if stop.is_set() or not receive.done():
                receive.cancel()

        if stop.is_set():
            # Anything received now becomes visible again after the visibility timeout.
            await asyncio.gather(receive, return_exceptions=True)
            return None
        response = receive.result()
        return list(response.get("Messages", []))

    async def _pause(self, stop: asyncio.Event, seconds: float) -> None:
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=seconds)

    async def process_batch(
        self, messages: list[dict[str, Any]] | list[QueueMessage]
    ) -> BatchResult:
        """Apply every message in order, deleting those that need no redelivery."""
        batch = BatchResult()
        with Timer(self._logger, "batch", messages=len(messages)) as timer:
            for raw in messages:
                message = (
                    raw if isinstance(raw, QueueMessage) else QueueMessage.model_validate(raw)
                )
                result = await self.process_message(message)
                if result.should_acknowledge:
                    result.acknowledged = await self._acknowledge(message)
                batch.messages.append(result)

            errors = batch.errors
            if errors:
                self._logger.warning(
                    "batch_errors",
                    error_count=len(errors),
                    errors=[str(e) for e in errors],
                )
            timer.complete(
                applied=batch.applied,
                skipped=batch.skipped,
                failed=batch.failed,
                acknowledged=len(batch.acknowledged),
                retained=len(batch.retained),
            )
        return batch

    async def process_message(self, message: QueueMessage) -> MessageResult:
        """Apply the records of one message to the ledger, in order.

        Does not acknowledge the message.
        """
        result = MessageResult(
            message_id=message.message_id, receipt_handle=message.receipt_handle
        )
        message_logger = self._logger.bind(message_id=message.message_id or "[no ID]")

        try:
            envelope = decode_envelope(message.body, message.message_id)
        except EnvelopeDecodeError as e:
            message_logger.error("message_decode_failed", error=str(e))
            result.decode_error = e
            return result

        for index, record in enumerate(envelope.records):
            outcome = await self._apply_record(
                index, record, message.message_id, message_logger.bind(record_index=index)
            )
            result.outcomes.append(outcome)
        return result

    async def _apply_record(
        self,
        index: int,
        record: EventRecord,
        message_id: str | None,
        record_logger: structlog.stdlib.BoundLogger,
    ) -> RecordOutcome:
        try:
            delta = parse_delta(record)
        except EventParseError as e:
            e.locate(message_id, index)
            record_logger.warning(
                "record_rejected",
                error=str(e),
                error_type=type(e).__name__,
                event_name=record.event_name,
            )
            return RecordOutcome(index=index, status=RecordStatus.FAILED, error=e)

        if delta is None:
            return RecordOutcome(index=index, status=RecordStatus.SKIPPED)

        key = self._key_mapping.map(delta.path)
        if key is None:
            record_logger.debug("path_not_tracked")
            return RecordOutcome(index=index, status=RecordStatus.SKIPPED)

        try:
            update = await self._ledger.add_size_bytes(key, delta.delta_bytes)
        except LedgerError as e:
            record_logger.error(
                "usage_update_failed", key=key, delta_bytes=delta.delta_bytes, error=str(e)
            )
            return RecordOutcome(
                index=index,
                status=RecordStatus.FAILED,
                key=key,
                delta_bytes=delta.delta_bytes,
                error=e,
            )

        if update.exceeded:
            record_logger.info(
                "quota_exceeded",
                key=key,
                usage_bytes=update.usage_bytes,
                quota_bytes=update.quota_bytes,
            )
        return RecordOutcome(
            index=index,
            status=RecordStatus.APPLIED,
            key=key,
            delta_bytes=delta.delta_bytes,
            update=update,
        )

    async def _delete_message(self, receipt_handle: str) -> None:
        await self._client.delete_message(QueueUrl=self._queue_url, ReceiptHandle=receipt_handle)

    async def _acknowledge(self, message: QueueMessage) -> bool:
        try:
            await self._delete_with_retry(message.receipt_handle)
        except Exception as e:
            # The message comes back after its visibility timeout and is applied again.
            self._logger.error(
                "acknowledge_failed",
                message_id=message.message_id,
                receipt_handle=message.receipt_handle,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False
        return True
