"""Pydantic data models for Terminus."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class UsageRecord(BaseModel):
    """Persistent usage state for one ledger key.

    ``quota_bytes`` is the per-key override; None means the process-wide
    default applies.
    """

    key: str
    usage_bytes: int
    quota_bytes: int | None = None

    def effective_quota(self, default_quota_bytes: int) -> int:
        return self.quota_bytes if self.quota_bytes is not None else default_quota_bytes

    def is_exceeded(self, default_quota_bytes: int) -> bool:
        return self.usage_bytes > self.effective_quota(default_quota_bytes)


class UsageUpdate(BaseModel):
    """Outcome of a ledger write, read back in the same statement as the write.

    ``exceeded`` is informational: the write has already happened.
    """

    key: str
    usage_bytes: int
    quota_bytes: int
    exceeded: bool


class UsageInfo(BaseModel):
    """Usage and effective quota, as reported to HTTP clients."""

    model_config = ConfigDict(populate_by_name=True)

    usage_bytes: int = Field(serialization_alias="UsageBytes", validation_alias="UsageBytes")
    quota_bytes: int = Field(serialization_alias="QuotaBytes", validation_alias="QuotaBytes")


class ExceededRecord(BaseModel):
    """One key over its effective quota.

    Serializes (``by_alias=True``) as ``{"Key": ..., "Info": {"UsageBytes": ...,
    "QuotaBytes": ...}}``.
    """

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(serialization_alias="Key", validation_alias="Key")
    info: UsageInfo = Field(serialization_alias="Info", validation_alias="Info")


class QueueMessage(BaseModel):
    """The parts of an SQS message the poller uses."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    message_id: str | None = Field(default=None, alias="MessageId")
    receipt_handle: str = Field(alias="ReceiptHandle")
    body: str = Field(default="", alias="Body")
