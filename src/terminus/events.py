"""S3 event notification records and the parser that turns them into deltas.

A queue message body is an envelope ``{"Records": [...]}``; each record is
one S3 event. ``parse_delta`` classifies a record and, for object creation,
extracts the object path and the number of bytes it added. It touches no
queue and no store.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from terminus.core.exceptions import (
    BadVersionError,
    EnvelopeDecodeError,
    InvalidFieldError,
    MissingFieldError,
    UnknownEventError,
)

SUPPORTED_EVENT_VERSION = "2.1"
SUPPORTED_EVENT_MAJOR_VERSION = 2

EVENT_TYPE_TEST = "s3:TestEvent"
EVENT_TYPE_OBJECT_CREATED_PREFIX = "s3:ObjectCreated:"
EVENT_TYPE_OBJECT_REMOVED_PREFIX = "s3:ObjectRemoved:"

_SERVICE_PREFIX = "s3:"

PATH_SCHEME = "s3"

# Sizes are stored in a signed 64-bit SQLite INTEGER.
MAX_OBJECT_SIZE = 2**63 - 1


class _EventModel(BaseModel):
    """Base for event models: a JSON null reads as an absent field.

    A null record, entity or string then takes its default, and ``parse_delta``
    reports the missing field for that record alone instead of the whole
    envelope failing validation.
    """

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if data is None:
            return {}
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data


class BucketEntity(_EventModel):
    name: str | None = None


class ObjectEntity(_EventModel):
    model_config = ConfigDict(populate_by_name=True)

    key: str | None = None
    size: int | None = None
    e_tag: str | None = Field(default=None, alias="eTag")
    sequencer: str | None = None


class S3Entity(_EventModel):
    model_config = ConfigDict(populate_by_name=True)

    bucket: BucketEntity = Field(default_factory=BucketEntity)
    obj: ObjectEntity = Field(default_factory=ObjectEntity, alias="object")


class EventRecord(_EventModel):
    """One S3 event notification record.

    Only the fields Terminus reads are modelled; anything else in the record
    is ignored. Missing or null strings read as "" and missing entities as empty
    ones, so that ``parse_delta`` can name the missing field.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    event_version: str = Field(default="", alias="eventVersion")
    event_time: datetime | None = Field(default=None, alias="eventTime")
    event_name: str = Field(default="", alias="eventName")
    s3: S3Entity = Field(default_factory=S3Entity)


class Envelope(_EventModel):
    """Body of one queue message: an ordered list of event records."""

    model_config = ConfigDict(populate_by_name=True)

    records: list[EventRecord] = Field(default_factory=list, alias="Records")


@dataclass(frozen=True, slots=True)
class ObjectDelta:
    """Bytes added under one object path.

    Attributes:
        path: Full object path, ``"s3://bucket/key"``.
        delta_bytes: Signed change in bytes.
    """

    path: str
    delta_bytes: int


def decode_envelope(body: str | bytes, message_id: str | None = None) -> Envelope:
    """Decode a queue message body.

    Raises:
        EnvelopeDecodeError: If the body is not JSON or does not have the
            envelope shape. No partial parse is attempted.
    """
    try:
        return Envelope.model_validate_json(body)
    except ValidationError as exc:
        raise EnvelopeDecodeError(
            f"JSON parse failed for message {message_id or '[no ID]'}: "
            f"{exc.error_count()} validation error(s), first: {exc.errors()[0]['msg']}",
            message_id=message_id,
        ) from exc


def _version_tuple(version: str) -> tuple[int, int, int] | None:
    parts = version.removeprefix("v").split(".")
    if not 1 <= len(parts) <= 3 or not all(part.isdigit() for part in parts):
        return None
    numbers = [int(part) for part in parts] + [0] * (3 - len(parts))
    return numbers[0], numbers[1], numbers[2]


_SUPPORTED_VERSION_TUPLE = _version_tuple(SUPPORTED_EVENT_VERSION)


def check_version(version: str) -> None:
    """Accept versions with the supported major and at least the supported minor.

    AWS writes versions without the leading "v" ("2.1"); both spellings are
    accepted. Unparseable versions are rejected.

    Raises:
        BadVersionError: If the version is not compatible.
    """
    parsed = _version_tuple(version)
    if (
        parsed is None
        or parsed[0] != SUPPORTED_EVENT_MAJOR_VERSION
        or parsed < _SUPPORTED_VERSION_TUPLE
    ):
        raise BadVersionError(version, SUPPORTED_EVENT_VERSION)


def normalize_event_name(event_name: str) -> str:
    """Add the ``s3:`` service prefix when a producer left it out."""
    if event_name.startswith(_SERVICE_PREFIX):
        return event_name
    return _SERVICE_PREFIX + event_name


def is_change(event_name: str) -> bool:
    name = normalize_event_name(event_name)
    return not (name == EVENT_TYPE_TEST or name.startswith(EVENT_TYPE_OBJECT_REMOVED_PREFIX))


def parse_delta(record: EventRecord) -> ObjectDelta | None:
    """Extract the object path and size delta from an event record.

    Returns None for records that carry no change to apply: test events and
    object removals. Removals are not subtracted; their records have no size.

    Raises:
        BadVersionError: The record version is not supported. Checked first,
            so it applies to every event type.
        UnknownEventError: The event is neither a test, a removal nor a creation.
        MissingFieldError: A creation record lacks bucket.name, object.key or
            object.size (reported in that order).
        InvalidFieldError: object.size is negative or above MAX_OBJECT_SIZE.
    """
    check_version(record.event_version)

    if not is_change(record.event_name):
        return None
    if not normalize_event_name(record.event_name).startswith(EVENT_TYPE_OBJECT_CREATED_PREFIX):
        raise UnknownEventError(record.event_name)

    bucket = record.s3.bucket.name
    if not bucket:
        raise MissingFieldError("bucket.name")
    key = record.s3.obj.key
    if not key:
        raise MissingFieldError("object.key")
    size = record.s3.obj.size
    if size is None:
        raise MissingFieldError("object.size")
    if not 0 <= size <= MAX_OBJECT_SIZE:
        raise InvalidFieldError("object.size", size)

    return ObjectDelta(path=f"{PATH_SCHEME}://{bucket}/{key}", delta_bytes=size)
