"""Structured exception hierarchy for Terminus.

Exception Hierarchy:
    TerminusError (base)
    ├── ConfigurationError
    ├── EventParseError
    │   ├── BadVersionError
    │   ├── UnknownEventError
    │   ├── MissingFieldError
    │   └── InvalidFieldError
    ├── EnvelopeDecodeError
    ├── LedgerError
    └── QueueError

Record-level errors (``EventParseError`` and its subclasses) describe bad data
and are never worth retrying. ``LedgerError`` describes a store failure that
may clear up on redelivery of the message.

Usage:
    from terminus.core.exceptions import EventParseError, LedgerError

    try:
        delta = parse_delta(record)
    except EventParseError as e:
        logger.warning("record_rejected", error=str(e))
"""

from __future__ import annotations


class TerminusError(Exception):
    """Base exception class for all Terminus errors."""

    pass


class ConfigurationError(TerminusError):
    """Exception raised when configuration validation fails.

    Only raised at startup: an unparseable key pattern, a bad quota size or a
    missing queue name. These are the only errors that stop the process.

    Example:
        raise ConfigurationError("invalid key pattern '(': missing ), unterminated subpattern")
    """

    def __init__(self, message: str) -> None:
        """Initialize ConfigurationError."""
        super().__init__(message)


class EventParseError(TerminusError):
    """Exception raised when an event record cannot be turned into a delta.

    Args:
        message: Human-readable error message.

    Attributes:
        message_id: Queue message carrying the record, once known.
        record_index: Position of the record inside its envelope, once known.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message_id: str | None = None
        self.record_index: int | None = None

    def locate(self, message_id: str | None, record_index: int) -> EventParseError:
        """Attach the queue position of the failing record and return self."""
        self.message_id = message_id
        self.record_index = record_index
        return self

    def __str__(self) -> str:
        base = super().__str__()
        if self.record_index is None:
            return base
        message_id = self.message_id or "[no ID]"
        return f"record parse failed for message {message_id} @{self.record_index}: {base}"


class BadVersionError(EventParseError):
    """Event version is not compatible with the supported event version."""

    def __init__(self, version: str, supported: str) -> None:
        super().__init__(f"{version}: version incompatible with {supported}")
        self.version = version
        self.supported = supported


class UnknownEventError(EventParseError):
    """Event name does not belong to any event family Terminus understands."""

    def __init__(self, event_name: str) -> None:
        super().__init__(f"{event_name}: unknown event name")
        self.event_name = event_name


class MissingFieldError(EventParseError):
    """A field required to compute a delta is absent or empty.

    Attributes:
        field: Dotted name of the missing field, e.g. ``"object.size"``.
    """

    def __init__(self, field: str) -> None:
        super().__init__(f"{field} field missing")
        self.field = field


class InvalidFieldError(EventParseError):
    """A field is present but its value cannot be used, e.g. a size above 2**63-1."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"{field} field invalid: {value!r}")
        self.field = field
        self.value = value


class EnvelopeDecodeError(TerminusError):
    """Exception raised when a queue message body is not a valid envelope.

    The whole message fails; no record inside it can be parsed.
    """

    def __init__(self, message: str, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class LedgerError(TerminusError):
    """Exception raised when the usage ledger cannot complete an operation.

    Wraps database errors. Messages whose records hit a LedgerError are left
    on the queue for redelivery.

    Attributes:
        key: Ledger key involved, if any.
        operation: Ledger operation that failed (``"add_size_bytes"``...).
    """

    def __init__(self, message: str, *, operation: str, key: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation
        self.key = key


class QueueError(TerminusError):
    """Exception raised when the queue cannot be located or reached at startup."""

    def __init__(self, message: str, queue: str | None = None) -> None:
        super().__init__(message)
        self.queue = queue


__all__ = [
    "BadVersionError",
    "ConfigurationError",
    "EnvelopeDecodeError",
    "EventParseError",
    "InvalidFieldError",
    "LedgerError",
    "MissingFieldError",
    "QueueError",
    "TerminusError",
    "UnknownEventError",
]
