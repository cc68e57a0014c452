"""Configuration management for Terminus using pydantic-settings."""

import re
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from terminus.core.exceptions import ConfigurationError

# Same unit table as go-humanize: bare SI units are powers of 1000, "i" units powers of 1024.
# pydantic.ByteSize rejects the bare "K"/"Ki" forms and digit grouping that go-humanize accepts.
_BYTE_UNITS: dict[str, int] = {
    "": 1,
    "b": 1,
    "k": 1000,
    "kb": 1000,
    "ki": 1024,
    "kib": 1024,
    "m": 1000**2,
    "mb": 1000**2,
    "mi": 1024**2,
    "mib": 1024**2,
    "g": 1000**3,
    "gb": 1000**3,
    "gi": 1024**3,
    "gib": 1024**3,
    "t": 1000**4,
    "tb": 1000**4,
    "ti": 1024**4,
    "tib": 1024**4,
    "p": 1000**5,
    "pb": 1000**5,
    "pi": 1024**5,
    "pib": 1024**5,
    "e": 1000**6,
    "eb": 1000**6,
    "ei": 1024**6,
    "eib": 1024**6,
}

_BYTES_RE = re.compile(r"^\s*([0-9][0-9,]*(?:\.[0-9]*)?)\s*([a-zA-Z]*)\s*$")

MAX_QUOTA_BYTES = 2**63 - 1


def parse_bytes(value: str) -> int:
    """Parse a human byte size such as ``"5KB"``, ``"8K"`` or ``"1.5GiB"``.

    Raises:
        ConfigurationError: If the string is not a size or does not fit a BIGINT.
    """
    match = _BYTES_RE.match(value)
    if match is None:
        raise ConfigurationError(f"cannot parse byte size {value!r}")
    number, unit = match.groups()
    multiplier = _BYTE_UNITS.get(unit.lower())
    if multiplier is None:
        raise ConfigurationError(f"unknown byte unit {unit!r} in {value!r}")
    number = number.replace(",", "")
    if "." in number:
        size = int(float(number) * multiplier)
    else:
        size = int(number) * multiplier
    if size > MAX_QUOTA_BYTES:
        raise ConfigurationError(f"byte size {value!r} too large")
    return size


class TerminusConfig(BaseSettings):
    """Terminus configuration with environment variable support.

    All settings use the TERMINUS_ env prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="TERMINUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # -- Queue --
    # Queue name or full queue URL.
    queue: str = ""
    aws_region: str | None = None
    aws_endpoint_url: str | None = None
    receive_batch_size: int = 10
    receive_wait_seconds: int = 10
    visibility_timeout_seconds: int = 3
    receive_backoff_seconds: float = 2.0

    # -- Ledger --
    database_path: str = "terminus.db"
    database_busy_timeout_seconds: float = 5.0
    default_quota: str = "5KB"

    # -- Key Mapping --
    key_pattern: str = r"^s3://[^/]*/user/([^/]*)/.*$"
    key_replacement: str = r"\1"

    # -- HTTP --
    listen: str = "localhost:8080"

    # -- Logging --
    log_level: str = "INFO"
    log_format: Literal["colored", "plain", "json"] = "colored"
    log_timestamps: bool = True

    # -- Retry Configuration --
    retry_max_attempts: int = 3
    retry_min_wait_seconds: float = 0.5
    retry_max_wait_seconds: float = 10.0
    retry_exponential_multiplier: float = 1.0

    @field_validator("default_quota")
    @classmethod
    def _validate_default_quota(cls, value: str) -> str:
        try:
            parse_bytes(value)
        except ConfigurationError as exc:
            raise ValueError(str(exc)) from exc
        return value

    @field_validator("receive_batch_size")
    @classmethod
    def _validate_receive_batch_size(cls, value: int) -> int:
        # SQS refuses more than 10 messages per receive.
        if not 1 <= value <= 10:
            raise ValueError("receive_batch_size must be between 1 and 10")
        return value

    @property
    def default_quota_bytes(self) -> int:
        """Default quota in bytes, applied to keys without an override."""
        return parse_bytes(self.default_quota)

    @property
    def listen_host_port(self) -> tuple[str, int]:
        """Split ``listen`` into host and port."""
        host, _, port = self.listen.rpartition(":")
        if not port.isdigit():
            raise ConfigurationError(f"listen address {self.listen!r} has no port")
        return host or "0.0.0.0", int(port)
