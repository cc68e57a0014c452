"""Mapping object paths to ledger keys.

A key mapping is a regular expression matched against the whole path plus a
template (``\\1``, ``\\g<user>``) built from its groups. Many paths map to one
key: all objects under one user directory share that user's quota.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from terminus.core.exceptions import ConfigurationError


def map_key(path: str, pattern: re.Pattern[str], template: str) -> str | None:
    """Return the ledger key for path, or None if the pattern does not match."""
    match = pattern.fullmatch(path)
    if match is None:
        return None
    return match.expand(template)


@dataclass(frozen=True)
class KeyMapping:
    pattern: re.Pattern[str]
    template: str

    @classmethod
    def compile(cls, pattern: str, template: str) -> KeyMapping:
        """Compile and validate a mapping once, at startup.

        Raises:
            ConfigurationError: If the pattern is not a valid regular expression
                or the template refers to groups the pattern does not have.
        """
        try:
            compiled = re.compile(pattern)
        except re.error as exc:
            raise ConfigurationError(f"invalid key pattern {pattern!r}: {exc}") from exc
        try:
            # sub() parses the template before it looks for matches.
            compiled.sub(template, "")
        except (re.error, IndexError) as exc:
            raise ConfigurationError(
                f"invalid key replacement {template!r} for pattern {pattern!r}: {exc}"
            ) from exc
        return cls(pattern=compiled, template=template)

    def map(self, path: str) -> str | None:
        return map_key(path, self.pattern, self.template)
