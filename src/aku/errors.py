"""Exception types raised by the substrate and its indexes.

Integrity findings (corrupted atoms, orphaned links) are never raised; they
come back as data from ``Substrate.verify()``.
"""

from __future__ import annotations


class SubstrateError(Exception):
    """Base class for every error raised by aku."""


class ValidationError(SubstrateError, ValueError):
    """Caller supplied malformed input. Raised before any side effect."""


class InvalidDomainError(ValidationError):
    """Domain path failed the path-safety check."""


class InvalidHashError(ValidationError):
    """String is not a 64-char lowercase hex SHA-256 digest."""


class DimensionMismatchError(ValidationError):
    """Embedding length differs from the vector index dimensionality."""

    def __init__(self, expected: int, actual: int, what: str = "Embedding") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{what} dimension mismatch: expected {expected}, got {actual}")


class AtomNotFoundError(SubstrateError, LookupError):
    """A well-formed hash that must exist does not."""


class AKUParseError(SubstrateError, ValueError):
    """Stored atom text is not a valid frontmatter document."""


class ConfigError(SubstrateError, ValueError):
    """Substrate configuration is missing, malformed, or unsupported."""
