"""Warden exception types."""

from __future__ import annotations


class WardenError(Exception):
    """Base error type."""


class IntegrityError(WardenError):
    """Raised when an HMAC or signature does not match the protected payload."""


class ValidationError(WardenError):
    """Raised when input is malformed or a policy rejects it."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PolicyViolation(ValidationError):
    """Raised when a change-set is rejected on a non-write-intent request."""

    def __init__(self, reason: str, *, entity_type: str | None = None, field: str | None = None) -> None:
        super().__init__(reason)
        self.entity_type = entity_type
        self.field = field


class ConfigurationError(WardenError):
    """Raised when key material or configuration cannot be loaded."""
